import os
from uuid import UUID
from functools import wraps
from pprint import pformat
from dataclasses import asdict
from contextlib import contextmanager

from plumbum import ProcessExecutionError
from easypy.exceptions import TException

from .logging import logger
from .utils import parse_size, utf8_len
from .blockdevice import HostDevices
from .disk_meta import MetaProtocol
from .vcd_session import get_vcd_session
from .reconcile import (
    diff_new_device,
    find_by_name,
    find_by_mount_point,
    find_mounted_by_label,
)
from .models import (
    ExecResult,
    InitRequest,
    MountRequest,
    UnmountRequest,
    DetachRequest,
)
from .exceptions import (
    InvalidRequest,
    UnsupportedFsType,
    InvalidDiskUuid,
    DiskNotFound,
    DeviceNotFound,
    AlreadyAttached,
    VolumeNotResolved,
)


MAX_LABEL_BYTES = 16  # ext4 volume label limit
READWRITE_MODES = ("rw", "ro")


def describe_error(exc: Exception) -> str:
    if isinstance(exc, TException):
        text = exc.render(color=False)
    elif isinstance(exc, ProcessExecutionError):
        text = f"{' '.join(map(str, exc.argv))} exited with {exc.retcode}: {exc.stderr.strip()}"
    else:
        text = str(exc)
    return f"{type(exc).__name__}: {text}"


################################################################
#
# Helpers
#
################################################################


class Instrumented:
    """Logs every call-out and turns whatever it raises into a Failure result, prefixed by the failed step"""

    @classmethod
    def logged(cls, func):

        @wraps(func)
        def wrapper(self, request):
            method = self.name
            logger.info(f">>> {method}:")
            for line in pformat(asdict(request)).splitlines():
                logger.info(f"({method})    {line}")

            try:
                ret = func(self, request)
            except Exception as exc:
                step = self.current_step or method
                logger.exception(f"Exception during {method} (step: {step})")
                return ExecResult.failure(f"{step}: {describe_error(exc)}")

            logger.info(f"<<< {method}: {ret.status}")
            for line in pformat(ret.to_dict()).splitlines():
                logger.info(f"    {line}")
            logger.info(f"--- {method}: Done")
            return ret

        return wrapper

    @classmethod
    def __init_subclass__(cls):
        if "run" in cls.__dict__:
            cls.run = cls.logged(cls.run)
        super().__init_subclass__()


class Operation(Instrumented):

    name = None

    def __init__(self, config, vcd=None, host=None):
        self.config = config
        self.vcd = vcd
        self.host = host or HostDevices(config)
        self.current_step = None

    @contextmanager
    def step(self, name):
        self.current_step = name
        logger.info(f"[{self.name}] {name}")
        yield

    def connect(self):
        if self.vcd is None:
            self.vcd = get_vcd_session(self.config)
        return self.vcd

    def find_vm(self):
        return self.vcd.find_vm(self.config.vcd_vapp, self.config.node_name)

    def find_disk(self, name):
        """Disk by name, None if there's no such disk"""
        try:
            return self.vcd.find_disk_by_name(name)
        except DiskNotFound:
            logger.info(f"Disk {name!r} does not exist")
            return None

    @property
    def meta_protocol(self):
        return MetaProtocol(self.vcd, self.host, max_rounds=self.config.meta_max_rounds)

    def run(self, request) -> ExecResult:
        raise NotImplementedError()


def _top_level(devices, device):
    """The disk device holding `device` (which might be one of its partitions)"""
    for top in devices:
        if any(d.name == device.name for d in top.walk()):
            return top
    return device


################################################################
#
# Init
#
################################################################


class Init(Operation):

    name = "init"

    def run(self, request: InitRequest):
        return ExecResult.success(message="Initial success", capabilities=dict(attach=False))


################################################################
#
# Mount
#
################################################################


class Mount(Operation):

    name = "mount"

    def run(self, request: MountRequest):
        with self.step("validate request"):
            self.validate(request)

        with self.step("connect to vCD"):
            self.connect()

        with self.step("find VM"):
            vm = self.find_vm()

        with self.step("find disk"):
            disk = self.find_disk(request.volume_name)

        if disk and disk.attached_vm:
            with self.step("detach disk"):
                disk = self.release_disk(disk, vm, request.volume_name)

        if not disk:
            with self.step("create disk"):
                disk = self.create_disk(request)

        with self.step("check attached devices"):
            before = self.host.block_devices()
            if mounted := find_mounted_by_label(before, request.volume_name):
                raise AlreadyAttached(name=request.volume_name, device=mounted.name, mount_point=mounted.mount_point)

        with self.step("attach disk"):
            self.vcd.attach_disk(vm, disk)

        with self.step("find attached device"):
            device = diff_new_device(before, self.host.block_devices(), disk_name=disk.name)

        if not device.is_formatted:
            with self.step("format device"):
                device = self.format_device(request, disk, device)

        with self.step("set disk meta"):
            disk, device = self.meta_protocol.set_meta(disk, vm, device)

        with self.step("mount device"):
            self.host.mount(device, request.mount_dir, self.fs_type(request), request.readwrite)

        return ExecResult.success(dict(
            diskId=disk.id,
            diskName=disk.name,
            deviceName=device.name,
            mountPoint=request.mount_dir,
        ))

    def validate(self, request: MountRequest):
        if not request.mount_dir:
            raise InvalidRequest(reason="mount dir is empty")
        if not request.volume_name:
            raise InvalidRequest(reason="volume name is empty")
        if not request.size:
            raise InvalidRequest(reason="disk initial size is empty")
        if utf8_len(request.volume_name) > MAX_LABEL_BYTES:
            raise InvalidRequest(
                reason=f"volume name {request.volume_name!r} is longer than {MAX_LABEL_BYTES} bytes",
                tip="The volume name becomes the filesystem label",
            )
        if request.readwrite not in READWRITE_MODES:
            raise InvalidRequest(reason=f"readwrite must be one of {READWRITE_MODES}, got {request.readwrite!r}")
        if (fs_type := self.fs_type(request)) not in self.config.supported_fs_types:
            raise UnsupportedFsType(fs_type=fs_type, supported=", ".join(self.config.supported_fs_types))

    def fs_type(self, request: MountRequest):
        return request.fs_type or self.config.default_fs_type

    def release_disk(self, disk, vm, label):
        """
        Detach a disk left attached by an earlier placement, so that this node can attach it.
        A disk attached and mounted right here is left alone - the 'already attached' check deals with it.
        """
        owner = disk.attached_vm
        if owner.name == vm.name:
            devices = self.host.block_devices()
            if mounted := find_mounted_by_label(devices, label):
                logger.info(f"{disk.name!r} is attached to this VM and mounted at {mounted.mount_point}")
                return disk
            if (meta := disk.meta) and find_by_name(devices, meta.device_name):
                self.meta_protocol.drop_device(meta.device_name)

        logger.info(f"Disk {disk.name!r} is attached to VM {owner.name!r}, detaching")
        self.vcd.detach_disk(owner, disk)
        return self.vcd.find_disk_by_name(disk.name)

    def create_disk(self, request: MountRequest):
        size = parse_size(request.size)
        self.vcd.create_disk(request.volume_name, size)
        logger.info(f"Created disk {request.volume_name!r} ({size} bytes)")
        # the create response does not carry the final disk representation
        return self.vcd.find_disk_by_name(request.volume_name)

    def format_device(self, request: MountRequest, disk, device):
        fs_type = self.fs_type(request)
        try:
            uuid = str(UUID(disk.uuid))
        except ValueError:
            raise InvalidDiskUuid(disk_id=disk.id) from None

        self.host.format(device, fs_type, label=request.volume_name, uuid=uuid, timeout=self.config.format_timeout)

        # re-read to pick up the new filesystem and label
        if not (formatted := find_by_name(self.host.block_devices(), device.name)):
            raise DeviceNotFound(kind="Block device", name=device.name)
        return formatted


################################################################
#
# Unmount
#
################################################################


class Unmount(Operation):

    name = "unmount"

    def run(self, request: UnmountRequest):
        with self.step("read configuration"):
            manual = self.config.manual_unmount
        if manual:
            logger.info(f"Manual unmount is configured - {request.mount_dir} is left for the disk owner")
            return ExecResult.success(message="manual unmount")

        with self.step("validate request"):
            if not request.mount_dir:
                raise InvalidRequest(reason="mount dir is empty")

        with self.step("connect to vCD"):
            self.connect()

        with self.step("find VM"):
            vm = self.find_vm()

        with self.step("resolve volume"):
            disk, device = self.resolve(request.mount_dir, vm)

        with self.step("unmount"):
            self.host.unmount(request.mount_dir)

        with self.step("remove SCSI device"):
            self.meta_protocol.drop_device(device.name)

        owner = disk.attached_vm
        with self.step("detach disk"):
            if owner and owner.name == vm.name:
                self.vcd.detach_disk(vm, disk)
                disk = self.vcd.find_disk_by_name(disk.name)
            elif owner:
                logger.warning(f"Disk {disk.name!r} is attached to another VM ({owner.name}), not detaching")
            else:
                logger.info(f"Disk {disk.name!r} is not attached")

        if not owner or owner.name == vm.name:
            with self.step("clear disk meta"):
                disk = self.meta_protocol.clear_meta(disk)

        return ExecResult.success(dict(
            diskId=disk.id,
            diskName=disk.name,
            deviceName=device.name,
            mountPoint=request.mount_dir,
        ))

    def resolve(self, mount_dir, vm):
        """
        Find the disk and local device behind `mount_dir`:
        1. by the device mounted there - its filesystem label is the disk name
        2. by the disk meta - the mount dir ends with the volume name, and the meta names the device
        """
        devices = self.host.block_devices()

        if mounted := find_by_mount_point(devices, mount_dir):
            if mounted.label and (disk := self.find_disk(mounted.label)):
                logger.info(f"{mount_dir} is {disk.name!r} on {mounted.name}")
                return disk, _top_level(devices, mounted)
            logger.warning(f"{mounted.name} is mounted at {mount_dir}, but no disk is labeled {mounted.label!r}")

        volume_name = os.path.basename(mount_dir.rstrip("/"))
        disk = self.find_disk(volume_name)
        meta = disk and disk.meta
        if (
            meta and meta.vm_name == vm.name
            and disk.attached_vm and disk.attached_vm.name == vm.name
            and (device := find_by_name(devices, meta.device_name))
        ):
            logger.info(f"{mount_dir} is not mounted, found {disk.name!r} on {device.name} by disk meta")
            return disk, device

        raise VolumeNotResolved(mount_dir=mount_dir, volume_name=volume_name)


################################################################
#
# Detach (maintenance)
#
################################################################


class Detach(Operation):

    name = "detach"

    def run(self, request: DetachRequest):
        with self.step("validate request"):
            if not request.disk_name:
                raise InvalidRequest(reason="disk name is empty")

        with self.step("connect to vCD"):
            self.connect()

        with self.step("find disk"):
            disk = self.vcd.find_disk_by_name(request.disk_name)

        if not (owner := disk.attached_vm):
            return ExecResult.success(dict(diskId=disk.id, diskName=disk.name, detachedFrom=None))

        with self.step("detach disk"):
            self.vcd.detach_disk(owner, disk)

        return ExecResult.success(dict(diskId=disk.id, diskName=disk.name, detachedFrom=owner.name))


################################################################
#
# Entrypoint
#
################################################################


class Driver:
    """Runs one call-out request against vCD and the local host"""

    OPERATIONS = {
        InitRequest: Init,
        MountRequest: Mount,
        UnmountRequest: Unmount,
        DetachRequest: Detach,
    }

    def __init__(self, config, vcd=None, host=None):
        self.config = config
        self.vcd = vcd
        self.host = host

    def execute(self, request) -> ExecResult:
        try:
            operation_cls = self.OPERATIONS[type(request)]
        except KeyError:
            return ExecResult.not_supported(f"Unsupported request: {type(request).__name__}")
        operation = operation_cls(self.config, vcd=self.vcd, host=self.host)
        return operation.run(request)
