import sys
import string
from uuid import uuid4
from copy import deepcopy
from pathlib import Path
from dataclasses import replace
from typing import Optional
from unittest.mock import MagicMock

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
# Extend python import path to get vcd_flexvolume package from here
sys.path += [ROOT.as_posix()]

from vcd_flexvolume.configuration import Config
from vcd_flexvolume.models import BlockDevice, CloudDisk, DiskMeta, VAppVm
from vcd_flexvolume.exceptions import DiskNotFound


GiB = 2 ** 30
NODE_NAME = "node1"


# ----------------------------------------------------------------------------------------------------------------------
# Helper classes
# ----------------------------------------------------------------------------------------------------------------------


class FakeCloud:
    """
    Simulate vCD independent disks and VM attachments.
    Attaching a disk to the node VM plugs a new block device into the connected FakeHost.
    All public methods are MagicMocks, so calls can be asserted eg: 'assert_not_called', 'call_count'.
    """

    def __init__(self, vm_name: str = NODE_NAME):
        self.vm = VAppVm(name=vm_name, href=f"https://vcd.test/api/vApp/vm-{vm_name}", id=f"urn:vcloud:vm:{vm_name}")
        self.disks = {}
        self.host = None

        self.find_vm = MagicMock(side_effect=self._find_vm)
        self.find_disk_by_name = MagicMock(side_effect=self._find_disk_by_name)
        self.create_disk = MagicMock(side_effect=self._create_disk)
        self.update_disk_description = MagicMock(side_effect=self._update_disk_description)
        self.attach_disk = MagicMock(side_effect=self._attach_disk)
        self.detach_disk = MagicMock(side_effect=self._detach_disk)

    def add_disk(self, name: str, size_bytes: int = 10 * GiB, vm: Optional[VAppVm] = None,
                 meta: Optional[DiskMeta] = None) -> CloudDisk:
        """Put a disk in place without recording any calls"""
        uuid = str(uuid4())
        self.disks[name] = CloudDisk(
            id=f"urn:vcloud:disk:{uuid}",
            name=name,
            href=f"https://vcd.test/api/disk/{uuid}",
            size_bytes=size_bytes,
            description=meta.dumps() if meta else "",
        )
        if vm:
            self._plug(vm, self.disks[name])
        return replace(self.disks[name])

    def _plug(self, vm, disk):
        self.disks[disk.name].attached_vm = vm
        if self.host and vm.name == self.vm.name:
            self.host.plug(disk.name)

    def _find_vm(self, vapp_name, vm_name):
        assert vm_name == self.vm.name
        return self.vm

    def _find_disk_by_name(self, name):
        if name not in self.disks:
            raise DiskNotFound(kind="Disk", name=name)
        return replace(self.disks[name])

    def _create_disk(self, name, size_bytes, description=""):
        assert name not in self.disks
        self.add_disk(name, size_bytes=size_bytes)

    def _update_disk_description(self, disk, description):
        self.disks[disk.name].description = description

    def _attach_disk(self, vm, disk):
        assert self.disks[disk.name].attached_vm is None, f"{disk.name} is attached already"
        self._plug(vm, disk)

    def _detach_disk(self, vm, disk):
        assert self.disks[disk.name].attached_vm.name == vm.name
        self.disks[disk.name].attached_vm = None
        if self.host and vm.name == self.vm.name:
            self.host.unplug(disk.name)


class FakeHost:
    """
    Simulate the node block devices. There's always a system disk 'sda'.
    New devices get the lowest free 'sdX' name, unless `names` dictates the names to hand out.
    Filesystems are remembered per disk, so they come back on reattach.
    """

    def __init__(self, cloud: FakeCloud, names=None):
        self.cloud = cloud
        cloud.host = self
        self.names = iter(names) if names else None
        self.system = BlockDevice(
            name="sda", size_bytes=20 * GiB,
            children=[BlockDevice(name="sda1", fs_type="ext4", mount_point="/", size_bytes=20 * GiB)],
        )
        self.plugged = {}  # device name -> disk name
        self.filesystems = {}  # disk name -> (fs_type, label, uuid)
        self.mounts = {}  # device name -> mount point

        self.block_devices = MagicMock(side_effect=self._block_devices)
        self.format = MagicMock(side_effect=self._format)
        self.mount = MagicMock(side_effect=self._mount)
        self.unmount = MagicMock(side_effect=self._unmount)
        self.remove_scsi_device = MagicMock(side_effect=self._remove_scsi_device)

    def plug(self, disk_name):
        if self.names:
            name = next(self.names)
        else:
            name = next(f"sd{c}" for c in string.ascii_lowercase[1:] if f"sd{c}" not in self.plugged)
        self.plugged[name] = disk_name
        return name

    def unplug(self, disk_name):
        for name, plugged in list(self.plugged.items()):
            if plugged == disk_name:
                del self.plugged[name]
                self.mounts.pop(name, None)

    def device_of(self, disk_name) -> Optional[str]:
        return next((name for name, plugged in self.plugged.items() if plugged == disk_name), None)

    def put_filesystem(self, disk_name, mount_point=None):
        """Format (and optionally mount) the device of a plugged disk without recording any calls"""
        disk = self.cloud.disks[disk_name]
        self.filesystems[disk_name] = ("ext4", disk_name, disk.uuid)
        if mount_point:
            self.mounts[self.device_of(disk_name)] = mount_point

    def _block_devices(self):
        devices = [deepcopy(self.system)]
        for name, disk_name in sorted(self.plugged.items()):
            fs_type, label, uuid = self.filesystems.get(disk_name, ("", "", ""))
            devices.append(BlockDevice(
                name=name, fs_type=fs_type, label=label, uuid=uuid,
                mount_point=self.mounts.get(name, ""),
                size_bytes=self.cloud.disks[disk_name].size_bytes,
            ))
        return devices

    def _format(self, device, fs_type, label, uuid, timeout):
        self.filesystems[self.plugged[device.name]] = (fs_type, label, uuid)
        return ""

    def _mount(self, device, target, fs_type, mode="rw"):
        assert device.name in self.plugged
        self.mounts[device.name] = target

    def _unmount(self, target):
        for name, mount_point in list(self.mounts.items()):
            if mount_point == target:
                del self.mounts[name]
                return True
        return False

    def _remove_scsi_device(self, device_name):
        self.plugged.pop(device_name, None)
        self.mounts.pop(device_name, None)


# ----------------------------------------------------------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------------------------------------------------------


@pytest.fixture
def make_config(tmp_path):
    """
    Config factory.
    Keyword arguments override the YAML connection settings, `env` overrides environment variables.
    """

    def __wrapped(env: Optional[dict] = None, **settings):
        config_file = tmp_path / "vcdfv-config.yaml"
        config_file.write_text(yaml.safe_dump(dict(
            dict(
                vcdApiEndpoint="https://vcd.test",
                vcdUser="k8s",
                vcdPassword="secret",
                vcdOrg="org1",
                vcdVdc="vdc1",
                vcdVdcVApp="k8s-vapp",
            ),
            **settings,
        )))
        return Config(env=dict(
            dict(
                X_VCDFV_CONFIG=str(config_file),
                X_VCDFV_NODE_NAME=NODE_NAME,
                X_VCDFV_LOCK_FILE=str(tmp_path / "lock.vcdfv.lck"),
                X_VCDFV_LOCK_BACKOFF="0",
                X_VCDFV_RESCAN_DELAY="0",
                X_VCDFV_TASK_POLL_INTERVAL="0",
            ),
            **(env or {}),
        ))

    return __wrapped


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def host(cloud):
    return FakeHost(cloud)
