"""
Persisting the disk <-> (VM, device) binding.

vCloud Director independent disks have no custom metadata field, so the binding is kept as JSON
in the disk description. The description is rewritten while the disk is detached, and reattaching
may hand the disk a different device name, so every write is followed by a reattach and a check of
the device that came back.
"""
from typing import Tuple

from .logging import logger
from .models import BlockDevice, CloudDisk, DiskMeta, VAppVm
from .reconcile import diff_new_device
from .exceptions import MetaConvergenceFailed


class MetaProtocol:

    def __init__(self, vcd, host, max_rounds: int = 3):
        self.vcd = vcd
        self.host = host
        self.max_rounds = max_rounds

    def write(self, disk: CloudDisk, meta: DiskMeta) -> CloudDisk:
        """Rewrite disk description with `meta` and return the re-read disk. `created_at` of the old meta is kept."""
        meta = meta.stamped(previous=disk.meta)
        self.vcd.update_disk_description(disk, meta.dumps())
        logger.info(f"Disk meta of {disk.name!r} updated: vm={meta.vm_name!r}, device={meta.device_name!r}")
        return self.vcd.find_disk_by_name(disk.name)

    def set_meta(self, disk: CloudDisk, vm: VAppVm, device: BlockDevice) -> Tuple[CloudDisk, BlockDevice]:
        """
        Bind `disk` to `vm` and `device`. The disk must be attached to `vm`.
        Returns the refreshed disk and the device actually serving it once the binding settled.
        """
        for attempt in range(1, self.max_rounds + 1):
            meta = disk.meta
            if meta and meta.matches(vm.name, device.name):
                logger.info(f"Disk meta of {disk.name!r} is up to date ({vm.name}:{device.name})")
                return disk, device

            logger.info(f"Binding {disk.name!r} to {vm.name}:{device.name} (round {attempt}/{self.max_rounds})")
            self.vcd.detach_disk(vm, disk)
            self.drop_device(device.name)

            disk = self.write(disk, DiskMeta(vm_name=vm.name, device_name=device.name))

            before = self.host.block_devices()
            self.vcd.attach_disk(vm, disk)
            after = self.host.block_devices()
            reappeared = diff_new_device(before, after, disk_name=disk.name)

            if (reappeared.name, reappeared.label) == (device.name, device.label):
                return disk, reappeared

            logger.warning(
                f"Device of {disk.name!r} changed on reattach: "
                f"{device.name}[{device.label}] -> {reappeared.name}[{reappeared.label}]"
            )
            device = reappeared

        raise MetaConvergenceFailed(disk=disk.name, rounds=self.max_rounds, device=device.name)

    def clear_meta(self, disk: CloudDisk) -> CloudDisk:
        """Remove VM and device from the binding. The disk must already be detached."""
        meta = disk.meta
        if not meta or meta.matches("", ""):
            logger.info(f"Disk {disk.name!r} is not bound - nothing to clear")
            return disk
        return self.write(disk, DiskMeta())

    def drop_device(self, device_name: str):
        """Remove the local node of a device that no longer belongs to this VM. Failures are not fatal."""
        try:
            self.host.remove_scsi_device(device_name)
        except OSError as exc:
            logger.warning(f"Could not remove SCSI device {device_name}: {exc}")
