"""
Matching cloud disks with local block devices.

A virtual disk carries no identifier the guest can see before it is formatted, so the device
backing a freshly attached disk is found by comparing two device snapshots taken around the attach call.
"""
from typing import Iterable, List, Optional

from .logging import logger
from .models import BlockDevice
from .exceptions import NoNewDeviceFound, AmbiguousNewDevice


def diff_new_device(before: List[BlockDevice], after: List[BlockDevice], disk_name: str = "") -> BlockDevice:
    """
    Return the single device present in `after` but not in `before`.
    Both snapshots must be taken after a SCSI rescan.
    """
    known = {device.name for device in before}
    new = [device for device in after if device.name not in known]
    if not new:
        raise NoNewDeviceFound(disk=disk_name, devices=sorted(d.name for d in after))
    if len(new) > 1:
        raise AmbiguousNewDevice(disk=disk_name, devices=", ".join(d.name for d in new))
    [device] = new
    logger.info(f"New block device for {disk_name!r}: {device.name}")
    return device


def _walk(devices: Iterable[BlockDevice]):
    for device in devices:
        yield from device.walk()


def find_by_name(devices: List[BlockDevice], name: str) -> Optional[BlockDevice]:
    if not name:
        return
    for device in devices:
        if device.name == name:
            return device


def find_by_mount_point(devices: List[BlockDevice], mount_point: str) -> Optional[BlockDevice]:
    """Find the device or partition mounted at `mount_point`"""
    mount_point = _normpath(mount_point)
    for device in _walk(devices):
        if device.mount_point and _normpath(device.mount_point) == mount_point:
            return device


def _normpath(path: str) -> str:
    return path.rstrip("/") or "/"


def find_mounted_by_label(devices: List[BlockDevice], label: str) -> Optional[BlockDevice]:
    for device in _walk(devices):
        if device.label == label and device.mount_point:
            return device
