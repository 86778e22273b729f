import json
import time
from subprocess import TimeoutExpired
from typing import List

from plumbum import cmd
from plumbum import local, ProcessExecutionError

from .logging import logger
from .models import BlockDevice
from .utils import get_mount
from .exceptions import FormatFailed, FormatTimeout, MountFailed, UnmountFailed


def _text(*outputs) -> str:
    return "".join(
        out.decode("utf-8", errors="replace") if isinstance(out, bytes) else (out or "")
        for out in outputs
    )


class HostDevices:
    """
    Node-local view of block devices and the operations on them.
    Device state is never cached - every snapshot reflects the kernel state after a SCSI rescan.
    """

    scsi_hosts = local.path("/sys/class/scsi_host")
    sys_block = local.path("/sys/block")
    lsblk_columns = "NAME,FSTYPE,LABEL,UUID,MOUNTPOINT,SIZE"
    kill_grace = 5  # seconds to collect mkfs output after killing it

    def __init__(self, config):
        self.config = config

    def rescan(self):
        """Ask every SCSI host to re-enumerate its LUNs and wait for udev to catch up."""
        for host in self.scsi_hosts.list():
            host["scan"].write("- - -")
        # lsblk might run before udev has all the information about recently added devices
        local["udevadm"]("settle")
        if self.config.rescan_delay:
            time.sleep(self.config.rescan_delay)

    def block_devices(self) -> List[BlockDevice]:
        self.rescan()
        output = local["lsblk"]("--json", "--bytes", "--output", self.lsblk_columns)
        return [BlockDevice.from_lsblk(raw) for raw in json.loads(output).get("blockdevices", [])]

    def format(self, device: BlockDevice, fs_type: str, label: str, uuid: str, timeout: float) -> str:
        """
        Create filesystem on `device`. mkfs is killed when it runs longer than `timeout` seconds,
        whatever it printed so far becomes part of the error.
        """
        mkfs = local[f"mkfs.{fs_type}"]["-F", "-L", label, "-U", uuid, device.path]
        logger.info(f"Formatting {device.path} as {fs_type} (label={label}, uuid={uuid})")
        proc = mkfs.popen()
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except TimeoutExpired:
            proc.kill()
            try:
                stdout, stderr = proc.communicate(timeout=self.kill_grace)
            except TimeoutExpired:
                # stuck in uninterruptible I/O, there is no more output to collect
                logger.warning(f"mkfs on {device.path} did not exit within {self.kill_grace}s after kill")
                stdout = stderr = b""
            raise FormatTimeout(device=device.path, timeout=timeout, output=_text(stdout, stderr))

        output = _text(stdout, stderr)
        if proc.returncode:
            raise FormatFailed(device=device.path, fs_type=fs_type, retcode=proc.returncode, output=output)
        for line in output.splitlines():
            logger.debug(f"mkfs >> {line}")
        return output

    def mount(self, device: BlockDevice, target: str, fs_type: str, mode: str = "rw"):
        target = local.path(target)
        if not target.exists():
            target.mkdir()
        try:
            cmd.mount["-v", "-t", fs_type, "-o", mode, device.path, target] & logger.pipe_info("mount >>")
        except ProcessExecutionError as exc:
            raise MountFailed(detail=exc.stderr, src=device.path, tgt=str(target), fs_type=fs_type, mode=mode)
        logger.info(f"mounted: {device.path} on {target} ({fs_type}, {mode})")

    def unmount(self, target: str) -> bool:
        """Unmount `target`. Returns False if it was not mounted in the first place."""
        if not get_mount(str(target)):
            logger.info(f"{target} is not mounted")
            return False
        try:
            cmd.umount(target)
        except ProcessExecutionError as exc:
            if "not mounted" in exc.stderr:
                logger.info(f"umount failed - {target} is not mounted (race?)")
                return False
            raise UnmountFailed(detail=exc.stderr, tgt=target)
        logger.info(f"unmounted: {target}")
        return True

    def remove_scsi_device(self, device_name: str):
        """Drop the device node, so the name is released before the disk goes away from the VM."""
        self.sys_block[device_name]["device"]["delete"].write("1")
        logger.info(f"removed SCSI device {device_name}")
