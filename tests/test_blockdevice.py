import json
from subprocess import TimeoutExpired
from unittest.mock import patch, MagicMock

import pytest
from plumbum import local, ProcessExecutionError

from vcd_flexvolume.blockdevice import HostDevices
from vcd_flexvolume.models import BlockDevice
from vcd_flexvolume.exceptions import FormatFailed, FormatTimeout, UnmountFailed


LSBLK_OUTPUT = json.dumps({"blockdevices": [
    {"name": "sda", "fstype": None, "label": None, "uuid": None, "mountpoint": None, "size": 21474836480,
     "children": [
         {"name": "sda1", "fstype": "ext4", "label": "root", "uuid": "6f1c", "mountpoint": "/", "size": 21473787904},
     ]},
    {"name": "sdb", "fstype": "ext4", "label": "data1", "uuid": "2f6b", "mountpoints": [None, "/mnt/data1"],
     "size": 10737418240},
    {"name": "sdc", "fstype": None, "label": None, "uuid": None, "mountpoints": [None], "size": 1073741824},
]})


@pytest.fixture
def devices(config):
    with patch.object(HostDevices, "rescan"):
        yield HostDevices(config)


@pytest.fixture
def fake_local():
    with patch("vcd_flexvolume.blockdevice.local") as fake_local:
        yield fake_local


def test_block_devices(devices, fake_local):
    fake_local.__getitem__.return_value = MagicMock(return_value=LSBLK_OUTPUT)

    sda, sdb, sdc = devices.block_devices()

    fake_local.__getitem__.assert_called_once_with("lsblk")
    assert sda.is_formatted and not sda.fs_type
    assert [d.name for d in sda.walk()] == ["sda", "sda1"]
    assert sda.children[0].mount_point == "/"
    assert (sdb.fs_type, sdb.label, sdb.mount_point, sdb.size_bytes) == ("ext4", "data1", "/mnt/data1", 10 * 2 ** 30)
    assert not sdc.is_formatted
    assert sdc.mount_point == ""
    assert sdc.path == "/dev/sdc"


def _mkfs(fake_local, proc):
    fake_local.__getitem__.return_value.__getitem__.return_value.popen.return_value = proc


def test_format(devices, fake_local):
    proc = MagicMock(returncode=0)
    proc.communicate.return_value = (b"Writing superblocks and filesystem accounting information: done\n", b"")
    _mkfs(fake_local, proc)

    devices.format(BlockDevice(name="sdc"), "ext4", label="data1", uuid="2f6b", timeout=60)

    fake_local.__getitem__.assert_called_once_with("mkfs.ext4")
    fake_local.__getitem__.return_value.__getitem__.assert_called_once_with(
        ("-F", "-L", "data1", "-U", "2f6b", "/dev/sdc"))
    proc.communicate.assert_called_once_with(timeout=60)


def test_format_failed(devices, fake_local):
    proc = MagicMock(returncode=1)
    proc.communicate.return_value = (b"", b"mkfs.ext4: Device size reported to be zero.")
    _mkfs(fake_local, proc)

    with pytest.raises(FormatFailed) as exc:
        devices.format(BlockDevice(name="sdc"), "ext4", label="data1", uuid="2f6b", timeout=60)
    assert "Device size reported to be zero" in exc.value.render(color=False)


def test_format_timeout(devices, fake_local):
    """mkfs running past the timeout is killed, its output so far is reported"""
    proc = MagicMock()
    proc.communicate.side_effect = [TimeoutExpired("mkfs.ext4", 5), (b"Discarding device blocks: 4096/", b"")]
    _mkfs(fake_local, proc)

    with pytest.raises(FormatTimeout) as exc:
        devices.format(BlockDevice(name="sdc"), "ext4", label="data1", uuid="2f6b", timeout=5)

    proc.kill.assert_called_once()
    assert "Discarding device blocks" in exc.value.render(color=False)


def test_format_timeout_unkillable(devices, fake_local):
    """mkfs that does not exit after kill does not hold the call forever"""
    proc = MagicMock()
    proc.communicate.side_effect = [TimeoutExpired("mkfs.ext4", 5), TimeoutExpired("mkfs.ext4", HostDevices.kill_grace)]
    _mkfs(fake_local, proc)

    with pytest.raises(FormatTimeout):
        devices.format(BlockDevice(name="sdc"), "ext4", label="data1", uuid="2f6b", timeout=5)

    proc.kill.assert_called_once()
    assert proc.communicate.call_args_list[-1].kwargs == dict(timeout=HostDevices.kill_grace)


@patch("vcd_flexvolume.blockdevice.get_mount", MagicMock(return_value=None))
@patch("vcd_flexvolume.blockdevice.cmd")
def test_unmount_not_mounted(cmd, devices):
    assert devices.unmount("/mnt/data1") is False
    cmd.umount.assert_not_called()


@patch("vcd_flexvolume.blockdevice.get_mount", MagicMock(return_value=object()))
@patch("vcd_flexvolume.blockdevice.cmd")
def test_unmount(cmd, devices):
    assert devices.unmount("/mnt/data1") is True
    cmd.umount.assert_called_once_with("/mnt/data1")


@patch("vcd_flexvolume.blockdevice.get_mount", MagicMock(return_value=object()))
@patch("vcd_flexvolume.blockdevice.cmd")
def test_unmount_race(cmd, devices):
    cmd.umount.side_effect = ProcessExecutionError(["umount", "/mnt/data1"], 32, "", "umount: /mnt/data1: not mounted.")
    assert devices.unmount("/mnt/data1") is False


@patch("vcd_flexvolume.blockdevice.get_mount", MagicMock(return_value=object()))
@patch("vcd_flexvolume.blockdevice.cmd")
def test_unmount_busy(cmd, devices):
    cmd.umount.side_effect = ProcessExecutionError(["umount", "/mnt/data1"], 32, "", "umount: /mnt/data1: target is busy.")
    with pytest.raises(UnmountFailed):
        devices.unmount("/mnt/data1")


def test_remove_scsi_device(config, tmp_path):
    (tmp_path / "sdb" / "device").mkdir(parents=True)
    (tmp_path / "sdb" / "device" / "delete").write_text("")

    with patch.object(HostDevices, "sys_block", local.path(tmp_path)):
        HostDevices(config).remove_scsi_device("sdb")

    assert (tmp_path / "sdb" / "device" / "delete").read_text() == "1"
