from easypy.exceptions import TException


class InvalidRequest(TException):
    template = "Invalid request: {reason}"


class MissingSetting(TException):
    template = "Setting {field!r} is missing in {source}"


class SizeParseError(TException):
    template = "Cannot parse size: {size!r} (use <n>, <n>m or <n>g)"


class UnsupportedFsType(TException):
    template = "Only {supported} is supported, got: {fs_type!r}"


class InvalidDiskUuid(TException):
    template = "Disk {disk_id!r} does not end with a valid UUID"


class ApiError(TException):
    template = "HTTP {response.status_code}: {response.text}"


class TaskFailed(TException):
    template = "Task {operation!r} ended with status {status!r}"


class TaskTimeout(TException):
    template = "Gave up waiting for task {operation!r} after {timeout}s"


# ----------------------------
# Not found


class NotFound(TException):
    template = "{kind} {name!r} not found"


class OrgNotFound(NotFound):
    pass


class VdcNotFound(NotFound):
    pass


class VAppNotFound(NotFound):
    pass


class VmNotFound(NotFound):
    pass


class DiskNotFound(NotFound):
    pass


class DeviceNotFound(NotFound):
    pass


class VolumeNotResolved(TException):
    template = "Cannot resolve disk and device for {mount_dir}"


# ----------------------------
# Conflicts


class DuplicateDisk(TException):
    template = "Found {count} disks named {name!r}"


class AlreadyAttached(TException):
    template = "Volume {name!r} is already attached to this node as {device} (mounted at {mount_point})"


class LockHeld(TException):
    template = "Waiting for another process to finish attaching/detaching disks ({path})"


# ----------------------------
# Host side


class NoNewDeviceFound(TException):
    template = "No new block device appeared after attaching {disk!r}"


class AmbiguousNewDevice(TException):
    template = "Multiple new block devices appeared: {devices}"


class FormatFailed(TException):
    template = "Formatting {device} as {fs_type} failed"


class FormatTimeout(TException):
    template = "Formatting {device} did not finish within {timeout}s"


class MountFailed(TException):
    template = "Mounting {src} on {tgt} failed"


class UnmountFailed(TException):
    template = "Unmounting {tgt} failed"


class MetaConvergenceFailed(TException):
    template = "Device of disk {disk!r} did not settle after {rounds} detach/reattach rounds (last seen: {device})"
