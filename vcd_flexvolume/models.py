import re
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional


################################################################
#
# Cloud side
#
################################################################


_FRACTION_RE = re.compile(r"\.(\d+)")


def dump_timestamp(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def load_timestamp(text: Optional[str]) -> Optional[datetime]:
    """
    Parse RFC 3339 timestamp.
    Fractions of any length (other tools write nanoseconds, without trailing zeros) become microseconds.
    """
    if not text:
        return None
    text = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class DiskMeta:
    """Binding of a disk to the VM and local block device serving it. Kept in the disk description."""

    vm_name: str = ""
    device_name: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def matches(self, vm_name: str, device_name: str) -> bool:
        return (self.vm_name, self.device_name) == (vm_name, device_name)

    def stamped(self, previous: Optional["DiskMeta"], now: datetime = None) -> "DiskMeta":
        """Copy of this meta with timestamps set for writing. `created_at` of `previous` survives."""
        now = now or datetime.now(timezone.utc)
        created_at = previous.created_at if previous and previous.created_at else now
        return replace(self, created_at=created_at, updated_at=now)

    def dumps(self) -> str:
        return json.dumps(dict(
            vmName=self.vm_name,
            deviceName=self.device_name,
            createdAt=dump_timestamp(self.created_at),
            updatedAt=dump_timestamp(self.updated_at),
        ))

    @classmethod
    def loads(cls, text: Optional[str]) -> Optional["DiskMeta"]:
        """Decode meta from disk description. Returns None for empty or foreign descriptions."""
        if not text:
            return None
        try:
            raw = json.loads(text)
            return cls(
                vm_name=raw.get("vmName") or "",
                device_name=raw.get("deviceName") or "",
                created_at=load_timestamp(raw.get("createdAt")),
                updated_at=load_timestamp(raw.get("updatedAt")),
            )
        except (ValueError, TypeError, AttributeError):
            return None


@dataclass
class VAppVm:
    name: str
    href: str = ""
    id: str = ""


@dataclass
class CloudDisk:
    id: str
    name: str
    href: str
    size_bytes: int = 0
    description: str = ""
    attached_vm: Optional[VAppVm] = None

    @property
    def meta(self) -> Optional[DiskMeta]:
        return DiskMeta.loads(self.description)

    @property
    def uuid(self) -> str:
        # eg: urn:vcloud:disk:2f6b4a1e-...
        return self.id.rsplit(":", 1)[-1]


################################################################
#
# Host side
#
################################################################


@dataclass
class BlockDevice:
    name: str
    fs_type: str = ""
    label: str = ""
    uuid: str = ""
    mount_point: str = ""
    size_bytes: int = 0
    children: List["BlockDevice"] = field(default_factory=list)

    @classmethod
    def from_lsblk(cls, raw: dict) -> "BlockDevice":
        mount_point = raw.get("mountpoint")
        if mount_point is None:
            # util-linux >= 2.37 may report a list
            mount_point = next(filter(None, raw.get("mountpoints") or []), None)
        return cls(
            name=raw["name"],
            fs_type=raw.get("fstype") or "",
            label=raw.get("label") or "",
            uuid=raw.get("uuid") or "",
            mount_point=mount_point or "",
            size_bytes=int(raw.get("size") or 0),
            children=[cls.from_lsblk(child) for child in raw.get("children") or []],
        )

    @property
    def path(self) -> str:
        return f"/dev/{self.name}"

    @property
    def is_formatted(self) -> bool:
        return bool(self.fs_type or self.children)

    def walk(self):
        """Yield this device and all of its partitions"""
        yield self
        for child in self.children:
            yield from child.walk()


################################################################
#
# Call-out requests and result
#
################################################################


@dataclass(frozen=True)
class InitRequest:
    pass


@dataclass(frozen=True)
class MountRequest:
    mount_dir: str
    volume_name: str
    size: str
    fs_type: str = ""
    readwrite: str = "rw"

    @classmethod
    def from_options(cls, mount_dir: str, options: dict) -> "MountRequest":
        """
        Build request from the options passed by the orchestrator, eg:
        {"kubernetes.io/fsType": "ext4", "kubernetes.io/pvOrVolumeName": "data1", "diskInitialSize": "10g"}
        Keys are accepted with or without the 'kubernetes.io/' prefix.
        """
        opts = {k.rpartition("/")[-1]: v for k, v in options.items()}
        return cls(
            mount_dir=mount_dir,
            volume_name=str(opts.get("pvOrVolumeName") or ""),
            size=str(opts.get("diskInitialSize") or ""),
            fs_type=str(opts.get("fsType") or ""),
            readwrite=str(opts.get("readwrite") or "rw"),
        )


@dataclass(frozen=True)
class UnmountRequest:
    mount_dir: str


@dataclass(frozen=True)
class DetachRequest:
    disk_name: str


class Status:
    SUCCESS = "Success"
    FAILURE = "Failure"
    NOT_SUPPORTED = "Not supported"


@dataclass
class ExecResult:
    status: str
    message: str = ""
    capabilities: Optional[dict] = None

    @classmethod
    def success(cls, payload: dict = None, message: str = "", capabilities: dict = None) -> "ExecResult":
        if payload is not None:
            message = json.dumps(payload)
        return cls(status=Status.SUCCESS, message=message, capabilities=capabilities)

    @classmethod
    def failure(cls, error: str) -> "ExecResult":
        return cls(status=Status.FAILURE, message=json.dumps({"error": error}))

    @classmethod
    def not_supported(cls, message: str = "") -> "ExecResult":
        return cls(status=Status.NOT_SUPPORTED, message=message)

    @property
    def ok(self) -> bool:
        return self.status != Status.FAILURE

    def to_dict(self) -> dict:
        ret = dict(status=self.status, message=self.message)
        if self.capabilities is not None:
            ret["capabilities"] = self.capabilities
        return ret

    def dumps(self) -> str:
        return json.dumps(self.to_dict())
