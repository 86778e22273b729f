import re

from .exceptions import SizeParseError


SIZE_UNITS = {
    "": 1,
    "m": 2 ** 20,
    "g": 2 ** 30,
}

_SIZE_RE = re.compile(r"^(?P<number>\d+(\.\d+)?)(?P<unit>[mg]?)$")


def parse_size(size: str) -> int:
    """
    Convert size string to bytes.
    Bare digits are bytes, 'm' suffix is MiB and 'g' suffix is GiB, eg: "1048576", "512m", "10g"
    """
    match = _SIZE_RE.match(size.strip())
    if not match:
        raise SizeParseError(size=size)
    number, unit = match.group("number"), match.group("unit")
    if not unit:
        if "." in number:
            raise SizeParseError(size=size)  # fractional bytes
        return int(number)
    return int(float(number) * SIZE_UNITS[unit])


def get_mount(target_path):
    import psutil
    for m in psutil.disk_partitions(all=True):
        if m.mountpoint == target_path:
            return m


def utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))
