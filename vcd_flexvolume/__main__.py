import sys
import json
import argparse
from easypy.bunch import Bunch

from .models import (
    ExecResult,
    InitRequest,
    MountRequest,
    UnmountRequest,
    DetachRequest,
)
from .exceptions import InvalidRequest


CALLOUTS = ("init", "mount", "unmount", "detach")


class ArgumentParser(argparse.ArgumentParser):
    """Argument errors are reported in the result envelope like any other failure"""

    def error(self, message):
        raise InvalidRequest(reason=message)


def build_parser():
    parser = ArgumentParser(prog="vcd-flexvolume", description="vCloud Director FlexVolume driver")
    subparsers = parser.add_subparsers()

    init_parse = subparsers.add_parser("init", help="Initialize the driver")
    init_parse.set_defaults(build=_init)

    mount_parse = subparsers.add_parser("mount", help="Create (if needed), attach, format (if needed) and mount a disk")
    mount_parse.add_argument("mount_dir")
    mount_parse.add_argument("options", help="JSON options passed by kubelet")
    mount_parse.set_defaults(build=_mount)

    unmount_parse = subparsers.add_parser("unmount", help="Unmount and detach the disk mounted at the directory")
    unmount_parse.add_argument("mount_dir")
    unmount_parse.set_defaults(build=_unmount)

    detach_parse = subparsers.add_parser("detach", help="Detach a disk from whichever VM holds it (maintenance)")
    detach_parse.add_argument("disk_name")
    detach_parse.set_defaults(build=_detach)

    return parser


def _init(args):
    return InitRequest()


def _mount(args):
    try:
        options = json.loads(args.options)
    except ValueError as exc:
        raise InvalidRequest(reason=f"options are not valid JSON: {exc}")
    if not isinstance(options, dict):
        raise InvalidRequest(reason="options must be a JSON object")
    return MountRequest.from_options(args.mount_dir, options)


def _unmount(args):
    return UnmountRequest(mount_dir=args.mount_dir)


def _detach(args):
    return DetachRequest(disk_name=args.disk_name)


def parse_request(argv):
    """Turn call-out arguments into a request. None for call-outs this driver does not implement."""
    if not argv or argv[0] not in CALLOUTS:
        return None
    args = build_parser().parse_args(argv, namespace=Bunch())
    return args.pop("build")(args)


def dispatch(argv, config=None, driver=None) -> ExecResult:
    from .operations import Driver, describe_error

    try:
        request = parse_request(argv)
    except InvalidRequest as exc:
        return ExecResult.failure(f"parse arguments: {describe_error(exc)}")
    if request is None:
        callout = argv[0] if argv else ""
        return ExecResult.not_supported(f"{callout!r} is not supported (use {', '.join(CALLOUTS)})")

    if config is None:
        from .configuration import Config
        config = Config()
    driver = driver or Driver(config)

    if isinstance(request, InitRequest):
        return driver.execute(request)

    from .lock import invocation_lock
    try:
        lock_file, backoff = config.lock_file, config.lock_backoff
    except Exception as exc:
        return ExecResult.failure(f"read configuration: {describe_error(exc)}")

    # Driver.execute returns failures as results, so whatever escapes here comes from the lock
    try:
        with invocation_lock(lock_file, backoff):
            return driver.execute(request)
    except Exception as exc:
        return ExecResult.failure(f"lock: {describe_error(exc)}")


def main(argv=None):
    from .configuration import Config
    from .logging import init_logging, logger
    from .operations import describe_error

    argv = sys.argv[1:] if argv is None else argv
    config = Config()
    try:
        init_logging(level=config.log_level, filename=config.log_file)
    except Exception as exc:
        result = ExecResult.failure(f"init logging: {describe_error(exc)}")
    else:
        logger.info(f"{config.plugin_name}: {' '.join(argv)}")
        result = dispatch(argv, config=config)
    sys.stdout.write(result.dumps())
    sys.stdout.flush()
    return 0 if result.ok else 1


if __name__ == '__main__':
    sys.exit(main())
