import logging
from plumbum.commands.modifiers import PipeToLoggerMixin


@logging.setLoggerClass
class Logger(logging.Logger, PipeToLoggerMixin):
    pass


logger = logging.getLogger("vcd-flexvolume")


def init_logging(level, filename=None):
    # stdout carries the call-out result, so logs never go there
    handlers = None
    if filename:
        try:
            handlers = [logging.FileHandler(filename)]
        except OSError:
            # nowhere to write to; the result on stdout is all kubelet needs
            handlers = [logging.NullHandler()]
    logging.basicConfig(
        level=level.upper(),
        handlers=handlers,
        format="{asctime}|{levelname:7}|{process:6}|{name:15}| {message}",
        style="{"
    )
