import logging

from binaryninja import BinaryView, BackgroundTaskThread, PluginCommand
from binaryninja import log_debug, log_info, log_warn, log_error

from core.config import Options
from core.launcher import Launcher
from host.binja import BinaryNinjaHost

logger = logging.getLogger(__file__)

COMMAND_NAME = "RTTI\\Recover class hierarchy"


class BinaryNinjaLogHandler(logging.Handler):
    """forwards python logging records to the binary ninja log window"""

    def emit(self, record: logging.LogRecord):
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return

        if record.levelno >= logging.ERROR:
            log_error(message)
        elif record.levelno >= logging.WARNING:
            log_warn(message)
        elif record.levelno >= logging.INFO:
            log_info(message)
        else:
            log_debug(message)


class RecoverTask(BackgroundTaskThread):
    def __init__(self, view: BinaryView, options: Options):
        super().__init__("Recovering class hierarchy", True)
        self.view = view
        self.options = options

    def run(self):
        launcher = Launcher(BinaryNinjaHost(self.view), self.options)
        try:
            launcher.run()
            self.progress = "%d classes, %d vtables" % (
                len(launcher.rtti.graph), len(launcher.vtables.vtables))
            self.view.update_analysis()
        except Exception as e:
            logger.error("RTTI recovery failed : %s" % str(e))
        finally:
            self.finish()


def install_log_handler():
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, BinaryNinjaLogHandler):
            return
    handler = BinaryNinjaLogHandler()
    handler.setFormatter(logging.Formatter("[rtti] %(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def run_plugin(view: BinaryView):
    install_log_handler()
    # the progress bar would go to the terminal binary ninja was started from
    task = RecoverTask(view, Options(show_progress=False))
    task.start()
    return task


def is_valid(view: BinaryView) -> bool:
    return view.platform is not None and view.arch is not None


def register():
    logger.debug("registering %s" % COMMAND_NAME)
    PluginCommand.register(
        COMMAND_NAME,
        "Types Itanium RTTI records, builds the inheritance graph and defines the vtables",
        run_plugin,
        is_valid)
