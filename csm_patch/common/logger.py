import datetime
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOGFILE_SIZE_MB = 100
LOGFILE_NUM_BKP = 4
DEFAULT_LOGFILE = "csm-patch.log"


class StderrLoggerFormatter(logging.Formatter):
    """ Format for the terminal so that INFO will not print level
    """

    def format(self, record):
        if record.levelno == logging.INFO:
            self._style._fmt = ""
        else:
            self._style._fmt = "[%(levelname)s] "
        self._style._fmt += "%(message)s"
        return logging.Formatter.format(self, record)


def iso_timeformatter(self, record, datefmt=None):
    return datetime.datetime.fromtimestamp(record.created).isoformat(sep="T", timespec="milliseconds")


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """
    Set up the root logger with a terminal handler and a rotating file handler. The file always receives DEBUG,
    the terminal receives DEBUG only with --verbose.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        if getattr(handler, "_csm_patch", False):
            root.removeHandler(handler)
            handler.close()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(StderrLoggerFormatter())
    stderr_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    stderr_handler._csm_patch = True
    root.addHandler(stderr_handler)

    log_file = log_file or os.getenv("CSM_PATCH_LOGFILE", DEFAULT_LOGFILE)
    try:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1024 * 1024 * LOGFILE_SIZE_MB,
            backupCount=LOGFILE_NUM_BKP,
        )
    except OSError as e:
        root.warning(f"unable to open log file {log_file}, logging to terminal only: {e}")
    else:
        file_formatter = logging.Formatter("%(asctime)s %(process)d %(name)s [%(levelname)s] %(message)s")
        file_formatter.formatTime = iso_timeformatter.__get__(file_formatter)
        file_handler.setFormatter(file_formatter)
        file_handler.setLevel(logging.DEBUG)
        file_handler._csm_patch = True
        root.addHandler(file_handler)

    # requests retries are logged by urllib3 at WARNING, keep its DEBUG chatter out of the log file
    logging.getLogger("urllib3").setLevel(logging.INFO)
    return root
