# gfy/logging_config.py
from __future__ import annotations
import logging, logging.handlers, os, sys, traceback
from pathlib import Path
from datetime import datetime
from typing import Optional

from PyQt6.QtCore import QtMsgType, qInstallMessageHandler

from .constants import DEFAULT_LOG_MAX_BYTES, DEFAULT_LOG_BACKUP_COUNT, DEFAULT_LOG_FILENAME

# Loggers from the HTTP stack that flood DEBUG with connection chatter.
HTTP_LOGGERS = ("urllib3", "requests", "charset_normalizer")

_QT_LEVELS = {
    QtMsgType.QtDebugMsg: logging.DEBUG,
    QtMsgType.QtInfoMsg: logging.INFO,
    QtMsgType.QtWarningMsg: logging.WARNING,
    QtMsgType.QtCriticalMsg: logging.ERROR,
    QtMsgType.QtFatalMsg: logging.CRITICAL,
}


class _ConsoleFormatter(logging.Formatter):
    """One line per record; colored only when stderr is a terminal and NO_COLOR is unset."""
    PALETTE = {
        logging.DEBUG: "\x1b[36m",
        logging.INFO: "\x1b[32m",
        logging.WARNING: "\x1b[33m",
        logging.ERROR: "\x1b[31m",
        logging.CRITICAL: "\x1b[41m",
    }
    RESET = "\x1b[0m"

    def __init__(self, stream=None):
        super().__init__()
        stream = stream or sys.stderr
        self.use_color = bool(getattr(stream, "isatty", lambda: False)()) and "NO_COLOR" not in os.environ

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        text = f"{stamp} {record.levelname:<7} {record.name}: {record.getMessage()}"
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        color = self.PALETTE.get(record.levelno) if self.use_color else None
        return f"{color}{text}{self.RESET}" if color else text


def _level(name: str) -> int:
    return getattr(logging, str(name).upper(), logging.INFO)


def init_logging(log_dir: Path, level: str = "INFO", log_name: str = DEFAULT_LOG_FILENAME,
                 max_bytes: int = DEFAULT_LOG_MAX_BYTES, backup_count: int = DEFAULT_LOG_BACKUP_COUNT,
                 also_console: bool = True) -> Path:
    """
    Route the root logger to a rotating file under `log_dir` and, optionally,
    to stderr. Stdout is left alone: the CLI prints model output there.
    Safe to call more than once; earlier handlers are replaced.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / log_name
    lvl = _level(level)

    root = logging.getLogger()
    # Detach, but don't close: a host or test runner may still own them.
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(lvl)

    fh = logging.handlers.RotatingFileHandler(str(log_path), maxBytes=max_bytes, backupCount=backup_count,
                                              encoding="utf-8", delay=True)
    # Worker-thread records are common here, so the file log names the thread.
    fh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s",
                                      "%Y-%m-%d %H:%M:%S"))
    fh.setLevel(lvl)
    root.addHandler(fh)

    if also_console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(_ConsoleFormatter(sys.stderr))
        ch.setLevel(lvl)
        root.addHandler(ch)

    for name in HTTP_LOGGERS:
        logging.getLogger(name).setLevel(max(lvl, logging.WARNING))

    install_excepthook()
    install_qt_message_handler()

    logging.getLogger(__name__).info("Logging initialized → %s", log_path)
    return log_path


def reset_logging() -> None:
    """Detach and close every root handler."""
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()


def install_excepthook():
    def _hook(exc_type, exc, tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return
        logging.getLogger("uncaught").error("Uncaught exception", exc_info=(exc_type, exc, tb))
        msg = "".join(traceback.format_exception_only(exc_type, exc)).strip()
        sys.stderr.write(f"\nFATAL: {msg}\n")
        sys.stderr.flush()
    sys.excepthook = _hook


def install_qt_message_handler(logger: Optional[logging.Logger] = None):
    """Send qDebug/qWarning output (thread teardown, timers) into our log instead of raw stderr."""
    qt_log = logger or logging.getLogger("qt")

    def _handler(mode, context, message):
        qt_log.log(_QT_LEVELS.get(mode, logging.INFO), "%s", message)

    qInstallMessageHandler(_handler)
