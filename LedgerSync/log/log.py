"""Logging setup for the sync core.

Records go to stdout and to a bounded in-memory :class:`TankHandler` the application can show
as sync diagnostics. The Google client libraries log every HTTP request at debug level, so
their loggers are capped at :data:`CLIENT_LOG_LEVEL`.
"""
import collections
import logging
import sys

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

from ..core.signals import signals

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

#: Oldest records are dropped once the tank holds this many
TANK_SIZE = 2000

CLIENT_LOGGERS = (
    'googleapiclient',
    'google_auth_httplib2',
    'google_auth_oauthlib',
    'urllib3',
)
CLIENT_LOG_LEVEL = logging.WARNING

QT_LEVELS = {
    QtMsgType.QtDebugMsg: logging.DEBUG,
    QtMsgType.QtInfoMsg: logging.INFO,
    QtMsgType.QtWarningMsg: logging.WARNING,
    QtMsgType.QtCriticalMsg: logging.ERROR,
    QtMsgType.QtFatalMsg: logging.CRITICAL,
}


def qt_message_handler(mode, context, message):
    """Routes Qt messages (timers, signal connections) through Python logging."""
    logging.getLogger('Qt').log(QT_LEVELS.get(mode, logging.WARNING), message.strip())
    if mode == QtMsgType.QtFatalMsg:
        sys.exit(1)


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=LOG_LEVEL):
    """
    Configures the root logger for the sync core.

    Calling it again replaces the handlers installed by an earlier call.

    Args:
        enable_stream_handler (bool): Also log to stdout.
        enable_qt_handler (bool): Route Qt's own messages through Python logging.
        log_level (int): Level applied to the root logger and its handlers.

    Returns:
        TankHandler: The handler collecting records for the diagnostics view.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if enable_stream_handler:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(log_level)
        root_logger.addHandler(stream_handler)

    tank_handler = TankHandler()
    tank_handler.setFormatter(formatter)
    tank_handler.setLevel(log_level)
    root_logger.addHandler(tank_handler)

    for name in CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, CLIENT_LOG_LEVEL))

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)

    return tank_handler


def get_tank():
    """Return the :class:`TankHandler` installed on the root logger, if any."""
    return next((h for h in logging.getLogger().handlers if isinstance(h, TankHandler)), None)


class TankHandler(logging.Handler):
    """
    Keeps the most recent formatted log records in memory.

    An error record emits ``signals.showLogs`` so the application can open its log view
    when a sync operation fails.

    Attributes:
        tank (collections.deque[tuple[int, str]]): ``(level, message)`` pairs, oldest first.
    """

    def __init__(self, maxlen=TANK_SIZE):
        super().__init__()
        self.tank = collections.deque(maxlen=maxlen)

    def emit(self, record):
        try:
            self.tank.append((record.levelno, self.format(record)))
        except Exception:
            self.handleError(record)
            return
        if record.levelno >= logging.ERROR:
            signals.showLogs.emit()

    def get_logs(self, level=logging.NOTSET):
        """
        Returns the stored messages at or above ``level``.

        Args:
            level (int, optional): The minimum logging level. Defaults to logging.NOTSET.

        Returns:
            list[str]: Formatted messages, oldest first.
        """
        return [msg for lvl, msg in self.tank if lvl >= level]

    def clear_logs(self):
        self.tank.clear()
