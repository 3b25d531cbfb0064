import logging
import os
import sys
from typing import Optional

FILE_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(threadName)s - %(message)s'

# libraries that flood DEBUG output with request traces
QUIET_LOGGERS = ('web3', 'urllib3')


def _stream_is_tty(stream) -> bool:
    if os.environ.get('NO_COLOR') is not None or os.environ.get('TERM') == 'dumb':
        return False
    isatty = getattr(stream, 'isatty', None)
    return bool(isatty and isatty())


class ColoredFormatter(logging.Formatter):
    """Short console lines: time, level, module and message.

    Level names are colored when the output stream is a terminal. Worker
    threads from the sync pool are tagged so per-network output can be told
    apart.
    """

    LEVEL_STYLES = {
        logging.DEBUG: '36',
        logging.INFO: '32',
        logging.WARNING: '33',
        logging.ERROR: '31',
        logging.CRITICAL: '35',
    }

    def __init__(self, use_colors=True, stream=None):
        super().__init__()
        self.use_colors = use_colors and _stream_is_tty(stream or sys.stderr)

    def _paint(self, text: str, code: str) -> str:
        return f"\033[{code}m{text}\033[0m" if self.use_colors else text

    def format(self, record):
        body = record.getMessage()
        if record.exc_info:
            body += "\n" + self.formatException(record.exc_info)

        source = record.name.rsplit('.', 1)[-1]
        if record.threadName and record.threadName != 'MainThread':
            source = f"{source}@{record.threadName}"

        if not self.use_colors:
            return f"{self.formatTime(record, '%Y-%m-%d %H:%M:%S')} - {record.levelname} - [{source}] {body}"

        level = self._paint(f"{record.levelname:<8}", '1;' + self.LEVEL_STYLES.get(record.levelno, '0'))
        when = self._paint(self.formatTime(record, '%H:%M:%S'), '90')
        return f"{when} {level} {self._paint(f'[{source}]', '90')} {body}"


def _file_handler(path: str) -> logging.Handler:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    handler = logging.FileHandler(path, encoding='utf-8')
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def setup_logging(verbose: bool = False, no_color: bool = False, log_file: Optional[str] = None):
    """Replace root handlers with a console handler and, if asked, a log file"""
    root = logging.getLogger()
    level = logging.DEBUG if verbose else logging.INFO

    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(level)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ColoredFormatter(use_colors=not no_color, stream=sys.stderr))
    handlers = [console]
    if log_file:
        handlers.append(_file_handler(log_file))

    for handler in handlers:
        handler.setLevel(level)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
