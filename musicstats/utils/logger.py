"""
Logging for Music-Stats

Two destinations with different audiences:
- console: what the user should see (warnings, errors and messages sent with
  logger.console_info), colored by level and written around tqdm bars
- rotating file: everything at the configured level, with module and
  function names, for diagnosing sync and authorization problems

OAuth material (tokens, authorization codes, client secrets) is masked in
every record before it reaches either destination.
"""

import functools
import logging
import logging.handlers
import re
import sys
import time
from pathlib import Path
from typing import Optional, Union

import colorama
from colorama import Fore, Style
from tqdm import tqdm


colorama.init()

ROOT_NAMESPACE = 'musicstats'

FILE_FORMAT = '%(asctime)s | %(name)-28s | %(levelname)-8s | %(funcName)-22s | %(message)s'
FILE_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# HTTP client loggers log full URLs, which can carry authorization codes
NOISY_LOGGERS = ('urllib3', 'urllib3.connectionpool', 'requests')

SIZE_UNITS = {'': 1, 'B': 1, 'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3}

_SECRET_PATTERN = re.compile(
    r'(?P<key>\b(?:access_token|refresh_token|id_token|client_secret|code_verifier)\b|\bcode(?==))'
    r'(?P<sep>["\']?\s*[=:]\s*["\']?)'
    r'(?P<value>[^\s&"\',}]+)'
)
_BEARER_PATTERN = re.compile(r'(Bearer\s+)[A-Za-z0-9._~+/=-]+')


def redact_secrets(text: str) -> str:
    """Mask token-like values in a log message"""
    text = _SECRET_PATTERN.sub(lambda m: f"{m.group('key')}{m.group('sep')}***", text)
    return _BEARER_PATTERN.sub(r'\1***', text)


class SecretRedactionFilter(logging.Filter):
    """Rewrite records so OAuth secrets never reach a handler"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = ()
        return True


class ConsoleMessageFilter(logging.Filter):
    """
    Decide which records the user sees

    Warnings and errors always pass. Below that, only records flagged with
    console_output pass, unless verbose mode lets every Music-Stats DEBUG
    and INFO record through.
    """

    def __init__(self, verbose: bool = False):
        super().__init__()
        self.verbose = verbose

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        if getattr(record, 'console_output', False):
            return True
        return self.verbose and record.name.startswith(ROOT_NAMESPACE)


class ColoredFormatter(logging.Formatter):
    """Prefix warnings and errors with a colored level tag"""

    LEVEL_STYLES = {
        logging.DEBUG: Style.DIM,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def __init__(self, use_colors: bool = True):
        super().__init__('%(message)s')
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if record.levelno >= logging.WARNING:
            message = f"{record.levelname.lower()}: {message}"
        style = self.LEVEL_STYLES.get(record.levelno)
        if not (self.use_colors and style):
            return message
        return f"{style}{message}{Style.RESET_ALL}"


class ProgressHandler(logging.Handler):
    """Console handler that prints through tqdm so active bars are redrawn"""

    def __init__(self, stream=None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            tqdm.write(self.format(record), file=self.stream)
        except Exception:
            self.handleError(record)


def parse_size(size: Union[str, int]) -> int:
    """
    Convert a log rotation size to bytes

    Args:
        size: Bytes as an int, or a string like "512", "500KB", "10MB", "1.5G"

    Returns:
        Size in bytes

    Raises:
        ValueError: If the string cannot be read as a size
    """
    if isinstance(size, int):
        return size

    match = re.fullmatch(r'\s*(\d+(?:\.\d+)?)\s*([KMG]?)B?\s*', size.upper())
    if not match:
        raise ValueError(f"Invalid size format: {size}")
    number, unit = match.groups()
    return int(float(number) * SIZE_UNITS[unit])


def _console_handler(level: int, colored: bool) -> logging.Handler:
    handler = ProgressHandler(sys.stdout)
    handler.setLevel(logging.DEBUG)
    handler.addFilter(ConsoleMessageFilter(verbose=level <= logging.DEBUG))
    handler.setFormatter(ColoredFormatter(use_colors=colored))
    return handler


def _file_handler(log_path: Path, level: int, max_size: str, backup_count: int) -> logging.Handler:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=parse_size(max_size),
        backupCount=backup_count,
        encoding='utf-8',
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    console_output: bool = True,
    colored_output: bool = True,
    max_size: str = "10MB",
    backup_count: int = 3,
) -> None:
    """
    Install the console and file handlers on the root logger

    Calling it again replaces the previous handlers, so a CLI that reloads
    its settings can simply call it once more.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to the log file, or None for console only
        console_output: Whether to log to the console at all
        colored_output: Whether console output is colored
        max_size: Rotation size, e.g. "10MB"
        backup_count: Number of rotated files to keep
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    redaction = SecretRedactionFilter()
    handlers = []
    if console_output:
        handlers.append(_console_handler(numeric_level, colored_output))
    if log_file:
        handlers.append(_file_handler(Path(log_file).expanduser(), numeric_level, max_size, backup_count))

    for handler in handlers:
        handler.addFilter(redaction)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(ROOT_NAMESPACE).debug(
        f"Logging configured: level={level.upper()} console={console_output} file={log_file or 'none'}"
    )


def configure_from_settings(settings=None) -> None:
    """
    Configure logging from the logging section of the settings

    A relative log file name is placed in the config directory.
    """
    if settings is None:
        from ..config.settings import get_settings
        settings = get_settings()

    options = settings.logging
    log_file = None
    if options.file:
        path = Path(options.file).expanduser()
        log_file = path if path.is_absolute() else settings.get_config_directory() / path

    setup_logging(
        level=options.level,
        log_file=str(log_file) if log_file else None,
        console_output=options.console_output,
        colored_output=options.colored_output,
        max_size=options.max_size,
        backup_count=options.backup_count,
    )


def get_current_log_file() -> Optional[Path]:
    """Path of the active rotating log file, if file logging is on"""
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            return Path(handler.baseFilename)
    return None


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger with a console_info helper

    console_info logs at INFO but is shown on the console regardless of the
    console filter; use it for progress the user is waiting on (e.g. the
    authorization URL). console_warning and console_error are plain aliases.

    Args:
        name: Logger name (typically __name__)
    """
    logger = logging.getLogger(name)
    if not hasattr(logger, 'console_info'):
        def console_info(message: str) -> None:
            logger.info(message, extra={'console_output': True})

        logger.console_info = console_info
        logger.console_warning = logger.warning
        logger.console_error = logger.error
    return logger


class OperationLogger:
    """
    Progress reporting for a batch operation such as ingesting play events

    Shows a tqdm bar on the console while the file log records start,
    completion time and failures.
    """

    def __init__(self, logger: logging.Logger, operation_name: str, unit: str = "items"):
        self.logger = logger
        self.operation_name = operation_name
        self.unit = unit
        self.start_time: Optional[float] = None
        self.progress_bar: Optional[tqdm] = None

    def start(self, message: Optional[str] = None) -> None:
        self.start_time = time.perf_counter()
        self.logger.console_info(message or f"{self.operation_name}...")
        self.logger.debug(f"Operation started: {self.operation_name}")

    def progress(self, current: int, total: int, rejected: int = 0) -> None:
        """
        Move the bar to `current` of `total`

        Args:
            current: Items handled so far
            total: Items in the batch
            rejected: Items refused so far, shown next to the bar when non-zero
        """
        if self.progress_bar is None:
            self.progress_bar = tqdm(
                total=total,
                desc=self.operation_name,
                unit=self.unit,
                leave=False,
                colour='green',
                dynamic_ncols=True,
            )
        self.progress_bar.update(current - self.progress_bar.n)
        if rejected:
            self.progress_bar.set_postfix(rejected=rejected, refresh=False)

    def complete(self, message: Optional[str] = None) -> None:
        self._close_bar()
        self.logger.console_info(message or f"{self.operation_name} done")
        elapsed = time.perf_counter() - self.start_time if self.start_time else 0.0
        self.logger.debug(f"Operation completed: {self.operation_name} in {elapsed:.2f}s")

    def error(self, message: str, exception: Optional[Exception] = None) -> None:
        self._close_bar()
        self.logger.error(f"{self.operation_name} failed: {message}", exc_info=exception)

    def warning(self, message: str) -> None:
        self.logger.warning(f"{self.operation_name}: {message}")

    def _close_bar(self) -> None:
        if self.progress_bar is not None:
            self.progress_bar.close()
            self.progress_bar = None


def create_operation_logger(name: str, operation: str, unit: str = "items") -> OperationLogger:
    return OperationLogger(get_logger(name), operation, unit)


def log_performance(func):
    """Log how long the wrapped call took (DEBUG, file only)"""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__)
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.debug(f"{func.__qualname__} failed after {time.perf_counter() - started:.3f}s: {e}")
            raise
        logger.debug(f"{func.__qualname__} took {time.perf_counter() - started:.3f}s")
        return result

    return wrapper
