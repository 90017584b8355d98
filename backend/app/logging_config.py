"""
Logging configuration for CallGuard.
Provides console + rotating file logging and a few helpers for tracing
storage, upload and analysis operations.
"""
import functools
import inspect
import logging
import logging.handlers
import os
from datetime import datetime
from pathlib import Path

COMPONENT_LOGGERS = [
    'callguard.api',
    'callguard.upload',
    'callguard.storage',
    'callguard.analysis',
    'callguard.pipeline',
    'callguard.poller',
]


def setup_logging(log_level: str = "INFO", log_file: str = "logs/callguard.log"):
    """
    Set up logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file

    Returns:
        Dict of the component loggers keyed by name
    """
    # Route logs to CALLGUARD_DATA_DIR when available
    data_dir = os.getenv("CALLGUARD_DATA_DIR")
    if data_dir:
        log_file = str(Path(data_dir) / "logs" / Path(log_file).name)
    log_dir = Path(log_file).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    )

    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    # Avoid stacking handlers when the app factory runs more than once
    for handler in list(root_logger.handlers):
        if getattr(handler, "_callguard", False):
            root_logger.removeHandler(handler)
            handler.close()
    for handler in (file_handler, console_handler):
        handler._callguard = True
        root_logger.addHandler(handler)

    loggers = {name: logging.getLogger(name) for name in COMPONENT_LOGGERS}
    for logger in loggers.values():
        logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    return loggers


def log_function_call(func):
    """
    Decorator to log function calls with parameters and return values.
    Works for both plain and async functions.
    """
    logger = logging.getLogger(f'callguard.{func.__module__.rsplit(".", 1)[-1]}')

    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger.debug(f"Entering {func.__name__} with args={args}, kwargs={kwargs}")
            try:
                result = await func(*args, **kwargs)
                logger.debug(f"Exiting {func.__name__} with result={result}")
                return result
            except Exception as e:
                logger.error(f"Error in {func.__name__}: {e}")
                raise
        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger.debug(f"Entering {func.__name__} with args={args}, kwargs={kwargs}")
        try:
            result = func(*args, **kwargs)
            logger.debug(f"Exiting {func.__name__} with result={result}")
            return result
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}")
            raise

    return wrapper


def log_file_operation(operation: str):
    """
    Decorator to log blob operations (upload, download, delete, backup).
    The decorated coroutine must take the filename as its first argument
    after ``self``.

    Args:
        operation: Type of operation (upload, download, delete, backup)
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, filename, *args, **kwargs):
            logger = logging.getLogger('callguard.storage')
            logger.info(f"Starting {operation} operation: filename={filename}")
            start_time = datetime.now()

            try:
                result = await func(self, filename, *args, **kwargs)
                duration = (datetime.now() - start_time).total_seconds()
                logger.info(f"Completed {operation} operation in {duration:.2f}s: filename={filename}")
                return result
            except Exception as e:
                duration = (datetime.now() - start_time).total_seconds()
                logger.error(f"Failed {operation} operation after {duration:.2f}s: filename={filename}, error={e}")
                raise

        return wrapper
    return decorator


class PerformanceMonitor:
    """Monitor performance of operations for debugging."""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self.start_time = None
        self.duration = None
        self.logger = logging.getLogger('callguard.performance')

    def __enter__(self):
        self.start_time = datetime.now()
        self.logger.debug(f"Starting {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = (datetime.now() - self.start_time).total_seconds()
        if exc_type:
            self.logger.error(f"Failed {self.operation_name} after {self.duration:.2f}s: {exc_val}")
        else:
            self.logger.info(f"Completed {self.operation_name} in {self.duration:.2f}s")
