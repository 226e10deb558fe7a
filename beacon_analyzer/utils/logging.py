import inspect
import functools
import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

def setup_logger(
    name: str = 'beacon_analyzer',
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    console: bool = True
) -> logging.Logger:
    """Set up a logger with file and/or console output.

    Calling it again for the same logger replaces the handlers it installed
    earlier instead of stacking duplicates.

    Args:
        name: Logger name
        level: Logging level
        log_file: Optional path to log file
        console: Whether to output to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, '_beacon_analyzer', False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    if log_file:
        # Create log directory if needed
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        fh = logging.FileHandler(log_file)
        fh.setLevel(level)
        fh.setFormatter(formatter)
        fh._beacon_analyzer = True
        logger.addHandler(fh)

    if console:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(formatter)
        ch._beacon_analyzer = True
        logger.addHandler(ch)

    return logger

def log_exceptions(logger: logging.Logger):
    """Decorator to log exceptions from sync or async functions.

    Args:
        logger: Logger to use
    """
    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    logger.error(f"Error in {func.__name__}: {e}")
                    raise
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                logger.error(f"Error in {func.__name__}: {e}")
                raise
        return wrapper
    return decorator
