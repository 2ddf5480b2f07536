import logging
import time
import functools
from typing import Any, Callable

logger = logging.getLogger(__name__)

def log_execution_time(func: Callable) -> Callable:
    """Decorator to log how long a coroutine function took."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        start_time = time.time()
        try:
            result = await func(*args, **kwargs)
            execution_time = time.time() - start_time
            logger.info(f"Function {func.__name__} executed in {execution_time:.3f}s")
            return result
        except Exception as e:
            execution_time = time.time() - start_time
            logger.error(f"Function {func.__name__} failed after {execution_time:.3f}s: {str(e)}")
            raise
    return wrapper
