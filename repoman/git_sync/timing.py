"""Timing logs for repository jobs."""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Generator, Optional

logger = logging.getLogger('repoman.git_sync.timing')

# Operations slower than this are logged as warnings
SLOW_OPERATION_SECONDS = 30.0


@dataclass
class OperationTiming:
    """Duration of one timed operation."""
    operation: str
    start_time: float
    duration: float = 0.0
    success: bool = True


@contextmanager
def time_operation(
    operation: str,
    context: Optional[Dict[str, Any]] = None,
    log_level: int = logging.INFO
) -> Generator[OperationTiming, None, None]:
    """
    Context manager for timing operations.

    Args:
        operation: Name of the operation being timed
        context: Additional context information, logged at debug level
        log_level: Logging level for the start/finish messages

    Yields:
        OperationTiming, filled in when the block exits
    """
    timing = OperationTiming(operation=operation, start_time=time.monotonic())
    logger.log(log_level, f"⏱️ Starting {operation}")
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items())
        logger.debug(f"📊 {operation} context: {context_str}")

    try:
        yield timing
    except BaseException as e:
        timing.success = False
        timing.duration = time.monotonic() - timing.start_time
        logger.error(f"❌ {operation} failed after {timing.duration:.3f}s: {e}")
        raise
    else:
        timing.duration = time.monotonic() - timing.start_time
        logger.log(log_level, f"✅ {operation} completed in {timing.duration:.3f}s")
        if timing.duration > SLOW_OPERATION_SECONDS:
            logger.warning(f"⚠️ Slow operation detected: '{operation}' took {timing.duration:.3f}s")
