from __future__ import annotations

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retries(
    func: Callable[[], T],
    *,
    retries: int,
    retry_delay: float,
    is_transient: Callable[[Exception], bool],
    retry_on: Tuple[Type[Exception], ...] = (Exception,),
    operation: str = "call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``func`` with bounded exponential backoff for transient failures.

    Non-transient failures are raised on the first occurrence. After
    ``retries`` extra attempts the last transient failure is raised.
    """
    if retries < 0:
        raise ValueError(f"retries must be >= 0, got {retries}")

    attempt = 0
    while True:
        try:
            return func()
        except retry_on as exc:
            if not is_transient(exc):
                raise
            logger.warning("%s attempt %s failed: %s", operation, attempt + 1, exc)
            if attempt >= retries:
                raise
            sleep(retry_delay * (2**attempt))
            attempt += 1
