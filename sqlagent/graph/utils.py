from __future__ import annotations
import logging
from contextlib import contextmanager
from time import perf_counter
from typing import Dict, Iterator

from tenacity import before_sleep_log, retry, stop_after_attempt, wait_random_exponential

logger = logging.getLogger(__name__)


@contextmanager
def timed(durations: Dict[str, float], stage: str) -> Iterator[None]:
    """Record how long the wrapped block took under ``durations[stage]`` (seconds)."""
    t0 = perf_counter()
    try:
        yield
    finally:
        durations[stage] = round(perf_counter() - t0, 4)


def make_retry(attempts: int = 3, max_wait: float = 8):
    return retry(
        reraise=True,
        stop=stop_after_attempt(attempts),
        wait=wait_random_exponential(multiplier=1, max=max_wait),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
