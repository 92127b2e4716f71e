from __future__ import annotations

import logging
from random import random
from time import sleep
from typing import Callable, TypeVar

import httpx

from docqa.errors import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_http_error(exc: httpx.HTTPError) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


def retry_call(
    func: Callable[[], T],
    *,
    label: str,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    sleeper: Callable[[float], None] = sleep,
) -> T:
    """Call ``func`` until it succeeds, retrying transient upstream errors.

    Delays grow exponentially from ``base_delay`` up to ``max_delay`` with up
    to 20% jitter. Permanent upstream errors and anything that is not an
    ``UpstreamError`` propagate immediately.
    """
    delay = base_delay
    attempt = 1

    while True:
        try:
            return func()
        except UpstreamError as exc:
            if not exc.transient or attempt >= max_attempts:
                raise
            logger.warning(
                "%s failed attempt=%d/%d error=%r; retrying in %.2fs",
                label,
                attempt,
                max_attempts,
                exc,
                delay,
            )
            sleeper(delay + random() * 0.2 * delay)
            delay = min(delay * 2, max_delay)
            attempt += 1
