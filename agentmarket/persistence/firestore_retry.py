from __future__ import annotations

import logging
import random
import threading
from typing import Callable, TypeVar

from google.api_core import exceptions as gexc

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Set by the service on shutdown so blocked retry sleeps end promptly.
SHUTDOWN_EVENT = threading.Event()

_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    gexc.Aborted,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.ResourceExhausted,
    gexc.ServiceUnavailable,
    gexc.TooManyRequests,
)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, _TRANSIENT_EXCEPTIONS)


def with_firestore_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = 5,
    base_delay_s: float = 0.2,
    max_delay_s: float = 5.0,
) -> T:
    """
    Retry transient Firestore errors with exponential backoff + full jitter.

    Blocking; callers on the event loop run it via asyncio.to_thread.
    Non-transient errors (NotFound, FailedPrecondition, domain errors raised
    inside transactional bodies) propagate immediately.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            if (not is_transient(e)) or attempt >= (max_attempts - 1):
                raise

            sleep_s = min(max_delay_s, base_delay_s * (2**attempt))
            logger.info("firestore_retry iteration=%d sleep_s=%.3f error=%s", attempt + 1, float(sleep_s), type(e).__name__)
            if SHUTDOWN_EVENT.is_set():
                raise InterruptedError("shutdown requested") from e
            SHUTDOWN_EVENT.wait(timeout=float(random.random() * float(sleep_s)))
            attempt += 1
