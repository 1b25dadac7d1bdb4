import logging
import time
from typing import Callable, Tuple, Type, TypeVar

import openai

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Requests the API rejected outright; sending them again cannot succeed.
PERMANENT_ERRORS: Tuple[Type[BaseException], ...] = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.NotFoundError,
)

MAX_SLEEP_SECONDS = 8.0


def with_retry(
    fn: Callable[[], T],
    *,
    label: str = "call",
    retries: int = 3,
    backoff_seconds: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = PERMANENT_ERRORS,
) -> T:
    """Call fn() until it returns, an error outside retry_on (or inside give_up_on) is raised, or retries are used up. Sleeps backoff_seconds * 2**attempt between attempts, capped at MAX_SLEEP_SECONDS.
    Why available: Every OpenAI completion and embedding call goes through here, so a rate limit or dropped connection does not push the run onto a fallback path while a bad key fails at once."""
    attempt = 0
    while True:
        try:
            return fn()
        except give_up_on:
            logger.warning("call_rejected", extra={"label": label, "attempts": attempt + 1})
            raise
        except retry_on as e:
            if attempt >= retries:
                logger.warning("retry_exhausted", extra={"label": label, "attempts": attempt + 1})
                raise
            delay = min(backoff_seconds * (2 ** attempt), MAX_SLEEP_SECONDS)
            logger.info("retrying_call", extra={"label": label, "attempt": attempt + 1, "delay_s": delay, "error": str(e)[:200]})
            time.sleep(delay)
            attempt += 1
