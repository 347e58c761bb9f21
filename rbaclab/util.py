import logging
import time
from functools import wraps
from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import TypeVar
from typing import cast

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000

F = TypeVar("F", bound=Callable[..., Any])


def timeit(method: F) -> F:
    """Log how long the wrapped function took at debug level."""

    @wraps(method)
    def timed(*args, **kwargs):
        start = time.perf_counter()
        try:
            return method(*args, **kwargs)
        finally:
            elapsed = time.perf_counter() - start
            logger.debug(f"{method.__module__}.{method.__name__} took {elapsed:.3f}s")

    return cast(F, timed)


def batch(items: Iterable, size: int = DEFAULT_BATCH_SIZE) -> List[List]:
    """
    Takes an Iterable of items and returns a list of lists of size `size`. The last list may be smaller than `size`.
    """
    items = list(items)
    return [items[i : i + size] for i in range(0, len(items), size)]


def backoff_handler(details: Dict) -> None:
    """
    Custom backoff handler for use with the backoff library.
    """
    logger.warning(
        "Backing off {wait:0.1f} seconds after {tries} tries. Calling function {target}".format(
            **details
        ),
    )


def dedupe(values: Iterable[str]) -> List[str]:
    """Return the values in first-seen order without duplicates."""
    result: List[str] = []
    for value in values:
        if value not in result:
            result.append(value)
    return result
