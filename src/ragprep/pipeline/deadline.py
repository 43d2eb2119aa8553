"""Bounded waits for blocking external calls.

External clients have no timeout of their own that the pipeline can rely
on. The call runs on a worker thread; on expiry the caller gets
``ServiceTimeout`` while the in-flight call is left to finish on its own.
"""

import contextvars
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

from ragprep.errors import ServiceTimeout

T = TypeVar("T")


def call_with_deadline(
    fn: Callable[..., T],
    *args,
    timeout: Optional[float],
    what: str = "external call",
    **kwargs,
) -> T:
    """Run ``fn(*args, **kwargs)`` and wait at most ``timeout`` seconds.

    Args:
        fn: Blocking callable.
        timeout: Seconds to wait; ``None`` or ``<= 0`` calls inline.
        what: Label used in the timeout message.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        ServiceTimeout: If the wait expired.
        Exception: Anything ``fn`` raised.
    """
    if not timeout or timeout <= 0:
        return fn(*args, **kwargs)

    # Copy context so job-scoped logging still applies on the worker thread
    ctx = contextvars.copy_context()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ragprep-call")
    try:
        future = executor.submit(ctx.run, fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise ServiceTimeout(f"{what} did not finish within {timeout:.0f}s") from None
    finally:
        executor.shutdown(wait=False)
