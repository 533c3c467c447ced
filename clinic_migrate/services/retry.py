"""Bounded retry with backoff and a per-call deadline for vendor calls."""

import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..errors import VendorConnectionError, VendorTimeoutError

logger = logging.getLogger(__name__)

RetryCallback = Callable[[int, VendorConnectionError], None]


def call_with_deadline(
    func: Callable[..., Any],
    timeout: Optional[float],
    *args,
    executor: Optional[Executor] = None,
    **kwargs
) -> Any:
    """
    Run a call with an explicit deadline.

    The call runs on a worker thread from `executor` (a private one-off
    executor when none is given). When the deadline passes the caller stops
    waiting and the worker is left to finish on its own.

    Raises:
        VendorTimeoutError: The deadline expired
    """
    if not timeout:
        return func(*args, **kwargs)

    owned = executor is None
    if owned:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vendor-call")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeout:
        future.cancel()
        raise VendorTimeoutError(
            f"Vendor call exceeded {timeout:g}s deadline",
            {"timeout": timeout},
        )
    finally:
        if owned:
            executor.shutdown(wait=False)


@dataclass
class RetryPolicy:
    """
    Retry VendorConnectionError up to max_retries times.

    Delay before retry n is backoff_factor * 2 ** (n - 1), the same schedule
    urllib3 uses for HTTP retries. This is the only retry layer: connector
    transports do not retry on their own, so every retry reaches on_retry.
    """
    max_retries: int = 3
    backoff_factor: float = 2.0
    timeout: Optional[float] = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def backoff(self, retry_number: int) -> float:
        return self.backoff_factor * (2 ** (retry_number - 1))

    def attempt(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """One attempt under the deadline, on a one-off worker."""
        return call_with_deadline(func, self.timeout, *args, **kwargs)

    def call(
        self,
        func: Callable[..., Any],
        *args,
        on_retry: Optional[RetryCallback] = None,
        attempt: Optional[Callable[..., Any]] = None,
        **kwargs
    ) -> Any:
        """
        Call func, retrying vendor failures with backoff.

        Args:
            func: Vendor call
            on_retry: Called with (retry number, error) before each retry
            attempt: Runs a single attempt; defaults to self.attempt

        Returns:
            Whatever func returns

        Raises:
            VendorConnectionError: All attempts failed
        """
        attempt = attempt or self.attempt
        retry_number = 0
        while True:
            try:
                return attempt(func, *args, **kwargs)
            except VendorConnectionError as e:
                if not e.retryable or retry_number >= self.max_retries:
                    logger.error(f"Vendor call failed after {retry_number + 1} attempt(s): {e.message}")
                    raise
                retry_number += 1
                delay = self.backoff(retry_number)
                logger.warning(f"Vendor call failed ({e.message}); retry {retry_number}/{self.max_retries} in {delay:g}s")
                if on_retry is not None:
                    on_retry(retry_number, e)
                if delay > 0:
                    self.sleep(delay)
