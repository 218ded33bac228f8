from __future__ import annotations

import sys
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ..errors import DeadlineExceeded, RetryableError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff_s: float = 1.0
    max_backoff_s: float = 10.0


@dataclass
class RetryStats:
    attempts: int = 0


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay after the given (1-based) failed attempt: exponential, capped."""
    return min(policy.max_backoff_s, policy.backoff_s * (2 ** (attempt - 1)))


def with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    deadline: Optional[float] = None,
    label: str = "",
    stats: Optional[RetryStats] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call ``fn`` with bounded retry on ``RetryableError``.

    Any other exception propagates immediately. ``deadline`` is an absolute
    ``clock()`` value; no attempt starts and no backoff sleep runs past it.
    """
    total = max(1, int(policy.attempts))
    st = stats if stats is not None else RetryStats()

    for attempt in range(1, total + 1):
        if deadline is not None and clock() >= deadline:
            raise DeadlineExceeded(f"{label}: deadline passed before attempt {attempt}/{total}")
        st.attempts = attempt
        try:
            return fn()
        except RetryableError as e:
            if attempt >= total:
                raise
            delay = backoff_delay(policy, attempt)
            if deadline is not None and clock() + delay >= deadline:
                raise DeadlineExceeded(f"{label}: deadline reached after attempt {attempt}/{total}: {e}") from e
            print(
                f"[modrelease][WARN] {label}: transient error (attempt {attempt}/{total}): {e}. Retrying in {delay:.1f}s",
                file=sys.stderr,
            )
            sleep(delay)

    # Unreachable: the loop either returns or raises.
    raise RuntimeError(f"{label}: retry loop exited without result")
