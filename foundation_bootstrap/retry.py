"""
Backoff policies shared by every phase that waits on the provider.

Waiting is done through an injected ``sleep`` callable so tests can drive
the loops with a fake clock.
"""

import random
from dataclasses import dataclass
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from . import output
from .errors import BootstrapError, PropagationPending, TransientProviderError, translate


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int
    interval: float
    multiplier: float = 1.0
    max_interval: Optional[float] = None
    jitter: float = 0.0

    def delays(self, rng: Optional[random.Random] = None) -> list:
        """Delays slept between attempts (one fewer than max_attempts)."""
        rng = rng or random
        delays = []
        delay = self.interval
        for _ in range(max(self.max_attempts - 1, 0)):
            value = delay
            if self.max_interval is not None:
                value = min(value, self.max_interval)
            if self.jitter:
                value += rng.uniform(0, self.jitter)
            delays.append(value)
            delay *= self.multiplier
        return delays

    @property
    def budget_seconds(self) -> float:
        return sum(self.delays(random.Random(0)))

    @classmethod
    def from_dict(cls, data: dict) -> "BackoffPolicy":
        return cls(
            max_attempts=int(data["max_attempts"]),
            interval=float(data["interval"]),
            multiplier=float(data.get("multiplier", 1.0)),
            max_interval=(
                float(data["max_interval"]) if data.get("max_interval") is not None else None
            ),
            jitter=float(data.get("jitter", 0.0)),
        )


def with_retry(
    fn: Callable,
    policy: BackoffPolicy,
    sleep: Callable[[float], None],
    description: str = "",
):
    """Call fn, retrying only transient provider errors.

    Provider errors are translated first; anything that is not retryable is
    raised immediately in translated form.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except (ClientError, BotoCoreError) as e:
            err = translate(e)
            err.__cause__ = e
        except BootstrapError as e:
            err = e

        if not err.retryable or attempt > len(delays):
            raise err
        delay = delays[attempt - 1]
        output.debug(
            f"{description or 'call'} failed with {err.code or type(err).__name__}, "
            f"retrying in {delay:.0f}s ({attempt}/{policy.max_attempts})"
        )
        sleep(delay)


def poll_until(
    check: Callable[[], bool],
    policy: BackoffPolicy,
    sleep: Callable[[float], None],
    description: str,
):
    """Call check until it returns a truthy value or the policy is exhausted.

    A transient provider error counts as "not ready yet"; any other error
    raised by check aborts the wait. Raises PropagationPending when the
    attempt bound is exceeded.
    """
    delays = policy.delays()
    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = check()
        except (ClientError, BotoCoreError) as e:
            err = translate(e)
            if not err.retryable:
                raise err from e
            output.debug(f"{description}: {err.code or type(err).__name__}, still waiting")
            result = None
        except TransientProviderError as e:
            output.debug(f"{description}: {e.code or type(e).__name__}, still waiting")
            result = None
        if result:
            return result
        if attempt <= len(delays):
            output.debug(f"Waiting for {description} ({attempt}/{policy.max_attempts})")
            sleep(delays[attempt - 1])
    raise PropagationPending(
        f"Timed out waiting for {description} after {policy.max_attempts} attempts",
        code="Timeout",
    )
