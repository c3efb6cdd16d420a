# Copyright 2025 Roger Cibrian
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Bounded retry with a fixed delay.

Registry writes made by an installer can land after the installer process
exits. The Differ uses retry_until() to re-capture the registry a bounded
number of times. The sleep function is injectable so tests run instantly.

Example:
    Retry until a non-empty result:
        ```python
        from pkgtrace.retry import RetryPolicy, retry_until

        outcome = retry_until(
            lambda attempt: capture(),
            lambda entries: bool(entries),
            RetryPolicy(attempts=3, delay=10.0),
        )
        print(outcome.value, outcome.retries)
        ```
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import time
from typing import Generic, TypeVar

from pkgtrace.logging import Logger, get_global_logger

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry.

    Attributes:
        attempts: Total number of attempts, including the first one.
        delay: Seconds to wait before each retry.
    """

    attempts: int = 3
    delay: float = 10.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {self.attempts}")
        if self.delay < 0:
            raise ValueError(f"delay must be >= 0, got {self.delay}")


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """Result of retry_until().

    Attributes:
        value: Value of the last attempt made.
        attempts: Number of attempts made.
        satisfied: True if the predicate accepted ``value``.
    """

    value: T
    attempts: int
    satisfied: bool

    @property
    def retries(self) -> int:
        return self.attempts - 1


def retry_until(
    operation: Callable[[int], T],
    predicate: Callable[[T], bool],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    logger: Logger | None = None,
    label: str = "operation",
) -> RetryOutcome[T]:
    """Run ``operation`` until ``predicate`` accepts its result.

    Args:
        operation: Called with the 1-based attempt number.
        predicate: Returns True when the result is good enough.
        policy: Attempt limit and delay.
        sleep: Delay function (defaults to time.sleep).
        logger: Optional logger; defaults to the global logger.
        label: Name used in log messages.

    Returns:
        The first accepted result, or the last result once attempts are
        exhausted (``satisfied`` is False in that case).
    """
    if logger is None:
        logger = get_global_logger()

    attempt = 1
    value = operation(attempt)
    while not predicate(value) and attempt < policy.attempts:
        logger.verbose(
            "RETRY",
            f"{label}: attempt {attempt}/{policy.attempts} unsatisfied, "
            f"retrying in {policy.delay:g}s",
        )
        sleep(policy.delay)
        attempt += 1
        value = operation(attempt)

    satisfied = predicate(value)
    if not satisfied:
        logger.warning(
            "RETRY", f"{label}: still unsatisfied after {attempt} attempt(s)"
        )
    return RetryOutcome(value=value, attempts=attempt, satisfied=satisfied)
