"""
Bounded retry and polling shared by the resolver, the downloader and the readiness gates
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Tuple, Type

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_never,
    wait_fixed,
)

from .errors import ReadinessTimeoutError

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times to try and how long to wait in between

    :param max_attempts: Attempts before giving up. None retries forever
    :param interval: Seconds to sleep between attempts
    :param sleep: Sleep function, swapped out in tests
    """
    max_attempts: Optional[int]
    interval: float
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def for_duration(cls, timeout: float, interval: float, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        """
        Counts elapsed time in whole intervals, so a 600s timeout at 10s gives 60 checks
        """
        return cls(max_attempts=max(1, int(timeout // interval)), interval=interval, sleep=sleep)

    @property
    def timeout(self) -> Optional[float]:
        if self.max_attempts is None:
            return None
        return self.max_attempts * self.interval

    def retrying(self, **kwargs) -> Retrying:
        stop = stop_never if self.max_attempts is None else stop_after_attempt(self.max_attempts)
        return Retrying(stop=stop, wait=wait_fixed(self.interval), sleep=self.sleep, **kwargs)


def _log_pending(what: str) -> Callable[[RetryCallState], None]:
    def log_it(retry_state: RetryCallState):
        _, detail = retry_state.outcome.result()
        LOG.info('Waiting for %s (check %s): %s', what, retry_state.attempt_number, detail)
    return log_it


def poll_until(check: Callable[[], Tuple[bool, Any]], policy: RetryPolicy, what: str) -> Any:
    """
    Calls `check` until it reports done. Every call is a full re-evaluation.

    :param check: Returns a tuple of (done, detail). `detail` is logged while waiting and reported on timeout
    :param policy: Retry policy for the loop
    :param what: Human readable name of the condition
    :return: The detail from the successful check
    :raises ReadinessTimeoutError: If the policy runs out of attempts
    """
    try:
        _, detail = policy.retrying(retry=retry_if_result(lambda outcome: not outcome[0]),
                                    before_sleep=_log_pending(what))(check)
    except RetryError as e:
        _, detail = e.last_attempt.result()
        blockers = detail if isinstance(detail, (list, tuple)) else [detail]
        raise ReadinessTimeoutError(f"Timeout reached after {policy.timeout}s waiting for {what}",
                                    blockers=blockers)
    LOG.info('Done waiting for %s', what)
    return detail


def attempt(func: Callable[[], Any], policy: RetryPolicy,
            retry_on: Sequence[Type[BaseException]] = (Exception,)) -> Any:
    """
    Calls `func` until it stops raising one of `retry_on`. The last error is re-raised once attempts run out
    """
    return policy.retrying(retry=retry_if_exception_type(tuple(retry_on)),
                           before_sleep=before_sleep_log(LOG, logging.INFO),
                           reraise=True)(func)
