"""Status evaluator - turns a probe result into a status and a transition.

Pure functions: every threshold is passed in, nothing is remembered between
calls.
"""
from dataclasses import dataclass
from typing import Optional

from ..models.notification import (
    EVENT_DEGRADED,
    EVENT_DOWN,
    EVENT_SSL_EXPIRY,
    EVENT_SSL_WARNING,
    EVENT_UP,
)
from ..models.service import (
    FAILURE_STATUSES,
    STATUS_DEGRADED,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    STATUS_TIMEOUT,
    Service,
)
from .probe import ProbeOutcome, ProbeResult

_OUTCOME_STATUS = {
    ProbeOutcome.ONLINE: STATUS_ONLINE,
    ProbeOutcome.DEGRADED: STATUS_DEGRADED,
    ProbeOutcome.OFFLINE: STATUS_OFFLINE,
    ProbeOutcome.TIMEOUT: STATUS_TIMEOUT,
}

# Which rule event a failure status raises
_FAILURE_EVENT = {
    STATUS_DEGRADED: EVENT_DEGRADED,
    STATUS_OFFLINE: EVENT_DOWN,
    STATUS_TIMEOUT: EVENT_DOWN,
}


@dataclass(frozen=True)
class Evaluation:
    """Outcome of evaluating one probe against the previous status."""
    previous_status: Optional[str]
    new_status: str
    transitioned: bool
    is_failure: bool
    detail: Optional[str] = None

    @property
    def event(self) -> Optional[str]:
        """The status event to hand to notification rules, if any.

        Failures raise down/degraded on every check so thresholds can count
        them. Recovery raises up only when leaving a failure status.
        """
        if self.is_failure:
            return _FAILURE_EVENT[self.new_status]
        if self.new_status == STATUS_ONLINE and self.previous_status in FAILURE_STATUSES:
            return EVENT_UP
        return None


def evaluate(
    previous_status: Optional[str],
    result: ProbeResult,
    service: Service,
    degraded_threshold_ms: Optional[int] = None,
) -> Evaluation:
    """Map a probe result to a status and decide whether it is a transition.

    Args:
        previous_status: Status stored on the service before this check
        result: The probe result
        service: The probed service; its degraded_threshold_ms overrides the
            default cutoff
        degraded_threshold_ms: Default response-time cutoff above which an
            online result is degraded (None disables it)
    """
    new_status = _OUTCOME_STATUS[result.outcome]
    detail = result.detail

    cutoff = service.degraded_threshold_ms if service.degraded_threshold_ms is not None else degraded_threshold_ms
    if (
        new_status == STATUS_ONLINE
        and cutoff is not None
        and result.response_time_ms is not None
        and result.response_time_ms > cutoff
    ):
        new_status = STATUS_DEGRADED
        detail = f"High latency: {result.response_time_ms}ms (threshold {cutoff}ms)"

    return Evaluation(
        previous_status=previous_status,
        new_status=new_status,
        transitioned=new_status != previous_status,
        is_failure=new_status in FAILURE_STATUSES,
        detail=detail,
    )


def ssl_band(days_remaining: Optional[int], warning_days: int = 14) -> Optional[str]:
    """The SSL event band a certificate is in, or None when healthy/unknown."""
    if days_remaining is None:
        return None
    if days_remaining <= 0:
        return EVENT_SSL_EXPIRY
    if days_remaining <= warning_days:
        return EVENT_SSL_WARNING
    return None


def evaluate_ssl(
    previous_days: Optional[int],
    days_remaining: Optional[int],
    warning_days: int = 14,
) -> Optional[str]:
    """SSL event raised by this check, independent of up/down status.

    An event is raised when the certificate enters a band (warning or
    expired), not on every check while it stays there.
    """
    band = ssl_band(days_remaining, warning_days)
    if band is None:
        return None
    if band == ssl_band(previous_days, warning_days):
        return None
    return band
