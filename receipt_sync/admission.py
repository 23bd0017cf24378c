"""Quota admission arithmetic for cached permits."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from .const import SECONDS_PER_DAY
from .permits import QuotaPermit, format_timestamp, parse_timestamp


class DenialReason(str, Enum):
    NO_PERMIT = "no_permit"
    PERMIT_EXPIRED = "permit_expired"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"


@dataclass(slots=True)
class LocalUsageRecord:
    """Cached permit plus the client-side consumption counter for it."""

    permit: QuotaPermit | None
    cumulative_count: int = 0
    last_consumption_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "permit": self.permit.to_dict() if self.permit else None,
            "cumulative_count": self.cumulative_count,
            "last_consumption_at": (
                format_timestamp(self.last_consumption_at) if self.last_consumption_at else None
            ),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LocalUsageRecord:
        permit_raw = payload.get("permit")
        last_raw = payload.get("last_consumption_at")
        return cls(
            permit=QuotaPermit.from_dict(permit_raw) if permit_raw else None,
            cumulative_count=int(payload.get("cumulative_count") or 0),
            last_consumption_at=parse_timestamp(last_raw) if last_raw else None,
        )


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    allowed: bool
    reason: DenialReason | None = None
    retry_after: float | None = None

    @property
    def pauses_queue(self) -> bool:
        """Only total-quota exhaustion halts the queue; other denials wait a tick."""

        return self.reason is DenialReason.QUOTA_EXCEEDED


ALLOWED = AdmissionDecision(allowed=True)


def rate_spacing(daily_rate: int) -> timedelta | None:
    """Return the minimum spacing between consumptions, ``None`` when unlimited."""

    if daily_rate <= 0:
        return None
    return timedelta(seconds=SECONDS_PER_DAY / daily_rate)


def can_consume(usage: LocalUsageRecord | None, now: datetime) -> AdmissionDecision:
    """Decide whether one unit of quota may be consumed at ``now``.

    Checks run in a fixed order: permit present, permit not expired, total
    quota remaining, then the sustained-rate spacing. A permit is valid up to
    and including ``expires_at``; a consumption exactly one spacing interval
    after the previous one is admitted.
    """

    if usage is None or usage.permit is None:
        return AdmissionDecision(allowed=False, reason=DenialReason.NO_PERMIT)
    permit = usage.permit
    if permit.is_expired(now):
        return AdmissionDecision(allowed=False, reason=DenialReason.PERMIT_EXPIRED)
    if usage.cumulative_count >= permit.total_limit:
        return AdmissionDecision(allowed=False, reason=DenialReason.QUOTA_EXCEEDED)
    spacing = rate_spacing(permit.daily_rate)
    if spacing is not None and usage.last_consumption_at is not None:
        elapsed = now - usage.last_consumption_at
        if elapsed < spacing:
            return AdmissionDecision(
                allowed=False,
                reason=DenialReason.RATE_LIMITED,
                retry_after=(spacing - elapsed).total_seconds(),
            )
    return ALLOWED


__all__ = [
    "ALLOWED",
    "AdmissionDecision",
    "DenialReason",
    "LocalUsageRecord",
    "can_consume",
    "rate_spacing",
]
