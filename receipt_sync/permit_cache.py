"""Cached permit and local usage counter per subject."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from .admission import AdmissionDecision, DenialReason, LocalUsageRecord, can_consume, rate_spacing
from .errors import PermitError, PermitIntegrityError, TransportError
from .local_store import LocalStore
from .permits import QuotaPermit, SignatureAuthority, format_timestamp
from .transport import PermitGrant
from .utils.logging import warn_once

_LOGGER = logging.getLogger(__name__)


class PermitFetcher(Protocol):
    async def async_fetch_permit(self, subject_id: str, validity_days: int | None = None) -> PermitGrant: ...


class LocalPermitIssuer:
    """Fetcher backed by an in-process :class:`SignatureAuthority`."""

    def __init__(self, authority: SignatureAuthority) -> None:
        self.authority = authority

    async def async_fetch_permit(self, subject_id: str, validity_days: int | None = None) -> PermitGrant:
        return PermitGrant(permit=self.authority.issue(subject_id, validity_days))


class PermitCache:
    """Single owner of the ``permit_usage`` table.

    The permit is refreshed only when absent or expired. An exhausted but
    valid permit stays in place until time passes or a caller forces a
    refresh.
    """

    def __init__(
        self,
        store: LocalStore,
        fetcher: PermitFetcher,
        *,
        verifier: Callable[[QuotaPermit], bool] | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.verifier = verifier
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.logger = logger or _LOGGER
        self.last_refresh_error: str | None = None

    def now(self) -> datetime:
        return self._clock()

    def usage(self, subject_id: str) -> LocalUsageRecord | None:
        payload = self.store.fetch_usage(subject_id)
        if payload is None:
            return None
        try:
            record = LocalUsageRecord.from_dict(payload)
        except PermitIntegrityError as err:
            self.logger.warning("Discarding malformed cached permit for %s: %s", subject_id, err)
            self.store.delete_usage(subject_id)
            return None
        if record.permit is not None and not self._trusted(record.permit):
            self.logger.warning("Discarding cached permit for %s: signature does not verify", subject_id)
            self.store.delete_usage(subject_id)
            return None
        return record

    def _trusted(self, permit: QuotaPermit) -> bool:
        return self.verifier is None or self.verifier(permit)

    async def async_admit(self, subject_id: str) -> AdmissionDecision:
        """Return an admission decision, refreshing an absent or expired permit first."""

        now = self.now()
        usage = self.usage(subject_id)
        if usage is None or usage.permit is None or usage.permit.is_expired(now):
            try:
                usage = await self.async_refresh(subject_id, force=True)
            except (PermitError, PermitIntegrityError, TransportError) as err:
                self.last_refresh_error = str(err)
                warn_once(self.logger, "permit_refresh_failed", f"{subject_id}: {err}")
                if usage is None or usage.permit is None:
                    return AdmissionDecision(allowed=False, reason=DenialReason.NO_PERMIT)
                return AdmissionDecision(allowed=False, reason=DenialReason.PERMIT_EXPIRED)
            now = self.now()
        return can_consume(usage, now)

    def record_consumption(self, subject_id: str) -> LocalUsageRecord | None:
        usage = self.usage(subject_id)
        if usage is None:
            self.logger.warning("Consumption recorded for %s without a cached permit", subject_id)
            return None
        usage.cumulative_count += 1
        usage.last_consumption_at = self.now()
        self.store.save_usage(subject_id, usage.to_dict())
        return usage

    async def async_refresh(
        self,
        subject_id: str,
        *,
        force: bool = False,
        validity_days: int | None = None,
    ) -> LocalUsageRecord:
        """Fetch a new permit and reset usage to the count the authority reports.

        Raises :class:`PermitIntegrityError` when the new permit does not
        verify or was issued for another subject.
        """

        current = self.usage(subject_id)
        if not force and current is not None and current.permit is not None:
            if not current.permit.is_expired(self.now()):
                return current
        grant = await self.fetcher.async_fetch_permit(subject_id, validity_days)
        permit = grant.permit
        if permit.subject_id != subject_id:
            raise PermitIntegrityError(f"permit issued for {permit.subject_id}, expected {subject_id}")
        if not self._trusted(permit):
            raise PermitIntegrityError(f"permit for {subject_id} failed signature verification")
        record = LocalUsageRecord(
            permit=permit,
            cumulative_count=max(0, grant.used),
            last_consumption_at=current.last_consumption_at if current else None,
        )
        self.store.save_usage(subject_id, record.to_dict())
        self.last_refresh_error = None
        self.logger.info(
            "Refreshed %s permit for %s (%d/%d used)",
            permit.tier,
            subject_id,
            record.cumulative_count,
            permit.total_limit,
        )
        return record

    def usage_stats(self, subject_id: str) -> dict[str, Any]:
        usage = self.usage(subject_id)
        if usage is None or usage.permit is None:
            return {"subject_id": subject_id, "has_permit": False}
        permit = usage.permit
        spacing = rate_spacing(permit.daily_rate)
        return {
            "subject_id": subject_id,
            "has_permit": True,
            "tier": permit.tier,
            "used": usage.cumulative_count,
            "total_limit": permit.total_limit,
            "remaining": max(permit.total_limit - usage.cumulative_count, 0),
            "daily_rate": permit.daily_rate,
            "rate_spacing_seconds": spacing.total_seconds() if spacing else None,
            "expires_at": format_timestamp(permit.expires_at),
            "expired": permit.is_expired(self.now()),
            "last_consumption_at": (
                format_timestamp(usage.last_consumption_at) if usage.last_consumption_at else None
            ),
        }


__all__ = ["LocalPermitIssuer", "PermitCache", "PermitFetcher"]
