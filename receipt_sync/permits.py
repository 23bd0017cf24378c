"""Signed quota permits: issuance, verification and key rotation."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from .const import (
    ENV_SIGNING_KEYS,
    SUBJECT_PREFIX_DEVICE,
    SUBJECT_PREFIX_USER,
    TIER_BASIC,
    TIER_FREE,
    TIER_GUEST,
    TIER_PRO,
)
from .errors import PermitIntegrityError, PermitRequestError, SigningKeyError

_LOGGER = logging.getLogger(__name__)

INVALID_REQUEST = "INVALID_REQUEST"
INVALID_SUBJECT = "INVALID_SUBJECT"
INVALID_VALIDITY = "INVALID_VALIDITY"
INTERNAL = "INTERNAL"

MAX_PREVIOUS_KEYS = 3


@dataclass(frozen=True, slots=True)
class TierConfig:
    total_limit: int
    daily_rate: int
    validity_days: int


TIER_CONFIGS: dict[str, TierConfig] = {
    TIER_GUEST: TierConfig(total_limit=500, daily_rate=30, validity_days=30),
    TIER_FREE: TierConfig(total_limit=1000, daily_rate=50, validity_days=30),
    TIER_BASIC: TierConfig(total_limit=3000, daily_rate=100, validity_days=30),
    # daily_rate 0 means only the total limit applies
    TIER_PRO: TierConfig(total_limit=10000, daily_rate=0, validity_days=30),
}

SUBJECT_TIERS: dict[str, str] = {
    SUBJECT_PREFIX_DEVICE: TIER_GUEST,
    SUBJECT_PREFIX_USER: TIER_FREE,
}


def format_timestamp(value: datetime) -> str:
    """Render ``value`` as UTC ISO 8601 with millisecond precision."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass(frozen=True, slots=True)
class QuotaPermit:
    """Signed capability asserting a subject's tier, limits and validity window."""

    subject_id: str
    tier: str
    total_limit: int
    daily_rate: int
    issued_at: datetime
    expires_at: datetime
    signature: str = ""

    def canonical_message(self) -> str:
        return ":".join(
            (
                self.subject_id,
                str(self.total_limit),
                str(self.daily_rate),
                format_timestamp(self.expires_at),
                format_timestamp(self.issued_at),
            )
        )

    def is_expired(self, now: datetime) -> bool:
        """Return ``True`` once ``now`` is strictly past ``expires_at``."""

        return self.expires_at < now

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "tier": self.tier,
            "total_limit": self.total_limit,
            "daily_rate": self.daily_rate,
            "issued_at": format_timestamp(self.issued_at),
            "expires_at": format_timestamp(self.expires_at),
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> QuotaPermit:
        if not isinstance(payload, Mapping):
            raise PermitIntegrityError("permit payload must be an object")
        try:
            subject_id = str(payload["subject_id"]).strip()
            tier = str(payload["tier"]).strip()
            total_limit = _strict_int(payload["total_limit"])
            daily_rate = _strict_int(payload["daily_rate"])
            issued_at = parse_timestamp(payload["issued_at"])
            expires_at = parse_timestamp(payload["expires_at"])
            signature = payload["signature"]
        except KeyError as err:
            raise PermitIntegrityError(f"permit missing field {err.args[0]}") from err
        except (TypeError, ValueError) as err:
            raise PermitIntegrityError(f"malformed permit: {err}") from err
        if not subject_id or not isinstance(signature, str) or not signature:
            raise PermitIntegrityError("permit subject and signature are required")
        if total_limit < 0 or daily_rate < 0:
            raise PermitIntegrityError("permit limits must not be negative")
        return cls(
            subject_id=subject_id,
            tier=tier,
            total_limit=total_limit,
            daily_rate=daily_rate,
            issued_at=issued_at,
            expires_at=expires_at,
            signature=signature,
        )


def _strict_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected integer, got {value!r}")
    return value


def sign_permit(permit: QuotaPermit, key: str) -> str:
    """Return the hex HMAC-SHA256 of the permit's signed fields under ``key``."""

    if not key:
        raise SigningKeyError("signing key is empty")
    digest = hmac.new(key.encode(), permit.canonical_message().encode(), hashlib.sha256)
    return digest.hexdigest()


def verify_permit(permit: QuotaPermit, key: str) -> bool:
    if not key or not permit.signature:
        return False
    expected = sign_permit(permit, key)
    return hmac.compare_digest(expected, permit.signature)


def verify_permit_any(permit: QuotaPermit, keys: Iterable[str]) -> bool:
    """Return ``True`` if any key in ``keys`` produced the permit's signature."""

    return any(verify_permit(permit, key) for key in keys if key)


def tier_for_subject(subject_id: str) -> str:
    if not isinstance(subject_id, str) or not subject_id.strip():
        raise PermitRequestError("subject_id is required", reason=INVALID_REQUEST)
    for prefix, tier in SUBJECT_TIERS.items():
        if subject_id.startswith(prefix) and len(subject_id) > len(prefix):
            return tier
    raise PermitRequestError(f"unrecognised subject namespace: {subject_id}", reason=INVALID_SUBJECT)


class SigningKeyring:
    """Active signing key plus previously active keys still accepted for verification."""

    def __init__(self, active: str, previous: Iterable[str] = (), *, max_previous: int = MAX_PREVIOUS_KEYS) -> None:
        if not active:
            raise SigningKeyError("active signing key is missing")
        self.active = active
        self.max_previous = max_previous
        self.previous = [key for key in previous if key and key != active][:max_previous]

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> SigningKeyring:
        """Build a keyring from a comma separated list, active key first."""

        env = os.environ if env is None else env
        keys = [chunk.strip() for chunk in env.get(ENV_SIGNING_KEYS, "").split(",") if chunk.strip()]
        if not keys:
            raise SigningKeyError(f"{ENV_SIGNING_KEYS} is not set")
        return cls(keys[0], keys[1:])

    @property
    def keys(self) -> list[str]:
        return [self.active, *self.previous]

    def rotate(self, new_key: str) -> None:
        if not new_key:
            raise SigningKeyError("replacement signing key is empty")
        if new_key == self.active:
            return
        self.previous = [self.active, *(key for key in self.previous if key != new_key)][: self.max_previous]
        self.active = new_key
        _LOGGER.info("Rotated permit signing key; %d previous key(s) remain valid", len(self.previous))


class SignatureAuthority:
    """Issue and verify quota permits."""

    def __init__(
        self,
        keyring: SigningKeyring | None,
        *,
        tiers: Mapping[str, TierConfig] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.keyring = keyring
        self.tiers = dict(tiers or TIER_CONFIGS)
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def issue(self, subject_id: str, validity_days: int | None = None) -> QuotaPermit:
        tier = tier_for_subject(subject_id)
        if validity_days is not None and (
            isinstance(validity_days, bool) or not isinstance(validity_days, int) or validity_days <= 0
        ):
            raise PermitRequestError("validity_days must be a positive integer", reason=INVALID_VALIDITY)
        if self.keyring is None:
            raise SigningKeyError("no signing key configured")
        config = self.tiers[tier]
        # millisecond precision keeps the signed text stable across a round trip
        now = self._clock().astimezone(UTC)
        now = now.replace(microsecond=now.microsecond // 1000 * 1000)
        days = validity_days if validity_days is not None else config.validity_days
        unsigned = QuotaPermit(
            subject_id=subject_id,
            tier=tier,
            total_limit=config.total_limit,
            daily_rate=config.daily_rate,
            issued_at=now,
            expires_at=now + timedelta(days=days),
        )
        permit = replace(unsigned, signature=sign_permit(unsigned, self.keyring.active))
        _LOGGER.info("Issued %s permit for %s expiring %s", tier, subject_id, format_timestamp(permit.expires_at))
        return permit

    def verify(self, permit: QuotaPermit) -> bool:
        if self.keyring is None:
            return False
        return verify_permit_any(permit, self.keyring.keys)

    def is_expired(self, permit: QuotaPermit, now: datetime | None = None) -> bool:
        return permit.is_expired(now or self._clock())


__all__ = [
    "INTERNAL",
    "INVALID_REQUEST",
    "INVALID_SUBJECT",
    "INVALID_VALIDITY",
    "QuotaPermit",
    "SignatureAuthority",
    "SigningKeyring",
    "TIER_CONFIGS",
    "TierConfig",
    "format_timestamp",
    "parse_timestamp",
    "sign_permit",
    "tier_for_subject",
    "verify_permit",
    "verify_permit_any",
]
