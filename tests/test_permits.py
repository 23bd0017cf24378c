from dataclasses import replace
from datetime import timedelta

import pytest

from receipt_sync.errors import PermitIntegrityError, PermitRequestError, SigningKeyError
from receipt_sync.permits import (
    INVALID_REQUEST,
    INVALID_SUBJECT,
    INVALID_VALIDITY,
    QuotaPermit,
    SignatureAuthority,
    SigningKeyring,
    format_timestamp,
    verify_permit,
    verify_permit_any,
)


def test_issue_maps_namespace_to_tier(authority, clock) -> None:
    guest = authority.issue("device-abc")
    assert guest.tier == "guest"
    assert (guest.total_limit, guest.daily_rate) == (500, 30)
    assert guest.issued_at == clock()
    assert guest.expires_at == clock() + timedelta(days=30)

    free = authority.issue("user-42")
    assert free.tier == "free"
    assert (free.total_limit, free.daily_rate) == (1000, 50)


@pytest.mark.parametrize("subject", ["admin-1", "device-", "", "devices-1"])
def test_issue_rejects_unknown_namespace(authority, subject) -> None:
    with pytest.raises(PermitRequestError) as err:
        authority.issue(subject)
    assert err.value.reason in (INVALID_SUBJECT, INVALID_REQUEST)


@pytest.mark.parametrize("validity", [0, -3, True, 1.5])
def test_issue_rejects_bad_validity(authority, validity) -> None:
    with pytest.raises(PermitRequestError) as err:
        authority.issue("user-1", validity)
    assert err.value.reason == INVALID_VALIDITY


def test_issue_honours_validity_override(authority, clock) -> None:
    permit = authority.issue("user-1", 7)
    assert permit.expires_at - permit.issued_at == timedelta(days=7)


def test_missing_key_material_is_a_hard_failure(clock) -> None:
    with pytest.raises(SigningKeyError):
        SignatureAuthority(None, clock=clock).issue("user-1")
    with pytest.raises(SigningKeyError):
        SigningKeyring("")


def test_canonical_message_orders_signed_fields(authority) -> None:
    permit = authority.issue("user-1")
    assert permit.canonical_message() == (
        f"user-1:1000:50:{format_timestamp(permit.expires_at)}:{format_timestamp(permit.issued_at)}"
    )
    assert permit.canonical_message().endswith("Z")


@pytest.mark.parametrize(
    "change",
    [
        {"subject_id": "user-2"},
        {"total_limit": 1001},
        {"daily_rate": 0},
        {"expires_at": None},
        {"issued_at": None},
    ],
)
def test_mutating_a_signed_field_breaks_the_signature(authority, change) -> None:
    permit = authority.issue("user-1")
    if "expires_at" in change:
        change = {"expires_at": permit.expires_at + timedelta(seconds=1)}
    if "issued_at" in change:
        change = {"issued_at": permit.issued_at - timedelta(days=1)}
    assert verify_permit(permit, "test-key")
    assert not verify_permit(replace(permit, **change), "test-key")


def test_verification_with_wrong_key_fails(authority) -> None:
    permit = authority.issue("device-1")
    assert not verify_permit(permit, "other-key")
    assert verify_permit_any(permit, ["other-key", "test-key"])
    assert not verify_permit_any(permit, ["other-key", ""])


def test_rotation_keeps_previous_key_valid(keyring, clock) -> None:
    authority = SignatureAuthority(keyring, clock=clock)
    old = authority.issue("user-1")
    keyring.rotate("next-key")
    fresh = authority.issue("user-1")

    assert keyring.keys == ["next-key", "test-key"]
    assert verify_permit(fresh, "next-key")
    assert not verify_permit(fresh, "test-key")
    assert authority.verify(old)
    assert authority.verify(fresh)


def test_rotation_drops_keys_past_grace_list() -> None:
    ring = SigningKeyring("k0", max_previous=2)
    for key in ("k1", "k2", "k3"):
        ring.rotate(key)
    assert ring.keys == ["k3", "k2", "k1"]


def test_keyring_from_env() -> None:
    ring = SigningKeyring.from_env({"PERMIT_SIGNING_KEYS": " new , old ,"})
    assert ring.active == "new"
    assert ring.previous == ["old"]
    with pytest.raises(SigningKeyError):
        SigningKeyring.from_env({})


def test_serialised_permit_still_verifies(authority) -> None:
    permit = authority.issue("user-1")
    restored = QuotaPermit.from_dict(permit.to_dict())
    assert restored == permit
    assert authority.verify(restored)


def test_from_dict_rejects_malformed_permits(authority) -> None:
    payload = authority.issue("user-1").to_dict()
    for field in ("signature", "expires_at", "total_limit"):
        broken = dict(payload)
        broken.pop(field)
        with pytest.raises(PermitIntegrityError):
            QuotaPermit.from_dict(broken)
    with pytest.raises(PermitIntegrityError):
        QuotaPermit.from_dict({**payload, "total_limit": "1000"})
    with pytest.raises(PermitIntegrityError):
        QuotaPermit.from_dict({**payload, "issued_at": "yesterday"})


def test_expiry_boundary_is_inclusive(authority, clock) -> None:
    permit = authority.issue("user-1", 1)
    assert not permit.is_expired(permit.expires_at)
    assert permit.is_expired(permit.expires_at + timedelta(milliseconds=1))
    clock.advance(days=1)
    assert not authority.is_expired(permit)
    clock.advance(milliseconds=1)
    assert authority.is_expired(permit)
