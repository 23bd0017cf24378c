from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request

from receipt_sync.errors import PermitRequestError, RecordIntegrityError, SigningKeyError
from receipt_sync.intents import IntentLedger
from receipt_sync.models import DateRange, DomainRecord
from receipt_sync.permits import (
    INTERNAL,
    INVALID_REQUEST,
    INVALID_VALIDITY,
    SignatureAuthority,
    SigningKeyring,
)
from receipt_sync.sync_engine import Winner, resolve_conflict

from .auth import ROLE_ADMIN, ROLE_DEVICE, Principal, principal_dependency

_LOGGER = logging.getLogger(__name__)


@dataclass
class PendingWrite:
    key: str
    subject_id: str
    result: dict[str, Any] | None = None


class CloudState:
    """In-memory reference implementation of the remote service."""

    def __init__(
        self,
        keyring: SigningKeyring | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.authority = SignatureAuthority(keyring, clock=clock)
        self.ledger = IntentLedger(":memory:", clock=clock)
        self.pending_writes: dict[str, PendingWrite] = {}
        self.blobs: dict[str, bytes] = {}
        self.records: dict[tuple[str, str], dict[str, Any]] = {}
        self.permits_issued = 0
        self.locations_issued = 0

    # ------------------------------------------------------------------
    async def issue_permit(
        self,
        subject_id: str,
        validity_days: int | None,
        intent_id: str | None,
    ) -> dict[str, Any]:
        async def _issue() -> dict[str, Any]:
            permit = self.authority.issue(subject_id, validity_days)
            self.permits_issued += 1
            return permit.to_dict()

        outcome = await self.ledger.async_run_once(intent_id, _issue)
        return outcome.result

    async def presign(self, subject_id: str, file_name: str, intent_id: str, base_url: str) -> dict[str, str]:
        async def _mint() -> dict[str, str]:
            key = f"{subject_id}/{uuid.uuid4().hex}/{file_name}"
            token = secrets.token_urlsafe(24)
            self.pending_writes[token] = PendingWrite(key=key, subject_id=subject_id)
            self.locations_issued += 1
            return {"location": f"{base_url.rstrip('/')}/blobs/{key}", "token": token, "key": key}

        outcome = await self.ledger.async_run_once(intent_id, _mint)
        return outcome.result

    def write_blob(self, key: str, token: str, data: bytes) -> dict[str, Any]:
        """Store ``data`` once per token; a repeated write returns the first result."""

        pending = self.pending_writes.get(token)
        if pending is None or pending.key != key:
            raise HTTPException(status_code=403, detail={"error": "invalid_token"})
        if pending.result is not None:
            _LOGGER.debug("Replaying write result for %s", key)
            return pending.result
        self.blobs[key] = data
        pending.result = {"key": key, "size": len(data)}
        return pending.result

    def list_records(self, subject_id: str, date_range: DateRange) -> list[dict[str, Any]]:
        items = [
            payload
            for (owner, _), payload in self.records.items()
            if owner == subject_id and date_range.contains(payload.get("record_date"))
        ]
        return sorted(items, key=lambda item: (item.get("record_date") or "", item["id"]))

    def put_record(self, subject_id: str, payload: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        """Apply a record write unless the stored version wins the conflict rules."""

        incoming = DomainRecord.from_payload(payload)
        incoming.subject_id = subject_id
        existing = self.records.get((subject_id, incoming.id))
        if existing is not None:
            resolution = resolve_conflict(incoming, DomainRecord.from_payload(existing))
            if resolution.winner is Winner.REMOTE:
                _LOGGER.debug("Kept stored %s over write (%s)", incoming.id, resolution.rule.value)
                return existing, False
        stored = incoming.to_payload()
        self.records[(subject_id, incoming.id)] = stored
        return stored, True


def _error(status_code: int, kind: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": kind, "message": message})


def create_app(keyring: SigningKeyring | None = None, *, state: CloudState | None = None) -> FastAPI:
    app = FastAPI()
    if state is None:
        if keyring is None:
            try:
                keyring = SigningKeyring.from_env()
            except SigningKeyError as err:
                _LOGGER.warning("Permit issuance disabled: %s", err)
        state = CloudState(keyring)
    app.state.state = state

    @app.post("/permits")
    async def handle_permits(
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        principal.require(ROLE_DEVICE, ROLE_ADMIN)
        subject_id = data.get("subject_id")
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise _error(400, INVALID_REQUEST, "subject_id is required")
        principal.require_subject(subject_id)
        validity_days = data.get("validity_days")
        if validity_days is not None and (
            isinstance(validity_days, bool) or not isinstance(validity_days, int) or validity_days <= 0
        ):
            raise _error(400, INVALID_VALIDITY, "validity_days must be a positive integer")
        intent_id = data.get("intent_id")
        if intent_id is not None and not isinstance(intent_id, str):
            raise _error(400, INVALID_REQUEST, "intent_id must be a string")
        try:
            permit = await state.issue_permit(subject_id, validity_days, intent_id)
        except PermitRequestError as err:
            raise _error(400, err.reason, str(err)) from err
        except SigningKeyError as err:
            raise _error(500, INTERNAL, "permit signing is not configured") from err
        return {"permit": permit, "used": 0}

    @app.post("/presign")
    async def handle_presign(
        request: Request,
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, str]:
        principal.require(ROLE_DEVICE, ROLE_ADMIN)
        subject_id = str(data.get("subject_id") or principal.subject_id)
        principal.require_subject(subject_id)
        file_name = str(data.get("file_name") or "").strip()
        intent_id = str(data.get("intent_id") or "").strip()
        if not file_name or "/" in file_name:
            raise _error(400, INVALID_REQUEST, "file_name is required")
        if not intent_id:
            raise _error(400, INVALID_REQUEST, "intent_id is required")
        return await state.presign(subject_id, file_name, intent_id, str(request.base_url))

    @app.put("/blobs/{key:path}")
    async def handle_blob_put(
        key: str,
        request: Request,
        token: str = Query(...),
    ) -> dict[str, Any]:
        return state.write_blob(key, token, await request.body())

    @app.get("/records")
    async def handle_records(
        principal: Principal = Depends(principal_dependency),  # noqa: B008
        start: str | None = Query(None),
        end: str | None = Query(None),
    ) -> dict[str, Any]:
        principal.require(ROLE_DEVICE, ROLE_ADMIN)
        try:
            date_range = DateRange(start, end)
        except ValueError as err:
            raise _error(400, INVALID_REQUEST, str(err)) from err
        return {"records": state.list_records(principal.subject_id, date_range)}

    @app.post("/records")
    async def handle_records_post(
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        principal.require(ROLE_DEVICE, ROLE_ADMIN)
        subject_id = str(data.get("subject_id") or principal.subject_id)
        principal.require_subject(subject_id)
        payload = dict(data)
        payload.setdefault("updated_at", datetime.now(tz=UTC).isoformat())
        try:
            record, applied = state.put_record(subject_id, payload)
        except RecordIntegrityError as err:
            raise _error(400, INVALID_REQUEST, str(err)) from err
        return {"record": record, "applied": applied}

    return app


def main() -> None:
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8080)


if __name__ == "__main__":
    main()
