"""aiohttp clients for the permit, upload and remote record endpoints."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiohttp
from aiohttp import ClientError, ClientSession

from .const import DEFAULT_REQUEST_TIMEOUT, HEADER_INTENT_ID, HEADER_SUBJECT_ID
from .errors import ErrorKind, PermitIntegrityError, TransportError, classify_status
from .models import DateRange
from .permits import QuotaPermit

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WriteLocation:
    """Short-lived, single-use destination for one upload."""

    location: str
    token: str
    key: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> WriteLocation:
        location = str(payload.get("location") or "").strip()
        token = str(payload.get("token") or "").strip()
        if not location or not token:
            raise TransportError("write location response missing location or token", kind=ErrorKind.SERVER)
        return cls(location=location, token=token, key=str(payload.get("key") or ""))

    def to_dict(self) -> dict[str, str]:
        return {"location": self.location, "token": self.token, "key": self.key}


@dataclass(frozen=True, slots=True)
class PermitGrant:
    """A freshly issued permit and the usage count the authority reports for it."""

    permit: QuotaPermit
    used: int = 0


class _JsonClient:
    def __init__(self, session: ClientSession, base_url: str, *, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        subject_id: str | None = None,
        headers: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        merged: dict[str, str] = dict(headers or {})
        if subject_id:
            merged[HEADER_SUBJECT_ID] = subject_id
        try:
            async with self.session.request(
                method,
                f"{self.base_url}{path}",
                headers=merged,
                timeout=self.timeout,
                **kwargs,
            ) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise TransportError(
                        f"{method} {path} failed: {resp.status} {text}",
                        kind=classify_status(resp.status),
                        status=resp.status,
                    )
                return await resp.json()
        except TimeoutError as err:
            raise TransportError(f"{method} {path} timed out", kind=ErrorKind.TIMEOUT) from err
        except ClientError as err:
            raise TransportError(f"{method} {path} failed: {err}", kind=ErrorKind.NETWORK) from err


class PermitClient(_JsonClient):
    """Fetch permits from the signature authority service."""

    async def async_fetch_permit(
        self,
        subject_id: str,
        validity_days: int | None = None,
        *,
        intent_id: str | None = None,
    ) -> PermitGrant:
        body: dict[str, Any] = {"subject_id": subject_id}
        if validity_days is not None:
            body["validity_days"] = validity_days
        if intent_id:
            body["intent_id"] = intent_id
        payload = await self._request_json("POST", "/permits", subject_id=subject_id, json=body)
        if not isinstance(payload, Mapping):
            raise PermitIntegrityError("permit response must be an object")
        permit = QuotaPermit.from_dict(payload.get("permit") or {})
        used = payload.get("used", 0)
        return PermitGrant(permit=permit, used=int(used) if isinstance(used, int) else 0)


class UploadTransport(_JsonClient):
    """Request a write location and push bytes to it."""

    async def async_request_location(self, subject_id: str, file_name: str, intent_id: str) -> WriteLocation:
        payload = await self._request_json(
            "POST",
            "/presign",
            subject_id=subject_id,
            headers={HEADER_INTENT_ID: intent_id},
            json={"subject_id": subject_id, "file_name": file_name, "intent_id": intent_id},
        )
        if not isinstance(payload, Mapping):
            raise TransportError("presign response must be an object", kind=ErrorKind.SERVER)
        return WriteLocation.from_payload(payload)

    async def async_write(self, location: WriteLocation, data: bytes) -> None:
        try:
            async with self.session.put(
                location.location,
                params={"token": location.token},
                data=data,
                timeout=self.timeout,
            ) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise TransportError(
                        f"write to {location.key or location.location} failed: {resp.status} {text}",
                        kind=classify_status(resp.status),
                        status=resp.status,
                    )
        except TimeoutError as err:
            raise TransportError("upload write timed out", kind=ErrorKind.TIMEOUT) from err
        except ClientError as err:
            raise TransportError(f"upload write failed: {err}", kind=ErrorKind.NETWORK) from err

    async def async_upload(self, subject_id: str, source_location: str, intent_id: str) -> dict[str, str]:
        """Upload the file at ``source_location`` and return the write location used."""

        path = Path(source_location)
        data = path.read_bytes()
        location = await self.async_request_location(subject_id, path.name, intent_id)
        await self.async_write(location, data)
        _LOGGER.debug("Wrote %d bytes for %s to %s", len(data), subject_id, location.key)
        return location.to_dict()


class RemoteRecordsClient(_JsonClient):
    """Read the remote snapshot of domain records."""

    async def async_fetch_records(
        self, subject_id: str, date_range: DateRange | None = None
    ) -> list[dict[str, Any]]:
        """Return raw record payloads; each is validated individually by the caller."""

        params = date_range.to_params() if date_range else {}
        payload = await self._request_json("GET", "/records", subject_id=subject_id, params=params)
        items = payload.get("records") if isinstance(payload, Mapping) else payload
        if not isinstance(items, list):
            raise TransportError("records response must contain a list", kind=ErrorKind.SERVER)
        return [dict(item) if isinstance(item, Mapping) else item for item in items]

    async def async_push_record(self, subject_id: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Send a local edit; returns the version the remote now holds."""

        body = dict(payload)
        body["subject_id"] = subject_id
        response = await self._request_json("POST", "/records", subject_id=subject_id, json=body)
        record = response.get("record") if isinstance(response, Mapping) else None
        if not isinstance(record, Mapping):
            raise TransportError("record push response must contain a record", kind=ErrorKind.SERVER)
        return dict(record)


__all__ = [
    "PermitClient",
    "PermitGrant",
    "RemoteRecordsClient",
    "UploadTransport",
    "WriteLocation",
]
