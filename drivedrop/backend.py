"""
HTTP client for the DriveDrop backend.

Two surfaces are reached through the same client: the REST API that owns the
verification workflow (``api_url``) and the hosted database surface
(``supabase_url``) for row access, RPCs, object storage and auth.
Table filters use PostgREST syntax, e.g. ``{"id": eq(verification_id)}``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from drivedrop.config import Settings, get_settings
from drivedrop.errors import BackendError
from drivedrop.models import Location, VerificationDecision

logger = logging.getLogger(__name__)


def eq(value: Any) -> str:
    if isinstance(value, bool):
        value = str(value).lower()
    return f"eq.{value}"


def is_null() -> str:
    return "is.null"


def _error_message(response: httpx.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, dict):
            body = detail
        message = body.get("message") or body.get("detail") or body.get("error")
        return str(message or response.reason_phrase), body.get("code")
    return response.reason_phrase, None


class BackendClient:
    def __init__(
        self,
        settings: Settings | None = None,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.access_token = access_token
        self._http = httpx.AsyncClient(
            transport=transport, timeout=self.settings.request_timeout
        )

    async def __aenter__(self) -> BackendClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def set_token(self, token: str | None) -> None:
        self.access_token = token

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.supabase_anon_key:
            headers["apikey"] = self.settings.supabase_anon_key
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        merged = self._headers()
        merged.update(headers or {})
        try:
            response = await self._http.request(method, url, headers=merged, **kwargs)
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {url} failed: {exc}") from exc

        if response.is_error:
            message, code = _error_message(response)
            raise BackendError(message, status_code=response.status_code, code=code)
        if not response.content:
            return None
        return response.json()

    def _api(self, path: str) -> str:
        return f"{self.settings.api_url.rstrip('/')}{path}"

    def _rest(self, path: str) -> str:
        return f"{self.settings.supabase_url.rstrip('/')}/rest/v1/{path}"

    # -- verification REST API --

    async def start_verification(self, shipment_id: str, location: Location) -> str:
        body = await self._request(
            "POST",
            self._api(f"/shipments/{shipment_id}/start-verification"),
            json={"location": location.as_payload(include_accuracy=True)},
        )
        body = body or {}
        verification = (body.get("data") or body).get("verification") or {}
        verification_id = verification.get("id") or body.get("verificationId")
        if not verification_id:
            raise BackendError("Verification ID not received from server")
        return verification_id

    async def register_photo(
        self,
        shipment_id: str,
        verification_id: str,
        angle: str,
        photo_url: str,
        location: Location,
    ) -> None:
        await self._request(
            "POST",
            self._api(f"/shipments/{shipment_id}/verification-photos"),
            json={
                "verificationId": verification_id,
                "angle": angle,
                "photoUrl": photo_url,
                "location": location.as_payload(),
            },
        )

    async def submit_verification(
        self,
        shipment_id: str,
        verification_id: str,
        decision: VerificationDecision,
        location: Location,
        driver_notes: str | None = None,
        differences: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "verificationId": verification_id,
            "decision": decision.value,
            "location": location.as_payload(),
        }
        if driver_notes:
            payload["driverNotes"] = driver_notes
        if differences:
            payload["differences"] = differences
        body = await self._request(
            "POST",
            self._api(f"/shipments/{shipment_id}/submit-verification"),
            json=payload,
        )
        return body or {}

    # -- table access --

    async def select(
        self,
        table: str,
        filters: dict[str, str] | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = dict(filters or {})
        params.setdefault("select", "*")
        if order:
            params["order"] = order
        return await self._request("GET", self._rest(table), params=params) or []

    async def select_one(
        self, table: str, filters: dict[str, str]
    ) -> dict[str, Any] | None:
        rows = await self.select(table, filters)
        return rows[0] if rows else None

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any] | None:
        rows = await self._request(
            "POST",
            self._rest(table),
            json=row,
            headers={"Prefer": "return=representation"},
        )
        return rows[0] if rows else None

    async def upsert(self, table: str, row: dict[str, Any]) -> dict[str, Any] | None:
        rows = await self._request(
            "POST",
            self._rest(table),
            json=row,
            headers={"Prefer": "return=representation,resolution=merge-duplicates"},
        )
        return rows[0] if rows else None

    async def update(
        self, table: str, filters: dict[str, str], values: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Patch every row matching the filters and return the updated rows."""
        return (
            await self._request(
                "PATCH",
                self._rest(table),
                params=filters,
                json=values,
                headers={"Prefer": "return=representation"},
            )
            or []
        )

    async def rpc(self, function: str, params: dict[str, Any]) -> Any:
        return await self._request("POST", self._rest(f"rpc/{function}"), json=params)

    # -- storage and auth --

    def public_url(self, bucket: str, path: str) -> str:
        base = self.settings.supabase_url.rstrip("/")
        return f"{base}/storage/v1/object/public/{bucket}/{path}"

    async def upload_object(
        self,
        bucket: str,
        path: str,
        content: bytes,
        content_type: str = "image/jpeg",
    ) -> str:
        base = self.settings.supabase_url.rstrip("/")
        await self._request(
            "POST",
            f"{base}/storage/v1/object/{bucket}/{path}",
            content=content,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )
        return self.public_url(bucket, path)

    async def get_user(self) -> dict[str, Any] | None:
        """The signed-in auth user, or None when there is no valid session."""
        if not self.access_token:
            return None
        base = self.settings.supabase_url.rstrip("/")
        try:
            return await self._request("GET", f"{base}/auth/v1/user")
        except BackendError as exc:
            if exc.is_unauthorized:
                return None
            raise
