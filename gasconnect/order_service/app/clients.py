"""HTTP clients for the identity and supplier services."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import SupplierServiceError

logger = logging.getLogger(__name__)


def _normalize_base(url: str | None) -> str | None:
    if not url:
        return None
    return url.rstrip("/")


def _build_url(base: str, path: str) -> str:
    return f"{base}/{path.lstrip('/')}"


def _unwrap(payload: Any) -> Any:
    # Both services wrap bodies as {"success": ..., "data": {...}} on newer routes.
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    return payload


def _auth_headers(token: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


@dataclass(frozen=True)
class AuthenticatedUser:
    id: int
    role: str
    email: str | None = None


@dataclass(frozen=True)
class AuthResult:
    is_valid: bool
    user: AuthenticatedUser | None = None
    error: str | None = None


class IdentityClient:
    """Validates bearer tokens against the identity service."""

    def __init__(self, client: httpx.AsyncClient, base_url: str | None) -> None:
        self._client = client
        self._base_url = _normalize_base(base_url)

    async def validate_token(self, token: str) -> AuthResult:
        if not self._base_url:
            raise RuntimeError("Identity service URL is not configured")
        try:
            response = await self._client.get(
                _build_url(self._base_url, "/api/v1/auth/validate"),
                headers=_auth_headers(token),
            )
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Token validation failed: {exc}") from exc

        if response.status_code in (401, 403):
            return AuthResult(is_valid=False, error="Invalid or expired token")
        try:
            response.raise_for_status()
            body = _unwrap(response.json())
            user = body["user"]
            return AuthResult(
                is_valid=True,
                user=AuthenticatedUser(id=int(user["id"]), role=str(user["role"]), email=user.get("email")),
            )
        except (httpx.HTTPStatusError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise RuntimeError(f"Token validation failed: {exc}") from exc


class SupplierServiceClient:
    """Pricing quotes and stock calls against the supplier service.

    Every failure (transport, HTTP status or unexpected payload) is raised as
    ``SupplierServiceError`` so callers can degrade in one place.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str | None,
        *,
        service_token: str | None = None,
    ) -> None:
        self._client = client
        self._base_url = _normalize_base(base_url)
        self._service_token = service_token

    @property
    def configured(self) -> bool:
        return self._base_url is not None

    async def _post(self, path: str, body: dict[str, Any], auth_token: str | None) -> Any:
        if not self._base_url:
            raise SupplierServiceError("Supplier service URL is not configured")
        try:
            response = await self._client.post(
                _build_url(self._base_url, path),
                json=body,
                headers=_auth_headers(auth_token or self._service_token),
            )
            response.raise_for_status()
            return _unwrap(response.json())
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise SupplierServiceError(f"POST {path} failed: {exc}") from exc

    async def calculate_pricing(
        self,
        supplier_id: int,
        items: list[dict[str, Any]],
        customer_type: str,
        auth_token: str | None = None,
    ) -> dict[str, Any]:
        payload = await self._post(
            "/api/v1/pricing/calculate",
            {"supplierId": supplier_id, "items": items, "customerType": customer_type},
            auth_token,
        )
        calculation = payload.get("calculation") if isinstance(payload, dict) else None
        if not isinstance(calculation, dict) or not calculation.get("items"):
            raise SupplierServiceError("No pricing data returned from supplier service")
        return calculation

    async def check_availability(
        self,
        supplier_id: int,
        items: list[dict[str, Any]],
        auth_token: str | None = None,
    ) -> dict[str, dict[str, Any]]:
        payload = await self._post(
            "/api/v1/inventory/check-availability",
            {"supplierId": supplier_id, "items": items},
            auth_token,
        )
        availability = payload.get("availability", payload) if isinstance(payload, dict) else None
        if not isinstance(availability, dict):
            raise SupplierServiceError("Unexpected availability payload from supplier service")
        return availability

    async def update_inventory_quantities(
        self,
        supplier_id: int,
        items: list[dict[str, Any]],
        auth_token: str | None = None,
    ) -> None:
        await self._post(
            "/api/v1/inventory/update-quantities",
            {"supplierId": supplier_id, "items": items},
            auth_token,
        )
