"""Caller identity as seen by the order engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import ValidationError


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    DRIVER = "driver"
    ADMIN = "admin"


_ROLE_ALIASES: dict[str, ActorRole] = {
    "customer": ActorRole.CUSTOMER,
    "household": ActorRole.CUSTOMER,
    "hospital": ActorRole.CUSTOMER,
    "artisan": ActorRole.CUSTOMER,
    "retail": ActorRole.CUSTOMER,
    "supplier": ActorRole.SUPPLIER,
    "driver": ActorRole.DRIVER,
    "delivery_driver": ActorRole.DRIVER,
    "admin": ActorRole.ADMIN,
    "platform_admin": ActorRole.ADMIN,
}


def normalize_role(raw: str | ActorRole | None) -> ActorRole:
    """Map an identity-service role name onto the engine's four actor roles."""

    if isinstance(raw, ActorRole):
        return raw
    key = (raw or "").strip().lower().replace("-", "_")
    role = _ROLE_ALIASES.get(key)
    if role is None:
        raise ValidationError(
            f"Unsupported role '{raw}'",
            errors=[{"field": "role", "message": "unknown role"}],
        )
    return role


@dataclass(frozen=True)
class Actor:
    id: int
    role: ActorRole
    # Role name exactly as the identity service reported it ("household", "platform_admin", ...).
    source_role: str | None = None

    @classmethod
    def from_identity(cls, user_id: int, role: str) -> "Actor":
        return cls(id=int(user_id), role=normalize_role(role), source_role=role)
