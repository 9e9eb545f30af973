"""Record types for the cached business directory.

Every record read from the SQLite cache or received from the remote goes
through an explicit ``from_dict`` decode step. Decoding fails closed by
raising ``DecodeError``; callers treat that as "absent" rather than
letting a malformed blob leak into the application view.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import DecodeError

# Remote rows may arrive in either casing depending on the endpoint.
_BUSINESS_ALIASES = {
    "shop_name": "shopName",
    "owner_name": "ownerName",
    "contact_number": "contactNumber",
    "opening_hours": "openingHours",
    "payment_options": "paymentOptions",
    "home_delivery": "homeDelivery",
}


def _pick(data: dict[str, Any], key: str, alias: str | None = None) -> Any:
    if key in data:
        return data[key]
    if alias and alias in data:
        return data[alias]
    return None


def _require_id(data: Any, kind: str) -> str:
    if not isinstance(data, dict):
        raise DecodeError(f"{kind} record must be an object, got {type(data).__name__}")
    raw_id = data.get("id")
    if isinstance(raw_id, int) and not isinstance(raw_id, bool):
        raw_id = str(raw_id)
    if not isinstance(raw_id, str) or not raw_id:
        raise DecodeError(f"{kind} record has no usable id")
    return raw_id


def _optional_str(value: Any, name: str) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise DecodeError(f"{name} must be a string")


def _str_list(value: Any, name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        # Admin form stores comma separated services
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise DecodeError(f"{name} must be a list of strings")


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO string or epoch milliseconds into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise DecodeError(f"Invalid timestamp: {value!r}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise DecodeError(f"Invalid timestamp: {value!r}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Category:
    """A business category shown on the home grid."""

    id: str
    name: str
    icon: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "icon": self.icon}

    @classmethod
    def from_dict(cls, data: Any) -> "Category":
        category_id = _require_id(data, "Category")
        name = data.get("name")
        if not isinstance(name, str):
            raise DecodeError(f"Category {category_id} has no name")
        return cls(
            id=category_id,
            name=name,
            icon=_optional_str(data.get("icon"), "icon"),
        )


@dataclass
class Business:
    """A business listing."""

    id: str
    shop_name: str
    owner_name: str | None = None
    category: str | None = None
    contact_number: str | None = None
    address: str | None = None
    services: list[str] = field(default_factory=list)
    opening_hours: str | None = None
    payment_options: list[str] = field(default_factory=list)
    home_delivery: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shop_name": self.shop_name,
            "owner_name": self.owner_name,
            "category": self.category,
            "contact_number": self.contact_number,
            "address": self.address,
            "services": list(self.services),
            "opening_hours": self.opening_hours,
            "payment_options": list(self.payment_options),
            "home_delivery": self.home_delivery,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Business":
        business_id = _require_id(data, "Business")

        shop_name = _pick(data, "shop_name", _BUSINESS_ALIASES["shop_name"])
        if not isinstance(shop_name, str):
            raise DecodeError(f"Business {business_id} has no shop_name")

        category = _pick(data, "category") or _pick(data, "category_id", "categoryId")
        if isinstance(category, int) and not isinstance(category, bool):
            category = str(category)

        contact = _pick(data, "contact_number", _BUSINESS_ALIASES["contact_number"])
        if isinstance(contact, int) and not isinstance(contact, bool):
            contact = str(contact)

        home_delivery = _pick(data, "home_delivery", _BUSINESS_ALIASES["home_delivery"])
        if home_delivery is not None and not isinstance(home_delivery, bool):
            raise DecodeError(f"Business {business_id}: home_delivery must be a bool")

        return cls(
            id=business_id,
            shop_name=shop_name,
            owner_name=_optional_str(
                _pick(data, "owner_name", _BUSINESS_ALIASES["owner_name"]), "owner_name"
            ),
            category=_optional_str(category, "category"),
            contact_number=_optional_str(contact, "contact_number"),
            address=_optional_str(data.get("address"), "address"),
            services=_str_list(data.get("services"), "services"),
            opening_hours=_optional_str(
                _pick(data, "opening_hours", _BUSINESS_ALIASES["opening_hours"]),
                "opening_hours",
            ),
            payment_options=_str_list(
                _pick(data, "payment_options", _BUSINESS_ALIASES["payment_options"]),
                "payment_options",
            ),
            home_delivery=bool(home_delivery),
        )


# Collection name -> record type. Every layer iterates this mapping.
ENTITY_TYPES: dict[str, type] = {
    "categories": Category,
    "businesses": Business,
}

# Realtime feed table names -> collection names
_TABLE_ALIASES = {
    "business": "businesses",
    "businesses": "businesses",
    "category": "categories",
    "categories": "categories",
}


def decode_collection(collection: str, items: Any) -> list:
    """Decode a list of raw records for ``collection``.

    Raises:
        DecodeError: If the collection is unknown, ``items`` is not a list,
            or any single record is malformed.
    """
    entity_cls = ENTITY_TYPES.get(collection)
    if entity_cls is None:
        raise DecodeError(f"Unknown collection: {collection}")
    if not isinstance(items, list):
        raise DecodeError(f"Collection {collection} must be a list")
    return [entity_cls.from_dict(item) for item in items]


@dataclass
class VersionDescriptor:
    """Lightweight marker for one generation of the remote dataset."""

    version_token: str
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "version_token": self.version_token,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "VersionDescriptor":
        if not isinstance(data, dict):
            raise DecodeError("Version descriptor must be an object")
        token = data.get("version_token", data.get("version"))
        if isinstance(token, (int, float)) and not isinstance(token, bool):
            token = str(token)
        if not isinstance(token, str) or not token:
            raise DecodeError("Version descriptor has no version_token")
        updated_at = data.get("updated_at", data.get("last_updated"))
        if updated_at is None:
            raise DecodeError("Version descriptor has no updated_at")
        return cls(version_token=token, updated_at=parse_timestamp(updated_at))


@dataclass
class LocalVersionRecord:
    """Version descriptor as persisted locally, plus when we last synced."""

    version_token: str
    updated_at: datetime
    last_sync: datetime

    @property
    def descriptor(self) -> VersionDescriptor:
        return VersionDescriptor(self.version_token, self.updated_at)

    @classmethod
    def from_descriptor(
        cls, descriptor: VersionDescriptor, last_sync: datetime | None = None
    ) -> "LocalVersionRecord":
        return cls(
            version_token=descriptor.version_token,
            updated_at=descriptor.updated_at,
            last_sync=last_sync or utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version_token": self.version_token,
            "updated_at": self.updated_at.isoformat(),
            "last_sync": self.last_sync.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "LocalVersionRecord":
        descriptor = VersionDescriptor.from_dict(data)
        if "last_sync" not in data:
            raise DecodeError("Local version record has no last_sync")
        return cls.from_descriptor(descriptor, parse_timestamp(data["last_sync"]))


class ChangeOperation(Enum):
    """Kind of write committed on the remote store."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class ChangeEvent:
    """A single change pushed by the remote store's realtime feed.

    For ``insert`` and ``update`` the ``payload`` holds the full new row;
    for ``delete`` only ``entity_id`` is meaningful.
    """

    operation: ChangeOperation
    entity_type: str
    entity_id: str
    payload: dict[str, Any] | None = None
    received_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ChangeEvent":
        """Decode either our own shape or the realtime envelope.

        The envelope looks like ``{"eventType": "UPDATE", "table":
        "businesses", "new": {...}, "old": {...}}``.
        """
        if not isinstance(data, dict):
            raise DecodeError("Change event must be an object")

        raw_op = data.get("operation", data.get("eventType"))
        try:
            operation = ChangeOperation(str(raw_op).lower())
        except ValueError as e:
            raise DecodeError(f"Unknown change operation: {raw_op!r}") from e

        raw_type = data.get("entity_type", data.get("table"))
        if not isinstance(raw_type, str):
            raise DecodeError("Change event has no entity_type")
        entity_type = _TABLE_ALIASES.get(raw_type.lower(), raw_type)

        payload = data.get("payload")
        if payload is None:
            payload = data.get("new") or None
        if payload is not None and not isinstance(payload, dict):
            raise DecodeError("Change event payload must be an object")
        if operation is not ChangeOperation.DELETE and not payload:
            raise DecodeError(f"{operation.value} event has no payload")

        entity_id = data.get("entity_id")
        if entity_id is None:
            source = payload if payload else data.get("old") or {}
            entity_id = source.get("id") if isinstance(source, dict) else None
        if isinstance(entity_id, int) and not isinstance(entity_id, bool):
            entity_id = str(entity_id)
        if not isinstance(entity_id, str) or not entity_id:
            raise DecodeError("Change event has no entity id")

        return cls(
            operation=operation,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload,
        )
