"""
otcx/ledger/schema.py

Versioned record schemas for raw ledger reads.

The escrow returns records as positional tuples. Every record type has
exactly one schema per ledger version, naming each field in order. A
ledger upgrade that adds, drops or reorders a field gets a new schema
object; decoding a record against the wrong version fails loudly with
SchemaError instead of silently shifting values into the wrong field.

Schemas accept either form of a raw record:

    positional sequence   length must equal len(schema.fields)
    mapping               every field name must be present

encode() is the inverse of decode() and produces the mapping form, which
is what the in-memory ledger persists to YAML.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Sequence, Tuple, Union

from otcx.core.exceptions import SchemaError
from otcx.core.models import Order, OrderStatus, Project, ZERO_ADDRESS, is_zero_address


RawRecord = Union[Sequence[Any], Mapping[str, Any]]


# ─────────────────────────────────────────────────────────────
# Field coercion
# ─────────────────────────────────────────────────────────────

def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("bool is not an integer field")
    if isinstance(value, str):
        return int(value, 0)
    return int(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"not a boolean: {value!r}")


def _as_address(value: Any) -> str:
    if value is None:
        return ZERO_ADDRESS
    if not isinstance(value, str):
        raise ValueError(f"not an address: {value!r}")
    return value


def _as_str(value: Any) -> str:
    return "" if value is None else str(value)


# ─────────────────────────────────────────────────────────────
# Base schema
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RecordSchema:
    """Ordered field names for one record type at one ledger version."""

    name:    str
    version: int
    fields:  Tuple[str, ...]

    @property
    def label(self) -> str:
        return f"{self.name}/v{self.version}"

    def to_mapping(self, raw: RawRecord) -> Dict[str, Any]:
        """
        Normalize a raw record into a field-name mapping.

        Raises:
            SchemaError: wrong length, missing fields, or unsupported type
        """
        if isinstance(raw, Mapping):
            missing = [f for f in self.fields if f not in raw]
            if missing:
                raise SchemaError(
                    f"{self.label} record is missing fields",
                    {"missing": ",".join(missing)},
                )
            return {f: raw[f] for f in self.fields}

        if isinstance(raw, (list, tuple)):
            if len(raw) != len(self.fields):
                raise SchemaError(
                    f"{self.label} record has wrong field count",
                    {"expected": len(self.fields), "found": len(raw)},
                )
            return dict(zip(self.fields, raw))

        raise SchemaError(
            f"{self.label} record must be a sequence or mapping",
            {"type": type(raw).__name__},
        )

    def _coerce(self, values: Dict[str, Any], name: str, fn: Callable[[Any], Any]) -> Any:
        try:
            return fn(values[name])
        except (TypeError, ValueError) as e:
            raise SchemaError(
                f"{self.label} field {name!r} is malformed",
                {"value": repr(values[name]), "error": str(e)},
            ) from e


# ─────────────────────────────────────────────────────────────
# Orders
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OrderSchema(RecordSchema):
    """Order tuple layout plus the ledger's numeric status table."""

    status_codes: Mapping[int, OrderStatus] = field(default_factory=dict)

    def decode(self, raw: RawRecord) -> Order:
        values = self.to_mapping(raw)
        return Order(
            id                  = self._coerce(values, "id", _as_int),
            maker               = self._coerce(values, "maker", _as_address),
            buyer               = self._coerce(values, "buyer", _as_address),
            seller              = self._coerce(values, "seller", _as_address),
            project_id          = self._coerce(values, "project_id", _as_str),
            amount              = self._coerce(values, "amount", _as_int),
            unit_price          = self._coerce(values, "unit_price", _as_int),
            buyer_funds         = self._coerce(values, "buyer_funds", _as_int),
            seller_collateral   = self._coerce(values, "seller_collateral", _as_int),
            settlement_deadline = self._coerce(values, "settlement_deadline", _as_int),
            is_sell             = self._coerce(values, "is_sell", _as_bool),
            allowed_taker       = self._decode_taker(values["allowed_taker"]),
            status              = self._decode_status(values["status"]),
        )

    def encode(self, order: Order) -> Dict[str, Any]:
        codes = {status: code for code, status in self.status_codes.items()}
        return {
            "id":                  order.id,
            "maker":               order.maker,
            "buyer":               order.buyer,
            "seller":              order.seller,
            "project_id":          order.project_id,
            "amount":              order.amount,
            "unit_price":          order.unit_price,
            "buyer_funds":         order.buyer_funds,
            "seller_collateral":   order.seller_collateral,
            "settlement_deadline": order.settlement_deadline,
            "is_sell":             order.is_sell,
            "allowed_taker":       order.allowed_taker or ZERO_ADDRESS,
            "status":              codes[order.status],
        }

    def _decode_taker(self, value: Any):
        if value is not None and not isinstance(value, str):
            raise SchemaError(
                f"{self.label} field 'allowed_taker' is malformed",
                {"value": repr(value)},
            )
        return None if is_zero_address(value) else value

    def _decode_status(self, value: Any) -> OrderStatus:
        if isinstance(value, OrderStatus):
            return value
        try:
            code = _as_int(value)
        except (TypeError, ValueError) as e:
            raise SchemaError(
                f"{self.label} status is not a code", {"value": repr(value)}
            ) from e
        if code not in self.status_codes:
            raise SchemaError(f"{self.label} unknown status code", {"code": code})
        return self.status_codes[code]


# ─────────────────────────────────────────────────────────────
# Projects
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProjectSchema(RecordSchema):
    """Project registry record layout."""

    def decode(self, raw: RawRecord) -> Project:
        values = self.to_mapping(raw)
        return Project(
            project_id    = self._coerce(values, "project_id", _as_str),
            slug          = self._coerce(values, "slug", _as_str),
            name          = self._coerce(values, "name", _as_str),
            token_address = self._coerce(values, "token_address", _as_address),
            is_points     = self._coerce(values, "is_points", _as_bool),
            metadata_uri  = self._coerce(values, "metadata_uri", _as_str),
            active        = self._coerce(values, "active", _as_bool),
            added_at      = self._coerce(values, "added_at", _as_int),
        )

    def encode(self, project: Project) -> Dict[str, Any]:
        return {
            "project_id":    project.project_id,
            "slug":          project.slug,
            "name":          project.name,
            "token_address": project.token_address,
            "is_points":     project.is_points,
            "metadata_uri":  project.metadata_uri,
            "active":        project.active,
            "added_at":      project.added_at,
        }


# ─────────────────────────────────────────────────────────────
# Registered versions
# ─────────────────────────────────────────────────────────────

ORDER_SCHEMA_V4 = OrderSchema(
    name         = "order",
    version      = 4,
    fields       = (
        "id",
        "maker",
        "buyer",
        "seller",
        "project_id",
        "amount",
        "unit_price",
        "buyer_funds",
        "seller_collateral",
        "settlement_deadline",
        "is_sell",
        "allowed_taker",
        "status",
    ),
    status_codes = {
        0: OrderStatus.OPEN,
        1: OrderStatus.FUNDED,
        2: OrderStatus.SETTLED,
        3: OrderStatus.DEFAULTED,
        4: OrderStatus.CANCELED,
    },
)

PROJECT_SCHEMA_V2 = ProjectSchema(
    name    = "project",
    version = 2,
    fields  = (
        "project_id",
        "slug",
        "name",
        "token_address",
        "is_points",
        "metadata_uri",
        "active",
        "added_at",
    ),
)
