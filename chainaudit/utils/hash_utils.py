from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

GENESIS_HASH = "0" * 64

# Field order is irrelevant (keys are sorted) but the SET is part of the hash
# format: adding a field here invalidates every existing chain.
CHAINED_FIELDS = (
    "id",
    "tenant_id",
    "actor_user_id",
    "actor_email",
    "action",
    "entity_type",
    "entity_id",
    "ip_address",
    "user_agent",
    "details",
    "created_at",
)


def canonical_json(payload: Any) -> str:
    """Serialize payload into a stable JSON string for hashing."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def normalize_details(details: Any) -> Any:
    """
    JSON round-trip so the value stored in the JSON column is exactly the
    value that gets hashed (datetimes, UUIDs, Decimals become strings).
    Scalars are wrapped as ``{"value": ...}``.
    """
    if details is None:
        return None
    if not isinstance(details, (dict, list)):
        details = {"value": details}
    return json.loads(canonical_json(details))


def iso_utc(value: datetime) -> str:
    """UTC ISO-8601 with microseconds; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def canonical_event(fields: Mapping[str, Any]) -> str:
    """Canonical encoding of one audit record, excluding prev_hash and hash."""
    payload = {}
    for name in CHAINED_FIELDS:
        value = fields.get(name)
        if name == "created_at" and isinstance(value, datetime):
            value = iso_utc(value)
        payload[name] = value
    return canonical_json(payload)


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def keyed_digest(message: str, secret: Optional[str]) -> str:
    """HMAC-SHA256 when a secret is configured, plain SHA-256 otherwise."""
    if secret:
        return hmac.new(
            secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
        ).hexdigest()
    return sha256_hex(message)


def chain_digest(canonical: str, prev_hash: str, secret: Optional[str]) -> str:
    """Digest(canonical(fields) || prev_hash)."""
    return keyed_digest(f"{canonical}|prev={prev_hash}", secret)


def digests_equal(left: Optional[str], right: Optional[str]) -> bool:
    if not isinstance(left, str) or not isinstance(right, str):
        return left is None and right is None
    return hmac.compare_digest(left, right)
