"""Deterministic idempotency keys for Stripe requests.

Stripe enforces "at most one object per idempotency key"; our job is to make
sure semantically identical requests always produce the same key. Payloads
are serialized canonically (sorted keys, ``None`` dropped, decimals as
strings) before hashing.
"""

import dataclasses
import hashlib
import json
import logging
import math
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from urllib.parse import quote

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Stripe rejects idempotency keys longer than this
MAX_KEY_LENGTH = 255


def _normalize(value: Any) -> Any:
    """Reduce a value to JSON-safe primitives with a stable shape."""
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Decimal):
        return str(value) if value.is_finite() else None
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _normalize(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {
            str(k): _normalize(v)
            for k, v in value.items()
            if v is not None
        }
    if isinstance(value, (set, frozenset)):
        items = [_normalize(v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True))
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value if v is not None]
    return str(value)


def canonical_json(payload: Any) -> str:
    """Serialize ``payload`` so that equal content always yields equal text.

    Object keys are sorted, ``None`` values are dropped, list order is kept
    (callers sort lists whose order is not meaningful).
    """
    return json.dumps(
        _normalize(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def derive_key(
    namespace: str,
    actor_id: str,
    scope_id: str,
    payload: Any,
    salt: str | None = None,
) -> str:
    """Derive an idempotency key from a canonical payload.

    The digest covers the namespace, the canonical payload and the salt, so
    the same payload under a different namespace or attempt salt never
    collides. Actor and scope are kept readable in the key for debugging in
    the Stripe dashboard.

    Args:
        namespace: Operation family, e.g. ``"checkout"`` or ``"refund"``.
        actor_id: Who initiates the request (buyer id, seller account).
        scope_id: What the request is about (seller id, order id).
        payload: Request content; fields that must not affect dedup (free
            text such as notes) have to be removed by the caller.
        salt: Per-attempt token. Omit it when retries must deduplicate.

    Returns:
        str: Key of at most 255 characters.
    """
    material = f"{namespace}:v1:{canonical_json(payload)}"
    if salt:
        material = f"{material}:{salt}"
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()

    prefix = f"{namespace}:{quote(actor_id, safe='')}:{quote(scope_id, safe='')}"
    # The digest must survive truncation; only the readable prefix is cut.
    max_prefix = MAX_KEY_LENGTH - len(digest) - 1
    if len(prefix) > max_prefix:
        logger.warning("Idempotency key prefix truncated: %s...", prefix[:50])
        prefix = prefix[:max_prefix]
    return f"{prefix}:{digest}"
