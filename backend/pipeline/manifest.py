"""
Fulfillment manifest <-> session metadata codec.

The gateway caps each metadata value at 500 characters and a session at 50
keys. The manifest is written compactly as [[product_id, quantity], ...]
and split over numbered keys when it does not fit in one value, so no cart
is silently truncated.
"""

import json
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from schemas import CartLine, ManifestLine

METADATA_KEY = "cart_items"
PARTS_KEY = "cart_items_parts"
MAX_VALUE_LENGTH = 500
MAX_PARTS = 45  # leaves room for correlation_id / order_id keys


class ManifestError(ValueError):
    pass


def manifest_from_cart(items: List[CartLine]) -> List[ManifestLine]:
    return [ManifestLine(product_id=item.id, quantity=item.quantity) for item in items]


def encode_manifest(lines: List[ManifestLine]) -> Dict[str, str]:
    raw = json.dumps([[line.product_id, line.quantity] for line in lines], separators=(",", ":"))
    if len(raw) <= MAX_VALUE_LENGTH:
        return {METADATA_KEY: raw}

    parts = [raw[i:i + MAX_VALUE_LENGTH] for i in range(0, len(raw), MAX_VALUE_LENGTH)]
    if len(parts) > MAX_PARTS:
        raise ManifestError(f"manifest needs {len(parts)} metadata values, limit is {MAX_PARTS}")

    metadata = {f"{METADATA_KEY}_{i}": part for i, part in enumerate(parts)}
    metadata[PARTS_KEY] = str(len(parts))
    return metadata


def _reassemble(metadata: Mapping[str, Any]) -> Optional[str]:
    if PARTS_KEY in metadata:
        try:
            count = int(metadata[PARTS_KEY])
        except (TypeError, ValueError) as e:
            raise ManifestError(f"bad {PARTS_KEY}: {metadata[PARTS_KEY]!r}") from e
        chunks = []
        for i in range(count):
            key = f"{METADATA_KEY}_{i}"
            if key not in metadata:
                raise ManifestError(f"manifest part {i} of {count} missing")
            chunks.append(str(metadata[key]))
        return "".join(chunks)

    if METADATA_KEY in metadata:
        return str(metadata[METADATA_KEY])
    # key used by the first storefront release
    if "cartItems" in metadata:
        return str(metadata["cartItems"])
    return None


def _parse_line(entry: Any) -> ManifestLine:
    if isinstance(entry, list) and len(entry) == 2:
        return ManifestLine(product_id=str(entry[0]), quantity=entry[1])
    if isinstance(entry, dict):
        product_id = entry.get("product_id") or entry.get("productId") or entry.get("id")
        return ManifestLine(product_id=str(product_id) if product_id is not None else "",
                            quantity=entry.get("quantity"))
    raise ManifestError(f"unrecognised manifest entry: {entry!r}")


def decode_manifest(metadata: Optional[Mapping[str, Any]]) -> List[ManifestLine]:
    """Rebuild the manifest from session metadata. Raises ManifestError."""
    if not metadata:
        raise ManifestError("session has no metadata")

    raw = _reassemble(metadata)
    if raw is None:
        raise ManifestError("session metadata carries no manifest")

    try:
        entries = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ManifestError(f"manifest is not valid JSON: {e}") from e
    if not isinstance(entries, list) or not entries:
        raise ManifestError("manifest must be a non-empty list")

    try:
        return [_parse_line(entry) for entry in entries]
    except ValidationError as e:
        raise ManifestError(f"manifest line invalid: {e.errors()[0]['msg']}") from e
