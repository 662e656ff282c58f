"""
Share serialization.

The share is opaque: it is serialized on write and deserialized on read,
never inspected. It travels inside a tagged envelope so that a decrypted
payload which is not ours (or is damaged) is detected instead of being
handed back as a wrong value.

Envelope (canonical JSON, UTF-8, sorted keys, compact separators):
    {"data": ..., "format": "mpc-keyshare", "kind": "json" | "bytes",
     "owner": "<owner id>", "version": 1}
"""
import base64
import binascii
import json
from typing import Any, Tuple

from custody.core.keyshares.errors import DeserializationFailure, InvalidShare

SHARE_FORMAT = "mpc-keyshare"
SHARE_FORMAT_VERSION = 1

KIND_JSON = "json"
KIND_BYTES = "bytes"

_ENVELOPE_KEYS = {"data", "format", "kind", "owner", "version"}


def _canonical(value: Any) -> bytes:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def _check_json_value(value: Any, path: str = "share") -> None:
    """Reject values JSON would silently change (non-str keys, tuples, sets)."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path} has non-string key {key!r}")
            _check_json_value(item, f"{path}[{key!r}]")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _check_json_value(item, f"{path}[{index}]")
    elif value is not None and not isinstance(value, (str, int, float, bool)):
        raise TypeError(f"{path} has unsupported type {type(value).__name__}")


def serialize_share(owner_id: str, share: Any) -> bytes:
    """
    Serialize a share into its canonical envelope bytes.

    Args:
        owner_id: Owner the share is bound to
        share: A JSON value (dicts with str keys, lists, str, numbers,
            bools, None), or raw bytes

    Raises:
        InvalidShare: If the share cannot be serialized
    """
    if share is None:
        raise InvalidShare("Share must not be None", owner_id=owner_id)

    if isinstance(share, (bytes, bytearray, memoryview)):
        kind = KIND_BYTES
        data: Any = base64.b64encode(bytes(share)).decode("ascii")
    else:
        kind = KIND_JSON
        data = share

    envelope = {
        "data": data,
        "format": SHARE_FORMAT,
        "kind": kind,
        "owner": owner_id,
        "version": SHARE_FORMAT_VERSION,
    }
    try:
        if kind == KIND_JSON:
            _check_json_value(data)
        return _canonical(envelope)
    except (TypeError, ValueError) as e:
        raise InvalidShare(f"Cannot serialize share: {e}", owner_id=owner_id) from e


def deserialize_share(payload: bytes) -> Tuple[str, Any]:
    """
    Parse envelope bytes back into (owner_id, share).

    Raises:
        DeserializationFailure: If the bytes are not a valid share envelope
    """
    try:
        envelope = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DeserializationFailure(f"Decrypted share is not valid JSON: {e}") from e

    if not isinstance(envelope, dict) or set(envelope) != _ENVELOPE_KEYS:
        raise DeserializationFailure("Decrypted payload is not a share envelope")
    if envelope["format"] != SHARE_FORMAT:
        raise DeserializationFailure(f"Unexpected share format {envelope['format']!r}")
    if envelope["version"] != SHARE_FORMAT_VERSION:
        raise DeserializationFailure(f"Unsupported share format version {envelope['version']!r}")
    if not isinstance(envelope["owner"], str):
        raise DeserializationFailure("Share envelope has no owner")

    kind = envelope["kind"]
    if kind == KIND_JSON:
        return envelope["owner"], envelope["data"]
    if kind == KIND_BYTES:
        try:
            return envelope["owner"], base64.b64decode(envelope["data"], validate=True)
        except (TypeError, binascii.Error) as e:
            raise DeserializationFailure(f"Binary share is not valid base64: {e}") from e

    raise DeserializationFailure(f"Unknown share kind {kind!r}")
