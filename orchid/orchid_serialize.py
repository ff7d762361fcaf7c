from __future__ import annotations

import json
import re
from typing import Any, Optional
import collections.abc

import yaml


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        enc = encoding or 'utf-8'
        try:
            return data.decode(enc, errors='replace')
        except LookupError:
            return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml'.
    Uses Content-Type (or a file suffix) first; falls back to simple data sniffing.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct or ct.endswith('.yml'):
        return 'yaml'

    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
    return None


# --------------------------
# Orchid values <-> wire data
# --------------------------

def to_wire(value: Any) -> Any:
    """
    Convert an Orchid value into JSON-compatible data for tool arguments.
    Integral numbers are sent as ints; callables and handles as their display form.
    """
    match value:
        case None | bool() | str():
            return value
        case float() if value.is_integer() and abs(value) < 2 ** 53:
            return int(value)
        case int() | float():
            return value
        case list() | tuple():
            return [to_wire(v) for v in value]
        case collections.abc.Mapping():
            return {str(k): to_wire(v) for k, v in value.items()}
    from orchid.orchid_printer import to_display
    return to_display(value)


def from_wire(data: Any) -> Any:
    """Convert decoded JSON/YAML data into Orchid values (all numbers become floats)."""
    match data:
        case None | bool() | str():
            return data
        case int() | float():
            return float(data)
        case list() | tuple():
            return [from_wire(v) for v in data]
        case collections.abc.Mapping():
            return {str(k): from_wire(v) for k, v in data.items()}
    return str(data)


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert wire data (bytes/string) to native Python structures.
    Supported fmt: 'json', 'yaml'. If fmt is None, uses content_type, then sniffing.
    Raises ValueError when the declared format does not parse.
    """
    enc = _encoding_from_content_type(content_type)
    text = _norm_text(data, encoding=enc)
    f = (fmt or detect_format(content_type, text))
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid JSON: {e}") from e
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"invalid YAML: {e}") from e
    return text


def try_json(text: str) -> tuple[bool, Any]:
    """Returns (True, decoded) when `text` is a JSON document, else (False, text)."""
    s = text.strip()
    if not s:
        return False, text
    try:
        return True, json.loads(s)
    except json.JSONDecodeError:
        return False, text


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    """
    Convert a native Python/Orchid value into a textual representation.
    - fmt: 'json' | 'yaml'
    """
    f = (fmt or '').lower()
    built = to_wire(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "to_wire",
    "from_wire",
    "try_json",
]
