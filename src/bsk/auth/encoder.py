"""Canonical request encoding.

Turns an ordered parameter set into the exact query string the venue
verifies a signature against. The same ordered input always produces the
same bytes, so callers are responsible only for parameter order.

Rendering rules:
- int: base 10, no leading zeros
- bool: ``true`` / ``false``
- float: shortest round-trip repr, positional notation (never ``1e-05``)
- Decimal: positional notation, digits exactly as given
- str: percent-encoded, RFC 3986 unreserved characters kept literal
- list/tuple of str: compact JSON array, then percent-encoded
- None: parameter omitted
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from urllib.parse import quote

ParamValue = str | int | float | bool | Decimal | list[str] | tuple[str, ...] | None
Params = Mapping[str, ParamValue] | Iterable[tuple[str, ParamValue]]

# RFC 3986 unreserved set; quote() keeps ALPHA / DIGIT plus these
_SAFE = "-_.~"


@dataclass(frozen=True)
class CanonicalRequest:
    """Ordered, rendered parameters and their wire form.

    Attributes:
        pairs: (name, rendered value) in emission order, already escaped
        query: ``name=value`` pairs joined with ``&``
    """

    pairs: tuple[tuple[str, str], ...]
    query: str

    @property
    def payload(self) -> bytes:
        """Bytes handed to the signer."""
        return self.query.encode("utf-8")

    def extend(self, params: Params) -> CanonicalRequest:
        """Return a new request with ``params`` appended after the current pairs."""
        return _build(self.pairs + _render_pairs(params))


def render_value(value: Any) -> str:
    """Render a single parameter value to its unescaped textual form."""
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"Cannot encode non-finite decimal {value}")
        return format(value, "f")
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ValueError(f"Cannot encode non-finite float {value}")
        return format(Decimal(repr(value)), "f")
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return json.dumps([render_value(v) for v in value], separators=(",", ":"))
    raise TypeError(f"Unsupported parameter type: {type(value).__name__}")


def escape(text: str) -> str:
    """Percent-encode using the venue's escaping table."""
    return quote(text, safe=_SAFE)


def _render_pairs(params: Params) -> tuple[tuple[str, str], ...]:
    items = params.items() if isinstance(params, Mapping) else params
    rendered: list[tuple[str, str]] = []
    for name, value in items:
        if not name or value is None:
            continue
        rendered.append((escape(name), escape(render_value(value))))
    return tuple(rendered)


def _build(pairs: tuple[tuple[str, str], ...]) -> CanonicalRequest:
    return CanonicalRequest(pairs=pairs, query="&".join(f"{k}={v}" for k, v in pairs))


def encode_params(params: Params) -> CanonicalRequest:
    """Encode an ordered parameter set.

    Args:
        params: Mapping (insertion order is used) or iterable of pairs

    Returns:
        CanonicalRequest with escaped pairs and the joined query string

    Example:
        >>> encode_params([("symbol", "BTCUSDT"), ("limit", 5)]).query
        'symbol=BTCUSDT&limit=5'
    """
    return _build(_render_pairs(params))
