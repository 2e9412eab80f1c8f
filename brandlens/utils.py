"""Shared utility functions used across BrandLens modules."""
from __future__ import annotations

import json
import re
import unicodedata
from typing import Any
from urllib.parse import urlsplit

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def normalize_name(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value)
    normalized = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    normalized = normalized.casefold()
    normalized = re.sub(r"[^a-z0-9]+", " ", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def bare_host(value: str) -> str:
    """Lower-cased host of a URL or bare domain, without ``www.`` and port."""
    if not value:
        return ""
    candidate = value.strip()
    if not re.match(r"^[a-z][a-z0-9+.-]*://", candidate, flags=re.IGNORECASE):
        candidate = f"https://{candidate}"
    try:
        host = urlsplit(candidate).netloc.casefold()
    except ValueError:
        return ""
    host = host.rsplit("@", 1)[-1].split(":", 1)[0].rstrip(".")
    return host[4:] if host.startswith("www.") else host


def domain_matches(host: str, target: str) -> bool:
    """``host`` equals ``target`` or is one of its subdomains."""
    return bool(host and target) and (host == target or host.endswith(f".{target}"))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
