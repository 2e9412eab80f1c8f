"""Citation extraction from provider payloads and response text.

Structured fields come first (``citations``, ``sources``, ``search_results``
and OpenAI-style ``url_citation`` annotations), then links found in the text:
markdown links, reference definitions, HTML anchors and bare URLs.  Every
candidate is cleaned, validated and de-duplicated on a normalised key, so the
first occurrence of a URL wins.  Classification is left ``unknown`` here;
ownership is decided by :func:`brandlens.matcher.classify_citation`.
"""
from __future__ import annotations

import html
import ipaddress
import logging
import re
from collections.abc import Iterable, Iterator
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from brandlens.schemas import Citation
from brandlens.utils import bare_host

log = logging.getLogger(__name__)

_TRAILING_PUNCT = re.compile(r"[)\],;.!?'\"]+$")
_TLD = re.compile(r"^[a-z0-9-]{2,}$")

_MARKDOWN_LINK = re.compile(r"\[([^\]\n]*)\]\(\s*<?(https?://[^)\s>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
_REFERENCE_DEF = re.compile(r"^\s*\[([^\]\n]+)\]:\s*<?((?:https?://|www\.)\S+?)>?\s*$", re.MULTILINE)
_HTML_ANCHOR = re.compile(r"<a\s[^>]*?href\s*=\s*[\"']([^\"']+)[\"'][^>]*>(.*?)</a>", re.IGNORECASE | re.DOTALL)
_BARE_URL = re.compile(r"(?:https?://|\bwww\.)[^\s<>\"{}|\\^`\[\]()]+", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")


def clean_url(raw: Any) -> str | None:
    """Trim whitespace and trailing punctuation; add a scheme to ``www.`` hosts."""
    if not isinstance(raw, str):
        return None
    url = _TRAILING_PUNCT.sub("", raw.strip()).strip()
    if not url:
        return None
    if url.lower().startswith("www."):
        url = f"https://{url}"
    return url


def _bad_ip(host: str) -> bool | None:
    """None if ``host`` is not an IP literal, else whether it is unusable."""
    try:
        ip = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return None
    return (
        ip.is_loopback or ip.is_link_local or ip.is_multicast
        or ip.is_reserved or ip.is_unspecified
    )


def is_valid_url(url: str) -> bool:
    """http(s) URL with a real-looking public host."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return False
    host = bare_host(url)
    if not host or host == "localhost" or ".." in host or host.startswith("."):
        return False
    bad_ip = _bad_ip(host)
    if bad_ip is not None:
        return not bad_ip
    if "." not in host:
        return False
    return bool(_TLD.match(host.rsplit(".", 1)[-1]))


def normalize_url(url: str) -> str:
    """Dedupe key: lower-cased scheme and host without ``www.``, no trailing slash, query or fragment."""
    parts = urlsplit(url)
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), bare_host(url), path, "", ""))


# ---------------------------------------------------------------------------
# Candidate sources
# ---------------------------------------------------------------------------


def _structured_items(items: Any) -> Iterator[tuple[str, str]]:
    if not isinstance(items, list):
        return
    for item in items:
        if isinstance(item, str):
            yield item, ""
        elif isinstance(item, dict):
            url = item.get("url") or item.get("link") or item.get("uri")
            if isinstance(url, str):
                yield url, str(item.get("title") or item.get("text") or "")


def _annotation_items(payload: dict[str, Any]) -> Iterator[tuple[str, str]]:
    choices = payload.get("choices")
    if not isinstance(choices, list):
        return
    for choice in choices:
        message = choice.get("message") if isinstance(choice, dict) else None
        annotations = message.get("annotations") if isinstance(message, dict) else None
        for ann in annotations or []:
            if not isinstance(ann, dict) or ann.get("type") != "url_citation":
                continue
            body = ann.get("url_citation") or ann
            if isinstance(body, dict) and isinstance(body.get("url"), str):
                yield body["url"], str(body.get("title") or "")


def _structured_candidates(payload: dict[str, Any]) -> Iterator[tuple[str, str, str]]:
    for key in ("citations", "sources", "search_results"):
        for url, text in _structured_items(payload.get(key)):
            yield url, text, "structured"
    for url, text in _annotation_items(payload):
        yield url, text, "structured"


def _text_candidates(text: str) -> Iterator[tuple[str, str, str]]:
    for m in _MARKDOWN_LINK.finditer(text):
        yield m.group(2), m.group(1).strip(), "markdown"
    for m in _REFERENCE_DEF.finditer(text):
        yield m.group(2), m.group(1).strip(), "reference"
    for m in _HTML_ANCHOR.finditer(text):
        label = html.unescape(_TAG.sub("", m.group(2))).strip()
        yield html.unescape(m.group(1)), label, "html"
    for m in _BARE_URL.finditer(text):
        yield m.group(0), "", "bare"


def _collect(candidates: Iterable[tuple[str, str, str]], seen: set[str]) -> list[Citation]:
    found: list[Citation] = []
    for raw, text, source in candidates:
        url = clean_url(raw)
        if not url or not is_valid_url(url):
            continue
        key = normalize_url(url)
        if key in seen:
            continue
        seen.add(key)
        found.append(Citation(url=url, text=text, source=source, domain=bare_host(url)))
    return found


def extract_citations(payload: dict[str, Any] | None, provider_id: str, response_text: str) -> list[Citation]:
    """All distinct, valid citations in a provider reply, in discovery order."""
    seen: set[str] = set()
    citations = _collect(_structured_candidates(payload or {}), seen)
    citations += _collect(_text_candidates(response_text or ""), seen)
    if citations:
        by_source: dict[str, int] = {}
        for c in citations:
            by_source[c.source] = by_source.get(c.source, 0) + 1
        log.debug("Extracted %d citations from %s: %s", len(citations), provider_id, by_source)
    return citations
