"""Brand matching: find a brand in free text with no brand-specific rules.

Each sentence is tried against a fixed cascade; the first strategy that hits
decides that sentence's confidence:

=========  ==========================================================  ==========
strategy   what matches                                                confidence
=========  ==========================================================  ==========
exact      the full name, case-insensitive, on word boundaries         1.0
acronym    initials of the significant words (``IBM``, ``I.B.M.``) or   0.9
           the name with generic suffixes removed (``Acme`` for
           ``Acme Inc``)
domain     the brand host with or without ``www.``, the same core      0.8
           under another TLD, or the bare core token
partial    every significant token of a multi-word name                0.85
fuzzy      a word window a few edits from a long enough name, above    0.7 - 0.9
           ``fuzzy_threshold`` (``fuzzy_strict_threshold`` and the same
           first letter for names under ``fuzzy_strict_length``)
=========  ==========================================================  ==========

The brand-level confidence is the best sentence confidence; it is 0 when the
brand is not mentioned at all.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from functools import lru_cache

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from brandlens.config import Settings, get_settings
from brandlens.utils import bare_host, domain_matches, normalize_name

GENERIC_SUFFIXES = frozenset({
    "inc", "incorporated", "corp", "corporation", "co", "company", "ltd", "limited",
    "llc", "llp", "plc", "gmbh", "ag", "sa", "bv", "pty", "group", "holdings",
    "enterprises", "industries", "international", "global",
})
STOPWORDS = frozenset({"the", "a", "an", "and", "or", "of", "for", "in", "on", "at", "to", "by", "with", "&"})
SECOND_LEVEL_LABELS = frozenset({"co", "com", "org", "net", "gov", "ac", "edu"})

CONFIDENCE = {
    "exact": 1.0,
    "acronym": 0.9,
    "domain": 0.8,
    "partial": 0.85,
}
FUZZY_FLOOR = 0.7
FUZZY_CEILING = 0.9

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
_TOKEN = re.compile(r"[A-Za-z0-9][A-Za-z0-9'&+-]*")


@dataclass
class BrandMatch:
    mentioned: bool = False
    confidence: float = 0.0
    first_position: int | None = None
    mention_count: int = 0
    method: str | None = None
    sentence_indices: list[int] = field(default_factory=list)
    sentences: list[str] = field(default_factory=list)
    depth_contribution: float = 0.0
    word_count: int = 0


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def split_sentences(text: str) -> list[str]:
    """Split on ``.!?`` followed by whitespace, or on newlines.

    URLs and decimals stay in one piece because their dots are not followed
    by whitespace.
    """
    if not text:
        return []
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if s and s.strip()]


def count_words(text: str) -> int:
    return len(text.split())


def _phrase_pattern(phrase: str, flags: int = re.IGNORECASE) -> re.Pattern[str]:
    # Host names inside URLs and e-mail addresses are left to the domain strategy.
    parts = [re.escape(p) for p in phrase.split()]
    return re.compile(r"(?<![\w./@-])" + r"\s+".join(parts) + r"(?![\w-]|\.[A-Za-z0-9])", flags)


def _significant_tokens(name: str) -> list[str]:
    tokens = [t.lower().strip("'") for t in _TOKEN.findall(name)]
    return [t for t in tokens if t not in GENERIC_SUFFIXES and t not in STOPWORDS]


def domain_core(host: str) -> str:
    """Registrable label of a host: ``mongodb`` for ``docs.mongodb.co.uk``."""
    labels = [p for p in host.split(".") if p]
    if len(labels) < 2:
        return ""
    if len(labels) >= 3 and labels[-2] in SECOND_LEVEL_LABELS and len(labels[-1]) == 2:
        return labels[-3]
    return labels[-2]


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------


@dataclass
class BrandPatterns:
    name: str
    exact: re.Pattern[str]
    acronyms: list[re.Pattern[str]]
    domains: list[re.Pattern[str]]
    partial_tokens: list[str]
    normalized: str
    window_sizes: tuple[int, ...]


@lru_cache(maxsize=512)
def build_patterns(brand_name: str, brand_domain: str = "") -> BrandPatterns:
    name = brand_name.strip()
    significant = _significant_tokens(name)
    all_tokens = [t.lower() for t in _TOKEN.findall(name)]

    acronyms: list[re.Pattern[str]] = []
    core_name = " ".join(t for t in _TOKEN.findall(name) if t.lower() not in GENERIC_SUFFIXES)
    if core_name and core_name.lower() != name.lower() and len(core_name) >= 3:
        acronyms.append(_phrase_pattern(core_name))
    if len(significant) >= 2:
        initials = "".join(t[0] for t in significant).upper()
        dotted = r"\.".join(re.escape(c) for c in initials) + r"\.?"
        acronyms.append(re.compile(rf"(?<![\w.])(?:{re.escape(initials)}|{dotted})(?![\w])"))

    domains: list[re.Pattern[str]] = []
    host = bare_host(brand_domain)
    if host and "." in host:
        domains.append(re.compile(rf"(?<![\w.-])(?:www\.)?{re.escape(host)}(?![\w-])", re.IGNORECASE))
        core = domain_core(host)
        if core:
            domains.append(re.compile(
                rf"(?<![\w.-])(?:www\.)?{re.escape(core)}\.[a-z]{{2,}}(?:\.[a-z]{{2}})?(?![\w-])",
                re.IGNORECASE,
            ))
            if len(core) >= 4:
                domains.append(_phrase_pattern(core))

    partial_tokens = significant if len(all_tokens) >= 2 and len(significant) >= 2 else []
    partial_tokens = [t for t in partial_tokens if len(t) > 2]

    n_words = max(1, len(normalize_name(name).split()))
    window_sizes = tuple(sorted({max(1, n_words - 1), n_words, n_words + 1}))

    return BrandPatterns(
        name=name,
        exact=_phrase_pattern(name),
        acronyms=acronyms,
        domains=domains,
        partial_tokens=partial_tokens,
        normalized=normalize_name(name),
        window_sizes=window_sizes,
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _fuzzy_confidence(sentence: str, patterns: BrandPatterns, settings: Settings) -> float:
    target = patterns.normalized
    length = len(target.replace(" ", ""))
    if length < settings.fuzzy_min_length:
        return 0.0
    if len(sentence) > settings.fuzzy_max_sentence_chars:
        return 0.0
    # Names under fuzzy_strict_length need a tighter ratio and the same leading letter.
    strict = length < settings.fuzzy_strict_length
    threshold = settings.fuzzy_strict_threshold if strict else settings.fuzzy_threshold
    max_edits = max(1, len(target) // settings.fuzzy_chars_per_edit)
    words = normalize_name(sentence).split()
    best = 0.0
    for size in patterns.window_sizes:
        for i in range(len(words) - size + 1):
            window = " ".join(words[i:i + size])
            if abs(len(window) - len(target)) > max_edits:
                continue
            if strict and window[0] != target[0]:
                continue
            if Levenshtein.distance(window, target, score_cutoff=max_edits) > max_edits:
                continue
            best = max(best, fuzz.ratio(window, target) / 100.0)
    if best < threshold:
        return 0.0
    span = max(1e-9, 1.0 - threshold)
    return round(FUZZY_FLOOR + (FUZZY_CEILING - FUZZY_FLOOR) * (best - threshold) / span, 4)


def match_sentence(sentence: str, patterns: BrandPatterns, settings: Settings) -> tuple[str, float, int] | None:
    """Return ``(method, confidence, occurrences)`` for the first strategy that hits."""
    hits = len(patterns.exact.findall(sentence))
    if hits:
        return "exact", CONFIDENCE["exact"], hits

    for pattern in patterns.acronyms:
        hits = len(pattern.findall(sentence))
        if hits:
            return "acronym", CONFIDENCE["acronym"], hits

    for pattern in patterns.domains:
        hits = len(pattern.findall(sentence))
        if hits:
            return "domain", CONFIDENCE["domain"], hits

    if patterns.partial_tokens:
        words = set(normalize_name(sentence).split())
        if all(t in words for t in patterns.partial_tokens):
            return "partial", CONFIDENCE["partial"], 1

    conf = _fuzzy_confidence(sentence, patterns, settings)
    if conf:
        return "fuzzy", conf, 1
    return None


def match_brand(
    text: str,
    brand_name: str,
    brand_domain: str = "",
    settings: Settings | None = None,
    sentences: list[str] | None = None,
) -> BrandMatch:
    """Locate ``brand_name`` in ``text``.

    ``sentences`` may be passed when the caller already split the text, so
    every tracked brand sees the same sentence indexing.
    """
    s = settings or get_settings()
    if sentences is None:
        sentences = split_sentences(text)
    if not brand_name or not brand_name.strip() or not sentences:
        return BrandMatch()

    patterns = build_patterns(brand_name, brand_domain or "")
    total = len(sentences)
    result = BrandMatch()

    for idx, sentence in enumerate(sentences):
        hit = match_sentence(sentence, patterns, s)
        if hit is None:
            continue
        method, confidence, occurrences = hit
        if not result.mentioned:
            result.mentioned = True
            result.first_position = idx + 1
        if confidence > result.confidence:
            result.confidence = confidence
            result.method = method
        result.mention_count += max(1, occurrences)
        result.sentence_indices.append(idx)
        result.sentences.append(sentence)
        words = count_words(sentence)
        result.word_count += words
        result.depth_contribution += words * math.exp(-s.depth_decay * idx / total)

    result.depth_contribution = round(result.depth_contribution, 4)
    return result


# ---------------------------------------------------------------------------
# Citation ownership
# ---------------------------------------------------------------------------


def host_matches_domain(host: str, domain: str) -> bool:
    """Same site, a subdomain of it, or the same core under another TLD."""
    target = bare_host(domain)
    if not host or not target:
        return False
    if domain_matches(host, target):
        return True
    core = domain_core(target)
    return bool(core) and domain_core(host) == core


def classify_citation(url: str, brand_domain: str, competitor_domains: list[str] | None = None) -> str:
    host = bare_host(url)
    if not host or "." not in host:
        return "unknown"
    if brand_domain and host_matches_domain(host, brand_domain):
        return "owned"
    for comp in competitor_domains or []:
        if comp and host_matches_domain(host, comp):
            return "competitor"
    return "thirdParty"
