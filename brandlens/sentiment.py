"""Keyword sentiment for the sentences that mention a brand.

Each sentence scores +0.4 per positive keyword and -0.4 per negative keyword.
A negation word anywhere in the sentence flips those weights to -0.2 / +0.2.
The brand's score is the mean sentence score clamped to [-1, 1].
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field

from brandlens.utils import clamp

POSITIVE_KEYWORDS = frozenset({
    "best", "excellent", "great", "top", "leading", "trusted", "reliable",
    "recommended", "popular", "strong", "superior", "outstanding", "premier",
    "robust", "comprehensive", "flexible", "innovative", "powerful", "advanced",
    "seamless", "easy", "simple", "efficient", "effective", "preferred", "ideal",
    "unmatched", "favored", "recognized", "renowned", "good", "quality", "solid",
    "worthy", "valuable", "beneficial", "helpful", "useful", "proven", "established",
    "successful", "well-regarded", "impressive", "notable", "advantageous",
    "promising", "suitable",
})

NEGATIVE_KEYWORDS = frozenset({
    "bad", "poor", "worst", "weak", "limited", "lacking", "difficult",
    "complicated", "expensive", "costly", "slow", "unreliable", "problematic",
    "issues", "problems", "concerns", "drawbacks", "disadvantages", "limitations",
    "struggles", "fails", "inferior", "outdated", "challenging", "complex",
    "questionable", "unclear", "insufficient", "inadequate", "substandard",
    "disappointing", "concerning", "troublesome", "risky", "uncertain",
    "fragile", "unstable", "inefficient", "ineffective", "unsuitable",
})

NEGATIONS = frozenset({
    "not", "no", "never", "none", "neither", "barely", "hardly", "scarcely",
    "rarely", "seldom", "isn't", "doesn't", "don't", "wasn't", "aren't",
})

_WORD = re.compile(r"[a-z][a-z'-]*")

SENTENCE_THRESHOLD = 0.2
OVERALL_THRESHOLD = 0.1


@dataclass
class SentimentResult:
    label: str = "neutral"
    score: float = 0.0
    drivers: list[tuple[str, str]] = field(default_factory=list)


def score_sentence(sentence: str) -> float:
    words = set(_WORD.findall(sentence.lower()))
    negated = bool(words & NEGATIONS)
    pos = len(words & POSITIVE_KEYWORDS)
    neg = len(words & NEGATIVE_KEYWORDS)
    if negated:
        return -0.2 * pos + 0.2 * neg
    return 0.4 * pos - 0.4 * neg


def analyze_sentiment(sentences: list[str]) -> SentimentResult:
    if not sentences:
        return SentimentResult()

    total = 0.0
    drivers: list[tuple[str, str]] = []
    for sentence in sentences:
        s = score_sentence(sentence)
        total += s
        if s > SENTENCE_THRESHOLD:
            drivers.append(("positive", sentence[:150]))
        elif s < -SENTENCE_THRESHOLD:
            drivers.append(("negative", sentence[:150]))

    score = clamp(total / len(sentences), -1.0, 1.0)
    if score > OVERALL_THRESHOLD:
        label = "positive"
    elif score < -OVERALL_THRESHOLD:
        label = "negative"
    elif {d[0] for d in drivers} == {"positive", "negative"}:
        label = "mixed"
    else:
        label = "neutral"
    return SentimentResult(label=label, score=round(score, 4), drivers=drivers[:5])
