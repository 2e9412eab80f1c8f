"""Tests for keyword sentiment."""
from __future__ import annotations

import pytest

from brandlens.sentiment import analyze_sentiment, score_sentence


def test_positive():
    result = analyze_sentiment(["MongoDB is a great and reliable choice."])
    assert result.label == "positive"
    assert result.score == pytest.approx(0.8)
    assert result.drivers == [("positive", "MongoDB is a great and reliable choice.")]


def test_negation_flips_weight():
    assert score_sentence("MongoDB is not reliable for this workload.") == pytest.approx(-0.2)
    assert analyze_sentiment(["MongoDB is not reliable for this workload."]).label == "negative"


def test_mixed():
    result = analyze_sentiment(["MongoDB is great.", "MongoDB is expensive."])
    assert result.label == "mixed"
    assert result.score == 0.0


def test_neutral_and_empty():
    assert analyze_sentiment(["MongoDB was founded in 2007."]).label == "neutral"
    empty = analyze_sentiment([])
    assert (empty.label, empty.score, empty.drivers) == ("neutral", 0.0, [])


def test_score_clamped():
    sentence = "best excellent great top leading trusted reliable"
    assert analyze_sentiment([sentence]).score == 1.0
