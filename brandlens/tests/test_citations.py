"""Tests for citation extraction, URL validation and de-duplication."""
from __future__ import annotations

import pytest

from brandlens.citations import clean_url, extract_citations, is_valid_url, normalize_url


class TestExtractCitations:
    def test_markdown_and_bare_duplicates_collapse(self):
        text = "See [MongoDB](https://www.mongodb.com/) and https://www.mongodb.com for details."
        cites = extract_citations({}, "openai", text)
        assert len(cites) == 1
        assert cites[0].source == "markdown"
        assert cites[0].text == "MongoDB"
        assert cites[0].domain == "mongodb.com"
        assert cites[0].classification == "unknown"

    def test_structured_citations_win(self):
        payload = {"citations": ["https://docs.mongodb.com/manual"]}
        text = "Read the [manual](https://docs.mongodb.com/manual/)."
        cites = extract_citations(payload, "perplexity", text)
        assert [c.source for c in cites] == ["structured"]
        assert cites[0].url == "https://docs.mongodb.com/manual"

    def test_search_results_and_annotations(self):
        payload = {
            "search_results": [{"url": "https://redis.io/docs", "title": "Redis docs"}],
            "choices": [{"message": {
                "content": "x",
                "annotations": [{
                    "type": "url_citation",
                    "url_citation": {"url": "https://clickhouse.com/docs", "title": "ClickHouse Docs"},
                }],
            }}],
        }
        cites = extract_citations(payload, "openai", "")
        assert [(c.url, c.text) for c in cites] == [
            ("https://redis.io/docs", "Redis docs"),
            ("https://clickhouse.com/docs", "ClickHouse Docs"),
        ]

    def test_reference_definitions(self):
        text = "Details below.\n\n[1]: https://www.postgresql.org/docs/\n"
        cites = extract_citations(None, "claude", text)
        assert len(cites) == 1
        assert cites[0].source == "reference"
        assert cites[0].text == "1"
        assert cites[0].domain == "postgresql.org"

    def test_html_anchor(self):
        text = 'Try <a href="https://redis.io/docs">Redis <b>docs</b></a> first.'
        cites = extract_citations({}, "openai", text)
        assert len(cites) == 1
        assert cites[0].source == "html"
        assert cites[0].text == "Redis docs"

    def test_bare_urls_lose_trailing_punctuation(self):
        text = "Read more at https://example.com/guide. Also (see https://example.org/a)."
        cites = extract_citations({}, "openai", text)
        assert [c.url for c in cites] == ["https://example.com/guide", "https://example.org/a"]
        assert all(c.source == "bare" for c in cites)

    def test_www_host_gets_scheme(self):
        cites = extract_citations({}, "openai", "Visit www.cassandra.apache.org today")
        assert cites[0].url == "https://www.cassandra.apache.org"
        assert cites[0].domain == "cassandra.apache.org"

    def test_invalid_links_dropped(self):
        text = (
            "[local](http://localhost:8000/x) [loop](http://127.0.0.1/a) "
            "[intranet](https://intranet/page) [short](https://example.c)"
        )
        assert extract_citations({}, "openai", text) == []

    def test_empty_inputs(self):
        assert extract_citations(None, "openai", "") == []
        assert extract_citations({"citations": "not-a-list"}, "openai", "no links here") == []


class TestUrlHelpers:
    @pytest.mark.parametrize("url,ok", [
        ("https://mongodb.com/pricing", True),
        ("http://8.8.8.8/dns", True),
        ("http://localhost/x", False),
        ("http://127.0.0.1/x", False),
        ("https://intranet/page", False),
        ("https://example.c", False),
        ("ftp://example.com/file", False),
    ])
    def test_is_valid_url(self, url, ok):
        assert is_valid_url(url) is ok

    def test_normalize_url(self):
        assert normalize_url("HTTPS://WWW.Example.com/Path/?q=1#frag") == "https://example.com/Path"

    def test_clean_url(self):
        assert clean_url("  https://example.com/a),  ") == "https://example.com/a"
        assert clean_url("www.example.com") == "https://www.example.com"
        assert clean_url(None) is None
        assert clean_url("...") is None
