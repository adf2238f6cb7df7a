"""
tests/test_metadata.py

Project metadata: gateway rewriting and tolerant parsing.
"""

import pytest

from otcx.metadata import DEFAULT_GATEWAY, ProjectMetadata, fetch_metadata, ipfs_to_http, parse_metadata


class TestIpfsToHttp:

    @pytest.mark.parametrize("uri,expected", [
        ("ipfs://bafy123", DEFAULT_GATEWAY + "bafy123"),
        ("bafy123", DEFAULT_GATEWAY + "bafy123"),
        ("https://cdn.example/logo.png", "https://cdn.example/logo.png"),
        ("", ""),
    ])
    def test_rewrite(self, uri, expected):
        assert ipfs_to_http(uri) == expected

    def test_gateway_without_trailing_slash(self):
        assert ipfs_to_http("ipfs://cid", "https://ipfs.io/ipfs") == "https://ipfs.io/ipfs/cid"


class TestParseMetadata:

    def test_full_document(self):
        meta = parse_metadata({
            "description": "  Points for bandwidth  ",
            "websiteUrl":  "https://grass.example",
            "twitterUrl":  "https://x.com/grass",
            "logoUrl":     "ipfs://logo",
            "icon":        "https://cdn.example/icon.png",
        })
        assert meta.description == "Points for bandwidth"
        assert meta.website == "https://grass.example"
        assert meta.twitter == "https://x.com/grass"
        assert meta.logo_url == DEFAULT_GATEWAY + "logo"
        assert meta.icon_url == "https://cdn.example/icon.png"
        assert not meta.is_empty

    def test_malformed_fields_become_empty(self):
        meta = parse_metadata({"description": 42, "website": None, "twitter": "   "})
        assert meta == ProjectMetadata()
        assert meta.is_empty

    @pytest.mark.parametrize("data", [None, [], "text", 3])
    def test_not_an_object(self, data):
        assert parse_metadata(data) == ProjectMetadata()


class TestFetch:

    @pytest.mark.asyncio
    async def test_empty_uri_skips_fetch(self):
        assert await fetch_metadata("", session=None) == ProjectMetadata()
