"""Tests for validation of scraper script return values."""

from __future__ import annotations

import pytest

from scrapearr.domain.exceptions import MalformedOutputError
from scrapearr.infrastructure.sandbox.output import (
    ScriptStreamItem,
    parse_script_output,
)


class TestParseScriptOutput:
    def test_minimal_url_item(self) -> None:
        [result] = parse_script_output(
            [{"url": "https://cdn.example/a.mp4"}], source_name="Alpha"
        )
        assert result.url == "https://cdn.example/a.mp4"
        assert result.title == "Alpha"
        assert result.source_name == "Alpha"
        assert not result.is_torrent

    def test_full_item(self) -> None:
        [result] = parse_script_output(
            [
                {
                    "url": "https://cdn.example/a.m3u8",
                    "title": "Movie 720p",
                    "name": "Alpha HLS",
                    "quality": "720p",
                    "size": 1450,
                    "language": "de",
                    "headers": {"Referer": "https://alpha.example/"},
                    "external": True,
                    "unknown_field": "ignored",
                }
            ],
            source_name="Alpha",
        )
        assert result.title == "Movie 720p"
        assert result.name == "Alpha HLS"
        assert result.quality_tag == "720p"
        assert result.size == "1450"
        assert result.language == "de"
        assert dict(result.extra_headers) == {"Referer": "https://alpha.example/"}
        assert result.is_external

    def test_title_falls_back_to_name(self) -> None:
        [result] = parse_script_output(
            [{"url": "https://x", "name": "Server 2"}], source_name="Alpha"
        )
        assert result.title == "Server 2"

    def test_url_object_is_unwrapped(self) -> None:
        [result] = parse_script_output(
            [{"url": {"url": "https://cdn.example/b.mp4", "type": "mp4"}}],
            source_name="Alpha",
        )
        assert result.url == "https://cdn.example/b.mp4"

    def test_magnet_in_url_field(self) -> None:
        [result] = parse_script_output(
            [{"url": "magnet:?xt=urn:btih:ABC&dn=Movie"}], source_name="Alpha"
        )
        assert result.url is None
        assert result.magnet == "magnet:?xt=urn:btih:ABC&dn=Movie"
        assert result.is_torrent
        assert result.target == result.magnet

    def test_info_hash(self) -> None:
        [result] = parse_script_output(
            [{"infoHash": " 0123ABCD ", "title": "T"}], source_name="Alpha"
        )
        assert result.magnet == "magnet:?xt=urn:btih:0123abcd"

    def test_null_headers(self) -> None:
        [result] = parse_script_output(
            [{"url": "https://x", "headers": None}], source_name="Alpha"
        )
        assert dict(result.extra_headers) == {}

    def test_tuple_accepted(self) -> None:
        assert len(parse_script_output(({"url": "https://x"},), source_name="A")) == 1

    def test_empty_list(self) -> None:
        assert parse_script_output([], source_name="Alpha") == []

    @pytest.mark.parametrize("raw", [None, "https://x", {"url": "https://x"}, 3])
    def test_non_list_is_malformed(self, raw: object) -> None:
        with pytest.raises(MalformedOutputError, match="expected a list"):
            parse_script_output(raw, source_name="Alpha")

    def test_non_mapping_item_is_malformed(self) -> None:
        with pytest.raises(MalformedOutputError, match="item 1: expected a mapping"):
            parse_script_output(
                [{"url": "https://x"}, "https://y"], source_name="Alpha"
            )

    def test_item_without_target_is_malformed(self) -> None:
        with pytest.raises(MalformedOutputError, match="item 0"):
            parse_script_output([{"title": "nothing playable"}], source_name="Alpha")

    def test_bad_headers_type_is_malformed(self) -> None:
        with pytest.raises(MalformedOutputError, match="headers"):
            parse_script_output(
                [{"url": "https://x", "headers": ["Referer"]}], source_name="Alpha"
            )


class TestScriptStreamItem:
    def test_accepts_snake_case_hash(self) -> None:
        item = ScriptStreamItem.model_validate({"info_hash": "abc"})
        assert item.info_hash == "abc"

    def test_magnet_wins_over_info_hash(self) -> None:
        item = ScriptStreamItem.model_validate(
            {"magnet": "magnet:?xt=urn:btih:aaa", "infoHash": "bbb"}
        )
        assert item.to_result("A").magnet == "magnet:?xt=urn:btih:aaa"
