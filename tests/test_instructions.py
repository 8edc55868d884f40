"""Tests for instruction and model-output parsing."""

from __future__ import annotations

import json

import pytest

from instructions import (
    extract_ai_instructions,
    fragments_from_understanding,
    parse_json_response,
    parse_strength,
    parse_understanding_sections,
)
from models import KnowledgeBaseCategory


class TestParseStrength:
    """Retouch strength embedded in free text."""

    def test_chinese_key_with_fullwidth_colon(self) -> None:
        assert parse_strength("柔化背景\n重绘幅度：0.4") == pytest.approx(0.4)

    def test_english_keys(self) -> None:
        assert parse_strength("retouch_strength: 0.65") == pytest.approx(0.65)
        assert parse_strength("Strength: 1") == pytest.approx(1.0)

    def test_missing_returns_default(self) -> None:
        assert parse_strength("make the sky bluer") is None
        assert parse_strength("make the sky bluer", 0.75) == 0.75
        assert parse_strength(None, 0.5) == 0.5

    def test_out_of_range_number_is_ignored(self) -> None:
        assert parse_strength("strength: 7", 0.75) == 0.75

    def test_number_must_end_inside_range(self) -> None:
        assert parse_strength("strength: 1.5", 0.75) == 0.75
        assert parse_strength("strength: 10", 0.75) == 0.75
        assert parse_strength("strength: 0.5.", 0.75) == pytest.approx(0.5)


class TestExtractAiInstructions:
    """The AI-facing section of an instruction block."""

    def test_plain_text_is_returned_whole(self) -> None:
        assert extract_ai_instructions("  brighten the face  ") == "brighten the face"

    def test_chinese_heading(self) -> None:
        text = "【给用户看的】\n更亮一点\n【给AI看的】\nIncrease exposure by one stop.\n重绘幅度: 0.3"
        assert extract_ai_instructions(text) == "Increase exposure by one stop."

    def test_english_heading(self) -> None:
        text = "Notes for me\n[For AI]\nRemove the lamp post.\nKeep the pose."
        assert extract_ai_instructions(text) == "Remove the lamp post.\nKeep the pose."

    def test_empty_section_falls_back_to_raw(self) -> None:
        text = "[For AI]\nstrength: 0.5"
        assert extract_ai_instructions(text) == text

    def test_empty_input(self) -> None:
        assert extract_ai_instructions("") == ""


class TestUnderstandingSections:
    """Sectioned image descriptions mapped to knowledge-base categories."""

    TEXT = (
        "Overall: a model on a pier.\n"
        "1. [Pose & Action]\nLeaning forward, hands in pockets.\n"
        "2. [Scene]\nWooden pier, calm sea.\n"
        "3. [Composition / Camera]\nLow angle, 35mm.\n"
        "[Empty]\n"
        "【光照与氛围】\n黄昏逆光\n"
    )

    def test_sections_in_order_and_empty_skipped(self) -> None:
        sections = parse_understanding_sections(self.TEXT)
        assert [title for title, _ in sections] == [
            "Pose & Action", "Scene", "Composition / Camera", "光照与氛围",
        ]
        assert sections[0][1] == "Leaning forward, hands in pockets."

    def test_fragments_by_keyword(self) -> None:
        analysis = fragments_from_understanding(self.TEXT)
        assert analysis.holistic_description.startswith("Overall: a model on a pier.")
        assert analysis.fragments[KnowledgeBaseCategory.POSE] == "Leaning forward, hands in pockets."
        assert analysis.fragments[KnowledgeBaseCategory.SCENE] == "Wooden pier, calm sea."
        assert analysis.fragments[KnowledgeBaseCategory.COMPOSITION] == "Low angle, 35mm."
        assert analysis.fragments[KnowledgeBaseCategory.LIGHTING] == "黄昏逆光"
        assert KnowledgeBaseCategory.CLOTHING not in analysis.fragments

    def test_no_headings(self) -> None:
        analysis = fragments_from_understanding("Just a sentence.")
        assert analysis.fragments == {}
        assert analysis.holistic_description == "Just a sentence."


class TestParseJsonResponse:
    """JSON decoding tolerant of fences and chatter."""

    def test_fenced(self) -> None:
        assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}

    def test_surrounding_text(self) -> None:
        assert parse_json_response('Here you go: {"hasWatermark": false} thanks') == {"hasWatermark": False}

    def test_garbage_raises(self) -> None:
        with pytest.raises(json.JSONDecodeError):
            parse_json_response("no json here")
