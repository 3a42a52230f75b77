"""Tests for the FAQ knowledge base tool."""

from __future__ import annotations

import pytest

from concierge.tools import faq
from concierge.tools.faq import (
    KnowledgeChunk,
    _doc_chunks,
    _split_into_sections,
    answer_faq,
    reload_faq_sources,
)


@pytest.fixture(autouse=True)
def fresh_index():
    reload_faq_sources()
    yield
    reload_faq_sources()


class TestFaqSources:
    def test_policy_docs_are_split_by_heading(self):
        chunks = _doc_chunks()
        keys = [chunk.key for chunk in chunks]
        assert "guarantee.md#1" in keys
        assert all(chunk.source_type == "doc" for chunk in chunks)
        assert chunks[0].text.startswith("Satisfaction guarantee")

    def test_split_into_sections_keeps_preamble(self):
        content = "Intro line\n\n# First\nBody one\n\n## Second\nBody two\n"
        assert _split_into_sections(content) == [
            ("", "Intro line"),
            ("First", "Body one"),
            ("Second", "Body two"),
        ]

    def test_missing_docs_dir_yields_no_chunks(self, tmp_path):
        assert _doc_chunks(tmp_path / "missing") == []


class TestAnswerFaq:
    def test_cancellation_policy_comes_from_the_knowledge_base(self):
        result = answer_faq("cancellation policy")
        assert result.found is True
        assert result.source_type == "kb"
        assert result.source_key == "policies.cancellation"
        assert "24 hours" in result.answer

    def test_service_area_question(self):
        result = answer_faq("Do you serve Oakland?")
        assert result.found is True
        assert result.source_key == "company.serviceAreas"
        assert "Oakland" in result.answer

    def test_best_matching_doc_section_wins(self):
        result = answer_faq("Can I leave a key with the building concierge?")
        assert result.found is True
        assert result.source_type == "doc"
        assert result.source_key == "guarantee.md#3"
        assert result.answer.startswith("Access and keys")

    def test_unrelated_question_is_not_found(self):
        result = answer_faq("xyzzy qwerty")
        assert result.found is False
        assert result.answer is None

    def test_short_tokens_only_is_not_found(self):
        assert answer_faq("is it ok?").found is False

    def test_long_answers_are_truncated(self, monkeypatch):
        monkeypatch.setattr(
            faq, "_chunks", [KnowledgeChunk(key="laundry", text="laundry " * 200, source_type="doc")],
        )
        result = answer_faq("laundry")
        assert len(result.answer) == faq.MAX_ANSWER_CHARS
        assert result.answer.endswith("...")


class TestFaqTool:
    @pytest.mark.asyncio
    async def test_not_found_result_omits_empty_fields(self):
        from concierge.tools.registry import ToolContext

        data = await faq.FAQ_TOOL.executor(faq.FaqArgs(question="xyzzy qwerty"), ToolContext())
        assert data == {"found": False}
