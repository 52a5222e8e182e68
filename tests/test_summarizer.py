"""Tests for summary prompt building and generation."""

from types import SimpleNamespace

import pytest

from tokenwatch.backends import OpenAISummaryModel, SummaryModel
from tokenwatch.errors import SummarizationError
from tokenwatch.summarizer import (
    FALLBACK_PREFIX,
    build_summary_prompt,
    fallback_summary,
    generate_summary,
)


class MockModel:
    """Mock summarization model returning a fixed reply."""

    def __init__(self, reply):
        self.reply = reply

    async def generate(self, messages, max_tokens):
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


class TestPrompt:
    """Tests for the summary prompt."""

    def test_numbered_excerpts(self):
        messages = [
            {"role": "user", "content": "x" * 300},
            {"content": "no role"},
        ]
        prompt = build_summary_prompt(messages, excerpt_chars=200)

        assert f"[1] user: {'x' * 200}\n" in prompt
        assert "x" * 201 not in prompt
        assert "[2] unknown: no role" in prompt
        assert prompt.startswith("Summarize the following conversation")
        assert prompt.endswith("Summary (be concise but comprehensive):")


class TestFallbackSummary:
    """Tests for the local fallback."""

    def test_empty(self):
        assert fallback_summary([]) == FALLBACK_PREFIX

    def test_skips_empty_contents(self):
        messages = [{"role": "user", "content": c} for c in ["a", "", "b"]]
        assert fallback_summary(messages) == FALLBACK_PREFIX + "a; b"


class TestGenerateSummary:
    """Tests for generate_summary."""

    @pytest.mark.asyncio
    async def test_string_reply(self):
        summary = await generate_summary(MockModel("  done  "), [{"role": "user", "content": "x"}], 100)
        assert summary == "done"

    @pytest.mark.asyncio
    async def test_mapping_reply(self):
        summary = await generate_summary(MockModel({"text": "done"}), [{"role": "user", "content": "x"}], 100)
        assert summary == "done"

    @pytest.mark.asyncio
    async def test_failure_is_wrapped(self):
        with pytest.raises(SummarizationError, match="boom"):
            await generate_summary(MockModel(RuntimeError("boom")), [{"role": "user", "content": "x"}], 100)

    @pytest.mark.asyncio
    async def test_empty_reply(self):
        with pytest.raises(SummarizationError):
            await generate_summary(MockModel(None), [{"role": "user", "content": "x"}], 100)


class FakeCompletions:
    """Stands in for ``client.chat.completions``."""

    def __init__(self, content):
        self.content = content
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeClient:
    def __init__(self, content):
        self.chat = SimpleNamespace(completions=FakeCompletions(content))


class TestOpenAISummaryModel:
    """Tests for the OpenAI-compatible backend."""

    @pytest.mark.asyncio
    async def test_generate(self):
        client = FakeClient("the summary")
        model = OpenAISummaryModel(client, model="small-model", temperature=0.0)
        messages = [{"role": "user", "content": "Summarize"}]

        summary = await model.generate(messages, max_tokens=100)

        assert summary == "the summary"
        assert model.model_name == "small-model"
        assert client.chat.completions.kwargs == {
            "model": "small-model",
            "messages": messages,
            "temperature": 0.0,
            "max_tokens": 100,
        }

    @pytest.mark.asyncio
    async def test_none_content(self):
        model = OpenAISummaryModel(FakeClient(None))
        assert await model.generate([], max_tokens=10) == ""

    def test_satisfies_protocol(self):
        assert isinstance(OpenAISummaryModel(FakeClient("x")), SummaryModel)
