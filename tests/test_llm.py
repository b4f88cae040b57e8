"""
Tests for specialist prompt rendering and the generation client.
"""

from types import SimpleNamespace

import pytest

from specialist_router.llm import GenerationError, ResponseGenerator, render_context, topic_hint
from specialist_router.models import ClassificationSource, FailureKind, Turn

from fakes import FakeChatClient, SQL_QUERY, status_error, timeout_error


LABELS = {"technical": "Technical Expert", "financial": "Financial Advisor", None: "General Assistant"}


def _turn(query, specialist_id):
    return Turn(
        query=query,
        specialist_id=specialist_id,
        confidence=0.9,
        rationale="test",
        source=ClassificationSource.CLASSIFIER
    )


def _generator(*outcomes, delay=0.0, timeout_seconds=0.5):
    chat = FakeChatClient(*outcomes, delay=delay)
    return ResponseGenerator(client=chat, model="test/generator", timeout_seconds=timeout_seconds), chat


class TestContextRendering:
    """Compact role and topic hints instead of the raw transcript."""

    def test_topic_hint_drops_stopwords(self):
        assert topic_hint("How do I optimize this SQL query for better performance?") == \
            "optimize sql query better performance"

    def test_no_history(self):
        assert render_context([], LABELS) == "No previous conversation"

    def test_roles_and_handovers(self):
        context = [
            _turn("Why is my SQL query slow?", "technical"),
            _turn("Add an index to the orders table", "technical"),
            _turn("What ROI does the migration give?", "financial"),
        ]
        lines = render_context(context, LABELS).splitlines()

        assert lines[0] == "- Technical Expert: sql query slow"
        assert "(handed over)" not in lines[1]
        assert lines[2].startswith("- Financial Advisor: roi")
        assert lines[2].endswith("(handed over)")

    def test_general_turns_use_general_label(self):
        assert render_context([_turn("hello there", None)], LABELS) == "- General Assistant: hello there"


class TestPromptBuilding:
    """Specialist template rendering."""

    def test_template_filled(self, registry):
        generator, _ = _generator("answer")
        prompt = generator.build_prompt(registry.get("technical"), SQL_QUERY)

        assert prompt.startswith("You are a senior software engineer")
        assert SQL_QUERY in prompt
        assert "No previous conversation" in prompt
        assert "{query}" not in prompt and "{context}" not in prompt

    def test_braces_in_query_are_kept(self, registry):
        generator, _ = _generator("answer")
        prompt = generator.build_prompt(registry.general, "What does {context} mean in f-strings?")

        assert "What does {context} mean in f-strings?" in prompt

    def test_context_included(self, registry):
        generator, _ = _generator("answer")
        prompt = generator.build_prompt(
            registry.get("financial"), "And the payback period?",
            [_turn("What ROI does the migration give?", "financial")], LABELS
        )
        assert "- Financial Advisor: roi migration give" in prompt


class TestGeneration:
    """Single-attempt generation calls."""

    async def test_respond(self, registry):
        generator, chat = _generator("  Add a composite index.  ")

        reply = await generator.respond(registry.get("technical"), SQL_QUERY)

        assert reply == "Add a composite index."
        messages = chat.calls[0]["messages"]
        assert messages[0]["role"] == "system"
        assert "senior software engineer" in messages[0]["content"]
        assert messages[1] == {"role": "user", "content": SQL_QUERY}
        assert chat.calls[0]["model"] == "test/generator"

    async def test_query_sent_once(self, registry):
        generator, chat = _generator("answer")

        await generator.respond(registry.get("technical"), SQL_QUERY)

        messages = chat.calls[0]["messages"]
        assert SQL_QUERY not in messages[0]["content"]
        assert "{query}" not in messages[0]["content"]
        assert "the user's message follows" in messages[0]["content"]
        assert sum(m["content"].count(SQL_QUERY) for m in messages) == 1

    async def test_generate_without_query(self):
        generator, chat = _generator("done")

        assert await generator.generate("system prompt only") == "done"
        assert len(chat.calls[0]["messages"]) == 1

    @pytest.mark.parametrize("outcome, kind", [
        (timeout_error(), FailureKind.UNAVAILABLE),
        (status_error(500), FailureKind.UNAVAILABLE),
        (status_error(401), FailureKind.REJECTED),
        (None, FailureKind.MALFORMED),
        ("   ", FailureKind.MALFORMED),
        (SimpleNamespace(content=None, refusal="not allowed"), FailureKind.REJECTED),
    ])
    async def test_failures(self, registry, outcome, kind):
        generator, chat = _generator(outcome)

        with pytest.raises(GenerationError) as exc_info:
            await generator.respond(registry.general, "hello")

        assert exc_info.value.kind == kind
        assert len(chat.calls) == 1

    async def test_timeout(self, registry):
        generator, _ = _generator("late answer", delay=1.0, timeout_seconds=0.05)

        with pytest.raises(GenerationError) as exc_info:
            await generator.respond(registry.general, "hello")

        assert exc_info.value.kind == FailureKind.UNAVAILABLE
