import unittest
from unittest.mock import MagicMock

import pytest

from marketing_agent.config import GenerationConfig
from marketing_agent.content.generator import (
    PLACEHOLDER_CONTENT,
    PLACEHOLDER_TITLE,
    ContentGenerator,
    GenerationRequest,
    ParseFailure,
    ParseSuccess,
    build_user_prompt,
    normalize_generated_content,
    parse_generation_output,
)
from marketing_agent.errors import GenerationParseError, NotFound, RateLimited, ValidationError
from marketing_agent.services.rag_search import RagReference
from marketing_agent.services.rate_limiter import SlidingWindowRateLimiter

VALID_OUTPUT = (
    '{"title": "Spring cleanup", "content": "Join us!", "tags": ["river", " "], '
    '"suggestedImages": ["volunteers at the bank"], "suggestedPublishHour": 18}'
)


class ParseGenerationOutputTest(unittest.TestCase):
    def test_plain_json(self):
        result = parse_generation_output(VALID_OUTPUT)
        self.assertIsInstance(result, ParseSuccess)
        self.assertEqual(result.data["title"], "Spring cleanup")

    def test_code_fence(self):
        result = parse_generation_output(f"```json\n{VALID_OUTPUT}\n```")
        self.assertIsInstance(result, ParseSuccess)

    def test_repairs_surrounding_prose(self):
        result = parse_generation_output(f"Sure! Here is the post:\n{VALID_OUTPUT}\nHope it helps.")
        self.assertIsInstance(result, ParseSuccess)
        self.assertEqual(result.data["suggestedPublishHour"], 18)

    def test_total_failure(self):
        result = parse_generation_output("I cannot help with that.")
        self.assertIsInstance(result, ParseFailure)
        self.assertEqual(result.raw, "I cannot help with that.")

    def test_array_is_not_an_object(self):
        self.assertIsInstance(parse_generation_output("[1, 2, 3]"), ParseFailure)


def test_normalize_fills_safe_defaults():
    content = normalize_generated_content({"title": "  ", "tags": "nope", "suggestedPublishHour": 24})

    assert content.title == PLACEHOLDER_TITLE
    assert content.content == PLACEHOLDER_CONTENT
    assert content.tags == []
    assert content.suggested_images == []
    assert content.suggested_publish_hour is None


def test_normalize_keeps_valid_fields():
    content = normalize_generated_content({
        "title": " Title ", "content": "Body", "tags": ["a", "", 3, "b"], "suggestedPublishHour": 0,
    })
    assert content.title == "Title"
    assert content.tags == ["a", "b"]
    assert content.suggested_publish_hour == 0


def test_user_prompt_wraps_references_and_length_guide(organization):
    request = GenerationRequest(organization_id="org-1", channel="micro-post", topic="cleanup", target_length="short")
    refs = [RagReference(id="f1", source_type="past-content", text="Last year's cleanup")]

    prompt = build_user_prompt(request, organization, refs)

    assert "short (about 120-250 characters)" in prompt
    assert "<<RAG_SOURCE_1>>" in prompt
    assert "Topic: cleanup" in prompt


def _generator(session, llm=None, searcher=None, limiter=None):
    if llm is None:
        llm = MagicMock()
        llm.complete.return_value = VALID_OUTPUT
    return ContentGenerator(session, llm, searcher=searcher, rate_limiter=limiter, config=GenerationConfig())


def _request(**overrides):
    values = {"organization_id": "org-1", "channel": "image-feed", "topic": "spring cleanup"}
    values.update(overrides)
    return values


def test_generate_happy_path(session, organization):
    searcher = MagicMock()
    searcher.search.return_value = [RagReference(id="f1", source_type="profile", text="We clean rivers")]
    llm = MagicMock()
    llm.complete.return_value = VALID_OUTPUT

    content = _generator(session, llm=llm, searcher=searcher).generate(_request())

    assert content.title == "Spring cleanup"
    assert content.tags == ["river"]
    assert content.suggested_publish_hour == 18
    llm.complete.assert_called_once()
    system_prompt, user_prompt = llm.complete.call_args.args
    assert "Template: environment:image-feed" in system_prompt
    assert "We clean rivers" in user_prompt


def test_system_prompt_override(session, organization):
    llm = MagicMock()
    llm.complete.return_value = VALID_OUTPUT

    _generator(session, llm=llm).generate(_request(system_prompt="  Be brief.  "))

    assert llm.complete.call_args.args[0] == "Be brief."


def test_rate_limit_is_checked_before_search_and_llm(session, organization):
    limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=60, clock=lambda: 100.0)
    searcher = MagicMock()
    searcher.search.return_value = []
    llm = MagicMock()
    llm.complete.return_value = VALID_OUTPUT
    generator = _generator(session, llm=llm, searcher=searcher, limiter=limiter)

    for _ in range(5):
        generator.generate(_request())

    with pytest.raises(RateLimited) as exc:
        generator.generate(_request())

    assert exc.value.retry_after == pytest.approx(60.0)
    assert searcher.search.call_count == 5
    assert llm.complete.call_count == 5


def test_rag_failure_degrades_to_no_references(session, organization):
    searcher = MagicMock()
    searcher.search.side_effect = RuntimeError("vector index offline")
    llm = MagicMock()
    llm.complete.return_value = VALID_OUTPUT

    content = _generator(session, llm=llm, searcher=searcher).generate(_request())

    assert content.title == "Spring cleanup"
    assert "RAG references: none" in llm.complete.call_args.args[1]


def test_unparseable_output_raises(session, organization):
    llm = MagicMock()
    llm.complete.return_value = "no json here"

    with pytest.raises(GenerationParseError) as exc:
        _generator(session, llm=llm).generate(_request())

    assert exc.value.raw == "no json here"


def test_invalid_request(session, organization):
    with pytest.raises(ValidationError):
        _generator(session).generate(_request(channel="fax"))
    with pytest.raises(ValidationError):
        _generator(session).generate(_request(topic="   "))


def test_unknown_organization(session, organization):
    with pytest.raises(NotFound):
        _generator(session).generate(_request(organization_id="missing"))
