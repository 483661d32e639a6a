import json

import pytest

from goodnews.services.ai_service import AIService
from goodnews.services.content_classifier import (
    AIClassifier,
    ContentClassifier,
    KeywordClassifier,
    is_safe_content,
    match_category,
    parse_classification,
    positivity_score,
)
from goodnews.services.retry import RetryExecutor
from goodnews.utils.errors import ClassifierError

from conftest import fake_genai_client, make_raw


SCENARIO_A = [
    make_raw("Local Dog Rescues Family from Fire", "https://x/1"),
    make_raw("Political Scandal Rocks Capital", "https://x/2"),
]


def ai_classifier(no_sleep, *responses):
    client, models = fake_genai_client(*responses)
    service = AIService(api_key="test", client=client)
    return AIClassifier(service, RetryExecutor(sleep=no_sleep), max_attempts=2, initial_delay_ms=1), models


def test_keyword_filter_scenario():
    results = KeywordClassifier().classify(SCENARIO_A)
    assert len(results) == 1
    assert results[0].link == "https://x/1"
    assert results[0].category == "ANIMALS"
    assert results[0].summary


@pytest.mark.parametrize("title, expected", [
    ("He said the weather was mild", None),
    ("Veteran receives an award for bravery", None),
    ("New AI tool helps farmers", "TECHNOLOGY"),
    ("Hospital trials a promising vaccine", "HEALTH"),
])
def test_short_keywords_need_whole_words(title, expected):
    assert match_category(title) == expected


def test_unsafe_and_negative_titles_are_rejected():
    assert not is_safe_content("Volunteers help after deadly attack")
    assert not is_safe_content("Report on online harassment")
    assert is_safe_content("Volunteers help rebuild a playground")


def test_unmatched_titles_use_default_category_when_allowed():
    classifier = KeywordClassifier(require_positive_match=False)
    results = classifier.classify([make_raw("Political Scandal Rocks Capital", "https://x/2")])
    assert [r.category for r in results] == ["COMMUNITY"]


def test_keyword_output_is_capped():
    raws = [make_raw(f"Charity donation drive number {i}", f"https://x/{i}") for i in range(10)]
    assert len(KeywordClassifier(max_items=5).classify(raws)) == 5


def test_positivity_score_is_clamped():
    assert positivity_score("Plain headline") == 50
    assert positivity_score(" ".join(["breakthrough discovery help aid solution recovery hope save"] * 3)) <= 100


async def test_empty_input_is_ok():
    outcome = await ContentClassifier(KeywordClassifier()).classify([])
    assert outcome.is_ok and outcome.data == []


async def test_without_ai_uses_heuristic_degraded():
    outcome = await ContentClassifier(KeywordClassifier()).classify(SCENARIO_A)
    assert outcome.is_degraded
    assert outcome.reason == "ai_unavailable"
    assert [a.category for a in outcome.data] == ["ANIMALS"]


async def test_malformed_ai_response_falls_back_to_heuristic(no_sleep):
    ai, models = ai_classifier(no_sleep, "Sure! Here are the good ones: dog story")
    outcome = await ContentClassifier(KeywordClassifier(), ai).classify(SCENARIO_A)

    assert outcome.is_degraded
    assert outcome.reason == "ai_unparseable"
    assert [a.link for a in outcome.data] == ["https://x/1"]
    assert len(models.calls) == 1


async def test_empty_ai_array_means_nothing_qualifies(no_sleep):
    ai, _ = ai_classifier(no_sleep, "[]")
    outcome = await ContentClassifier(KeywordClassifier(), ai).classify(SCENARIO_A)
    assert outcome.is_ok
    assert outcome.data == []


async def test_ai_items_are_validated_individually(no_sleep):
    reply = json.dumps([
        {"uniqueId": "https://x/1", "title": "Local Dog Rescues Family from Fire",
         "summary": "A brave dog alerted its family.", "category": "animals"},
        {"uniqueId": "https://x/2", "title": "Political Scandal Rocks Capital",
         "summary": "Not good news.", "category": "POLITICS"},
        {"uniqueId": "https://x/unknown", "title": "Invented story about hope",
         "summary": "Made up.", "category": "COMMUNITY"},
        {"uniqueId": "https://x/1", "title": "Short", "summary": "x", "category": "ANIMALS"},
        "not an object",
    ])
    ai, models = ai_classifier(no_sleep, reply)
    outcome = await ContentClassifier(KeywordClassifier(), ai).classify(SCENARIO_A)

    assert outcome.is_ok
    assert len(outcome.data) == 1
    item = outcome.data[0]
    assert item.category == "ANIMALS"
    assert item.summary == "A brave dog alerted its family."
    assert item.source_name == "Test Source"
    assert "Local Dog Rescues Family from Fire" in models.calls[0]["contents"]


async def test_ai_quota_error_degrades_without_retry(no_sleep):
    ai, models = ai_classifier(no_sleep, Exception("429 RESOURCE_EXHAUSTED: quota exceeded"))
    outcome = await ContentClassifier(KeywordClassifier(), ai).classify(SCENARIO_A)

    assert outcome.is_degraded
    assert outcome.reason == "ai_failed: resource-exhausted"
    assert len(models.calls) == 1


async def test_ai_transient_error_is_retried_then_degrades(no_sleep):
    ai, models = ai_classifier(no_sleep, Exception("503 UNAVAILABLE"), Exception("503 UNAVAILABLE"))
    outcome = await ContentClassifier(KeywordClassifier(), ai).classify(SCENARIO_A)

    assert outcome.is_degraded
    assert outcome.reason == "ai_failed: unavailable"
    assert len(models.calls) == 2


def test_parse_classification_strips_code_fences():
    assert parse_classification('```json\n[{"a": 1}]\n```') == [{"a": 1}]
    with pytest.raises(ClassifierError) as excinfo:
        parse_classification('{"not": "a list"}')
    assert excinfo.value.kind == "unparseable"
