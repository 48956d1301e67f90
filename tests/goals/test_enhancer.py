"""Tests for the LLM candidate text enhancer and its fallbacks."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest
import requests

from goal_factories import NOW, make_pressure_snapshot, make_snapshot
from sentinai.goals.candidates import (
    GoalCandidateGenerator,
    generate_rule_based_candidates,
    goal_signature,
)
from sentinai.goals.config import CandidateConfig, EnhancerConfig
from sentinai.goals.enhancer import (
    ChatCompletionClient,
    GoalCandidateEnhancer,
    parse_json_object,
)
from sentinai.goals.exceptions import EnhancerError


class ScriptedClient:
    """Chat client returning a fixed reply or raising."""

    def __init__(self, reply: Optional[str] = None, error: Optional[Exception] = None) -> None:
        self.reply = reply
        self.error = error
        self.prompts: List[str] = []

    def complete(self, system_prompt: str, user_prompt: str, **kwargs: Any) -> str:
        self.prompts.append(user_prompt)
        if self.error is not None:
            raise self.error
        return self.reply or ""


def completion_response(content: str) -> MagicMock:
    response = MagicMock()
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


def patches(*entries: Dict[str, Any]) -> str:
    return json.dumps({"candidates": list(entries)})


def test_missing_credential_falls_back() -> None:
    candidates = generate_rule_based_candidates(make_pressure_snapshot(), now=NOW)
    enhancer = GoalCandidateEnhancer(EnhancerConfig(), environ={})

    result = enhancer.enhance(make_pressure_snapshot(), candidates)

    assert result.llm_enhanced is False
    assert result.llm_fallback_reason == "no_ai_provider_key"
    assert result.candidates == candidates


def test_fenced_reply_is_applied_and_signature_recomputed() -> None:
    snapshot = make_pressure_snapshot()
    candidates = generate_rule_based_candidates(snapshot, now=NOW)
    original = candidates[0]
    reply = "```json\n" + patches(
        {"index": 0, "goal": "Relieve sequencer  pressure now", "rationale": "cpu high"}
    ) + "\n```"

    with patch("sentinai.goals.enhancer.requests.post") as post:
        post.return_value = completion_response(reply)
        enhancer = GoalCandidateEnhancer(
            EnhancerConfig(), environ={"OPENAI_API_KEY": "sk-test"}
        )
        result = enhancer.enhance(snapshot, candidates)

    assert result.llm_enhanced is True
    assert result.llm_fallback_reason is None
    enhanced = result.candidates[0]
    assert enhanced.goal == "Relieve sequencer pressure now"
    assert enhanced.rationale == "cpu high"
    assert enhanced.intent == original.intent
    assert enhanced.risk == original.risk
    assert enhanced.confidence == original.confidence
    assert enhanced.source == original.source
    assert enhanced.signature == goal_signature(
        "optimism", original.source, original.intent, "Relieve sequencer pressure now"
    )
    assert enhanced.signature != original.signature

    url = post.call_args.args[0]
    assert url == "https://api.openai.com/v1/chat/completions"
    assert post.call_args.kwargs["headers"] == {"Authorization": "Bearer sk-test"}
    assert post.call_args.kwargs["json"]["model"] == "gpt-4o-mini"


def test_transport_timeout_falls_back() -> None:
    candidates = generate_rule_based_candidates(make_snapshot(), now=NOW)

    with patch("sentinai.goals.enhancer.requests.post") as post:
        post.side_effect = requests.exceptions.Timeout()
        enhancer = GoalCandidateEnhancer(
            EnhancerConfig(), environ={"GOAL_CANDIDATE_LLM_API_KEY": "key"}
        )
        result = enhancer.enhance(make_snapshot(), candidates)

    assert result.llm_fallback_reason == "llm_unavailable"
    assert result.candidates == candidates


def test_client_wraps_malformed_body() -> None:
    client = ChatCompletionClient(base_url="http://llm.local/v1/", model="m", api_key="k")

    with patch("sentinai.goals.enhancer.requests.post") as post:
        response = MagicMock()
        response.json.return_value = {"choices": []}
        post.return_value = response
        with pytest.raises(EnhancerError):
            client.complete("system", "user")

    assert post.call_args.args[0] == "http://llm.local/v1/chat/completions"


def test_unparsable_reply_falls_back() -> None:
    candidates = generate_rule_based_candidates(make_snapshot(), now=NOW)
    enhancer = GoalCandidateEnhancer(client=ScriptedClient("I cannot help with that"))

    result = enhancer.enhance(make_snapshot(), candidates)

    assert result.llm_fallback_reason == "llm_parse_error"


def test_out_of_range_patches_are_a_noop() -> None:
    candidates = generate_rule_based_candidates(make_snapshot(), now=NOW)
    client = ScriptedClient(
        patches({"index": 5, "goal": "x"}, {"index": True, "goal": "y"}, {"index": 0})
    )
    enhancer = GoalCandidateEnhancer(client=client)

    result = enhancer.enhance(make_snapshot(), candidates)

    assert result.llm_fallback_reason == "llm_noop"
    assert result.candidates == candidates


def test_client_error_falls_back() -> None:
    candidates = generate_rule_based_candidates(make_snapshot(), now=NOW)
    enhancer = GoalCandidateEnhancer(client=ScriptedClient(error=EnhancerError("down")))

    result = enhancer.enhance(make_snapshot(), candidates)

    assert result.llm_fallback_reason == "llm_unavailable"


def test_prompt_carries_snapshot_summary() -> None:
    snapshot = make_pressure_snapshot()
    client = ScriptedClient(patches({"index": 0, "rationale": "pressure"}))
    enhancer = GoalCandidateEnhancer(client=client)

    enhancer.enhance(snapshot, generate_rule_based_candidates(snapshot, now=NOW))

    prompt = json.loads(client.prompts[0])
    assert prompt["snapshotId"] == "snap-1"
    assert prompt["summary"]["txPool"] == 1800
    assert prompt["candidates"][0]["intent"] == "stabilize"


def test_generator_routes_through_enhancer() -> None:
    snapshot = make_snapshot()
    client = ScriptedClient(patches({"index": 0, "goal": "Review operations"}))
    generator = GoalCandidateGenerator(
        CandidateConfig(llm_enhancer_enabled=True),
        GoalCandidateEnhancer(client=client),
    )

    result = generator.generate(snapshot, now=NOW)

    assert result.llm_enhanced is True
    assert result.candidates[0].goal == "Review operations"


@pytest.mark.parametrize(
    "text,expected",
    [
        ('{"a": 1}', {"a": 1}),
        ('Sure! {"a": 1} hope this helps', {"a": 1}),
        ('```\n{"a": 2}\n```', {"a": 2}),
        ("[1, 2]", None),
        ("", None),
    ],
)
def test_parse_json_object(text: str, expected: Optional[Dict[str, Any]]) -> None:
    assert parse_json_object(text) == expected
