"""Best-effort LLM rephrasing of rule-based goal candidates.

The enhancer sends candidate text plus a compact snapshot summary to an
OpenAI-compatible chat completion endpoint and applies the returned goal and
rationale text. Any failure (missing credential, transport error, unparsable
response) returns the rule-based candidates unchanged with a fallback reason
code. Intent, risk, confidence and source are never modified, and the
signature is recomputed for every patched candidate.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

import requests

from .candidates import (
    CandidateGenerationResult,
    dedupe_candidates,
    goal_signature,
    normalize_goal_text,
)
from .config import EnhancerConfig
from .exceptions import EnhancerError
from .models import AutonomousGoalCandidate, GoalSignalSnapshot

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

ENHANCER_SYSTEM_PROMPT = "\n".join(
    [
        "You are a goal text enhancer for L2 operations automation.",
        'Return only JSON: {"candidates":[{"index":0,"goal":"...","rationale":"..."}]}',
        "Do not change intent/source/risk/confidence meaning.",
        "Keep each goal and rationale concise, operational, and in English.",
        "Do not add markdown fences or commentary.",
    ]
)


class ChatCompletionClient:
    """Minimal client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str,
        timeout: int = 30,
    ) -> None:
        """Initialize chat completion client.

        Args:
            base_url: API root, e.g. ``https://api.openai.com/v1``
            model: Model identifier sent with each request
            api_key: Bearer credential
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._api_key = api_key

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.1,
        max_tokens: int = 900,
    ) -> str:
        """Request a single completion and return its message content.

        Raises:
            EnhancerError: On transport failure or a malformed response body
        """
        request_data = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                json=request_data,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
            return result["choices"][0]["message"]["content"]
        except requests.exceptions.Timeout as exc:
            logger.error(f"Chat completion timed out after {self.timeout}s")
            raise EnhancerError("chat completion timed out") from exc
        except requests.exceptions.RequestException as exc:
            logger.error(f"Chat completion request failed: {exc}")
            raise EnhancerError(f"chat completion request failed: {exc}") from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise EnhancerError("malformed chat completion response") from exc


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Extract a JSON object from model output.

    Tolerates markdown code fences and prose around the object. Returns None
    when no object can be decoded.
    """
    if not text:
        return None

    attempts: List[str] = [text.strip()]
    fenced = _CODE_FENCE.search(text)
    if fenced:
        attempts.append(fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        attempts.append(text[start : end + 1])

    for attempt in attempts:
        try:
            parsed = json.loads(attempt)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def build_enhancer_user_prompt(
    snapshot: GoalSignalSnapshot, candidates: List[AutonomousGoalCandidate]
) -> str:
    compact = [
        {
            "index": index,
            "source": candidate.source.value,
            "intent": candidate.intent.value,
            "risk": candidate.risk.value,
            "goal": candidate.goal,
            "rationale": candidate.rationale,
        }
        for index, candidate in enumerate(candidates)
    ]
    return json.dumps(
        {
            "chainType": snapshot.chain_type,
            "snapshotId": snapshot.snapshot_id,
            "summary": {
                "cpu": snapshot.metrics.latest_cpu_usage,
                "txPool": snapshot.metrics.latest_tx_pool_pending,
                "activeAnomaly": snapshot.anomalies.active_count,
                "failoverRecent": snapshot.failover.recent_count,
                "avgUtilization": snapshot.cost.avg_utilization,
            },
            "candidates": compact,
        }
    )


class GoalCandidateEnhancer:
    """Rephrases candidate goal/rationale text through a chat completion call."""

    def __init__(
        self,
        config: Optional[EnhancerConfig] = None,
        *,
        client: Optional[ChatCompletionClient] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._config = config or EnhancerConfig()
        self._client = client
        self._environ = environ

    def _resolve_client(self) -> Optional[ChatCompletionClient]:
        if self._client is not None:
            return self._client
        api_key = self._config.resolve_api_key(self._environ)
        if not api_key:
            return None
        return ChatCompletionClient(
            base_url=self._config.base_url,
            model=self._config.model,
            api_key=api_key,
            timeout=self._config.timeout_seconds,
        )

    def enhance(
        self,
        snapshot: GoalSignalSnapshot,
        candidates: List[AutonomousGoalCandidate],
    ) -> CandidateGenerationResult:
        """Apply LLM text patches to candidates, falling back on any failure."""
        if not candidates:
            return CandidateGenerationResult(llm_fallback_reason="empty_rule_candidates")

        client = self._resolve_client()
        if client is None:
            return self._fallback(candidates, "no_ai_provider_key")

        try:
            content = client.complete(
                ENHANCER_SYSTEM_PROMPT,
                build_enhancer_user_prompt(snapshot, candidates),
                temperature=self._config.temperature,
                max_tokens=self._config.max_tokens,
            )
        except EnhancerError as exc:
            logger.warning(
                "Goal candidate enhancer unavailable",
                extra={"snapshot_id": snapshot.snapshot_id, "error": str(exc)},
            )
            return self._fallback(candidates, "llm_unavailable")

        parsed = parse_json_object(content)
        patches = parsed.get("candidates") if parsed else None
        if not isinstance(patches, list):
            return self._fallback(candidates, "llm_parse_error")

        enhanced = list(candidates)
        changed = False
        for patch in patches:
            if not isinstance(patch, dict):
                continue
            index = patch.get("index")
            if not isinstance(index, int) or isinstance(index, bool):
                continue
            if index < 0 or index >= len(enhanced):
                continue

            current = enhanced[index]
            updates: Dict[str, Any] = {}
            goal = patch.get("goal")
            if isinstance(goal, str) and normalize_goal_text(goal):
                updates["goal"] = normalize_goal_text(goal)
            rationale = patch.get("rationale")
            if isinstance(rationale, str) and normalize_goal_text(rationale):
                updates["rationale"] = normalize_goal_text(rationale)
            if not updates:
                continue

            changed = True
            updates["signature"] = goal_signature(
                snapshot.chain_type,
                current.source,
                current.intent,
                updates.get("goal", current.goal),
            )
            enhanced[index] = current.model_copy(update=updates)

        if not changed:
            return self._fallback(candidates, "llm_noop")

        return CandidateGenerationResult(
            candidates=dedupe_candidates(enhanced),
            llm_enhanced=True,
        )

    @staticmethod
    def _fallback(
        candidates: List[AutonomousGoalCandidate], reason: str
    ) -> CandidateGenerationResult:
        logger.warning("Goal candidate enhancer fallback", extra={"reason": reason})
        return CandidateGenerationResult(
            candidates=list(candidates),
            llm_enhanced=False,
            llm_fallback_reason=reason,
        )
