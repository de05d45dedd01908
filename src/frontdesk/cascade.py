"""Tiered response matching.

Tiers run in increasing cost order and the cascade stops at the first
tier whose best candidate meets that tier's minimum:

    1. RuleTier        phrase/keyword index over tenant response records
    2. SemanticTier    embedding similarity (HTTP), off unless configured
    3. GenerativeTier  chat-completion fallback, off unless configured

Every call to ``ResponseCascade.match`` emits exactly one
``cascade_evaluated`` event with a machine-readable reason, including
gated, timed-out and errored runs.
"""

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

from frontdesk import prompts
from frontdesk.circuit_breaker import CircuitBreaker
from frontdesk.company_config import CascadeSettings, CompanyConfig, ResponseRecord
from frontdesk.config import RuntimeSettings
from frontdesk.events import EventLog, TurnEvent
from frontdesk.validation import matched_keywords

logger = logging.getLogger(__name__)

# Reason codes
MATCHED = "matched"
NO_MATCH = "no_match"
BELOW_THRESHOLD = "below_threshold"
GATED_KILL_SWITCH = "gated_kill_switch"
GATED_DISABLED = "gated_disabled"
GATED_EMPTY_ALLOWLIST = "gated_empty_allowlist"
GATED_CONTENT_TYPE = "gated_content_type"
NO_RESPONSE_TEXT = "no_response_text"
UNRESOLVED_PLACEHOLDERS = "unresolved_placeholders"
TIMEOUT = "timeout"
ERROR = "error"
CIRCUIT_OPEN = "circuit_open"

GATED_REASONS = frozenset({GATED_KILL_SWITCH, GATED_DISABLED, GATED_EMPTY_ALLOWLIST, GATED_CONTENT_TYPE})


@dataclass(frozen=True)
class MatchResult:
    selected: bool
    tier: int
    content_id: str
    content_type: str
    confidence: float
    response_text: str


@dataclass(frozen=True)
class CascadeContext:
    config: CompanyConfig
    slot_values: dict = field(default_factory=dict)
    kill_switch: bool = False
    call_id: str = ""


@dataclass
class CascadeOutcome:
    result: Optional[MatchResult]
    reason: str
    event: TurnEvent

    @property
    def selected(self) -> bool:
        return self.result is not None and self.result.selected


@dataclass
class _Trace:
    attempted: list = field(default_factory=list)
    skipped: dict = field(default_factory=dict)
    errors: dict = field(default_factory=dict)
    best: Optional[MatchResult] = None
    winner: Optional[MatchResult] = None
    in_flight: Optional["Tier"] = None

    def offer(self, candidate: Optional[MatchResult]) -> None:
        if candidate is not None and (self.best is None or candidate.confidence > self.best.confidence):
            self.best = candidate


class Tier:
    number = 0
    name = "tier"
    breaker: Optional[CircuitBreaker] = None

    def enabled(self, settings: CascadeSettings) -> bool:
        return True

    def threshold(self, settings: CascadeSettings) -> float:
        return settings.thresholds()[f"tier{self.number}"]

    async def best(self, utterance: str, context: CascadeContext, triage) -> Optional[MatchResult]:
        raise NotImplementedError


def _candidate(tier: int, record: ResponseRecord, confidence: float, text: str = None) -> MatchResult:
    return MatchResult(
        selected=False,
        tier=tier,
        content_id=record.content_id,
        content_type=record.content_type,
        confidence=round(min(confidence, 1.0), 4),
        response_text=record.response_text if text is None else text,
    )


class RuleTier(Tier):
    """Phrase and keyword index. Pure, synchronous work behind an async face."""

    number = 1
    name = "tier1_rules"

    PHRASE_CONFIDENCE = 0.95
    KEYWORD_BASE = 0.5
    KEYWORD_STEP = 0.2
    KEYWORD_CAP = 0.9
    CARD_BOOST = 0.05

    def score(self, utterance: str, record: ResponseRecord, triage=None) -> float:
        lower = utterance.lower()
        if matched_keywords(utterance, record.negative_keywords):
            return 0.0
        confidence = 0.0
        if any(p and p in lower for p in record.phrases):
            confidence = self.PHRASE_CONFIDENCE
        else:
            hits = len(matched_keywords(utterance, record.keywords))
            if hits:
                confidence = min(self.KEYWORD_CAP, self.KEYWORD_BASE + self.KEYWORD_STEP * hits)
        if confidence and triage is not None and triage.matched_content_id == record.content_id:
            confidence += self.CARD_BOOST
        return confidence

    async def best(self, utterance, context, triage):
        best = None
        for record in context.config.responses:
            confidence = self.score(utterance, record, triage)
            if confidence and (best is None or confidence > best.confidence):
                best = _candidate(self.number, record, confidence)
        return best


def cosine(a, b) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class SemanticTier(Tier):
    """Embeds the utterance and compares it with precomputed record embeddings."""

    number = 2
    name = "tier2_semantic"

    def __init__(self, url: str, api_key: str = "", model: str = "text-embedding-3-small",
                 client: httpx.AsyncClient | None = None):
        self.url = url
        self.api_key = api_key
        self.model = model
        self._client = client
        self.breaker = CircuitBreaker(failure_threshold=3, cooldown_seconds=60.0, label="semantic tier")

    def enabled(self, settings):
        return settings.tier2_enabled and bool(self.url)

    async def embed(self, text: str) -> list[float]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        body = {"model": self.model, "input": text}
        if self._client is not None:
            resp = await self._client.post(self.url, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.post(self.url, json=body, headers=headers)
        resp.raise_for_status()
        return resp.json()["data"][0]["embedding"]

    async def best(self, utterance, context, triage):
        records = [r for r in context.config.responses if r.embedding]
        if not records:
            return None
        vector = await self.embed(utterance)
        best = None
        for record in records:
            similarity = cosine(vector, record.embedding)
            if similarity > 0 and (best is None or similarity > best.confidence):
                best = _candidate(self.number, record, similarity)
        return best


class GenerativeTier(Tier):
    """Last-resort answer drafted by a chat model from the tenant's own records."""

    number = 3
    name = "tier3_generative"

    def __init__(self, url: str, api_key: str = "", client: httpx.AsyncClient | None = None):
        self.url = url
        self.api_key = api_key
        self._client = client
        self.breaker = CircuitBreaker(failure_threshold=3, cooldown_seconds=60.0, label="generative tier")

    def enabled(self, settings):
        return settings.tier3_enabled and bool(self.api_key)

    async def complete(self, body: dict) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self._client is not None:
            resp = await self._client.post(self.url, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.post(self.url, json=body, headers=headers)
        resp.raise_for_status()
        return json.loads(resp.json()["choices"][0]["message"]["content"])

    async def best(self, utterance, context, triage):
        config = context.config
        records = [r for r in config.responses if r.content_type in config.cascade.allowed_content_types]
        if not records:
            return None
        user_content = utterance
        if triage is not None and triage.call_reason_detail:
            user_content = f"{utterance}\n\n(Reported symptoms: {triage.call_reason_detail})"
        answer = await self.complete({
            "model": config.cascade.tier3_model,
            "temperature": 0.1,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": prompts.generative_prompt(config.company_name, records)},
                {"role": "user", "content": user_content},
            ],
        })
        content_id = answer.get("content_id") or ""
        text = (answer.get("answer") or "").strip()
        if not content_id or not text or text == "NO_MATCH":
            return None
        record = next((r for r in records if r.content_id == content_id), None)
        if record is None:
            logger.warning("Generative tier cited unknown content %s", content_id)
            return None
        return _candidate(self.number, record, float(answer.get("confidence", 0.0)), text=text)


def unresolved_placeholders(text: str, values: dict) -> set[str]:
    return prompts.unresolved(text, values)


class ResponseCascade:
    def __init__(self, tiers: list[Tier]):
        self.tiers = sorted(tiers, key=lambda t: t.number)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, client: httpx.AsyncClient | None = None) -> "ResponseCascade":
        return cls([
            RuleTier(),
            SemanticTier(settings.embeddings_url, api_key=settings.openai_api_key, client=client),
            GenerativeTier(settings.completions_url, api_key=settings.openai_api_key, client=client),
        ])

    def gate(self, context: CascadeContext) -> Optional[str]:
        settings = context.config.cascade
        if context.kill_switch:
            return GATED_KILL_SWITCH
        if settings.disable_auto_replies:
            return GATED_DISABLED
        if not settings.allowed_content_types:
            return GATED_EMPTY_ALLOWLIST
        return None

    async def _run(self, utterance: str, context: CascadeContext, triage, trace: _Trace) -> None:
        settings = context.config.cascade
        for tier in self.tiers:
            if not tier.enabled(settings):
                trace.skipped[tier.name] = "disabled"
                continue
            if tier.breaker is not None and not tier.breaker.allow():
                trace.skipped[tier.name] = CIRCUIT_OPEN
                continue
            trace.attempted.append(tier.name)
            # left set if wait_for cancels the tier mid-call
            trace.in_flight = tier
            try:
                candidate = await tier.best(utterance, context, triage)
            except Exception as e:
                trace.in_flight = None
                if tier.breaker is not None:
                    tier.breaker.failed()
                trace.errors[tier.name] = str(e) or type(e).__name__
                logger.error("Cascade %s failed: %s", tier.name, e)
                continue
            trace.in_flight = None
            if tier.breaker is not None:
                tier.breaker.succeeded()
            trace.offer(candidate)
            if candidate is not None and candidate.confidence >= tier.threshold(settings):
                trace.winner = candidate
                return

    def _usable(self, candidate: MatchResult, context: CascadeContext) -> tuple[Optional[MatchResult], str]:
        config = context.config
        if candidate.content_type not in config.cascade.allowed_content_types:
            return None, GATED_CONTENT_TYPE
        if not (candidate.response_text or "").strip():
            return None, NO_RESPONSE_TEXT
        values = dict(context.slot_values)
        values.setdefault("company_name", config.company_name)
        if unresolved_placeholders(candidate.response_text, values):
            return None, UNRESOLVED_PLACEHOLDERS
        text = prompts.render(candidate.response_text, values)
        return MatchResult(
            selected=True,
            tier=candidate.tier,
            content_id=candidate.content_id,
            content_type=candidate.content_type,
            confidence=candidate.confidence,
            response_text=text,
        ), MATCHED

    async def match(self, utterance: str, context: CascadeContext, triage, events: EventLog) -> CascadeOutcome:
        settings = context.config.cascade
        started = time.monotonic()
        trace = _Trace()
        result = None

        reason = self.gate(context)
        if reason is None:
            try:
                await asyncio.wait_for(
                    self._run(utterance, context, triage, trace),
                    timeout=settings.latency_ceiling_ms / 1000.0,
                )
            except asyncio.TimeoutError:
                reason = TIMEOUT
                if trace.in_flight is not None and trace.in_flight.breaker is not None:
                    trace.in_flight.breaker.failed()
                logger.warning("Cascade exceeded %dms ceiling, falling through", settings.latency_ceiling_ms)

        if reason is None:
            if trace.winner is not None:
                result, reason = self._usable(trace.winner, context)
            elif trace.errors:
                reason = ERROR
            elif trace.best is not None:
                reason = BELOW_THRESHOLD
            elif CIRCUIT_OPEN in trace.skipped.values():
                reason = CIRCUIT_OPEN
            else:
                reason = NO_MATCH

        best = trace.winner or trace.best
        event = events.emit(
            "cascade_evaluated",
            reason=reason,
            selected=result is not None,
            thresholds=settings.thresholds(),
            best=None if best is None else {
                "score": best.confidence,
                "content_type": best.content_type,
                "tier": best.tier,
                "content_id": best.content_id,
            },
            tiers_attempted=list(trace.attempted),
            tiers_skipped=dict(trace.skipped),
            errors=dict(trace.errors),
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
        )
        if reason in GATED_REASONS:
            logger.warning("Cascade gated for %s: %s", context.config.company_id, reason)
        return CascadeOutcome(result=result, reason=reason, event=event)
