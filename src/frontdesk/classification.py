"""Deterministic intent and urgency triage.

No network, no clock, no randomness: the same utterance and the same
tenant config always produce an identical ``TriageResult``.
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from frontdesk import patterns
from frontdesk.company_config import CompanyConfig, TriageSettings
from frontdesk.validation import word_count

logger = logging.getLogger(__name__)

URGENCY_EMERGENCY = "emergency"
URGENCY_URGENT = "urgent"
URGENCY_NORMAL = "normal"


@dataclass(frozen=True)
class TriageSignals:
    urgency: str = URGENCY_NORMAL
    symptom_count: int = 0
    word_count: int = 0
    temperature: Optional[int] = None


@dataclass(frozen=True)
class TriageResult:
    intent_guess: str
    confidence: float
    call_reason_detail: Optional[str]
    matched_content_id: Optional[str]
    signals: TriageSignals

    @property
    def urgency(self) -> str:
        return self.signals.urgency

    def to_dict(self) -> dict:
        return {
            "intent_guess": self.intent_guess,
            "confidence": self.confidence,
            "call_reason_detail": self.call_reason_detail,
            "matched_content_id": self.matched_content_id,
            "signals": {
                "urgency": self.signals.urgency,
                "symptom_count": self.signals.symptom_count,
                "word_count": self.signals.word_count,
                "temperature": self.signals.temperature,
            },
        }


@lru_cache(maxsize=256)
def _compiled(pattern_tuple: tuple) -> tuple:
    return tuple(re.compile(p, re.IGNORECASE) for p in pattern_tuple)


def intent_tables(config: CompanyConfig) -> list:
    """Default tables with tenant overrides applied, as (category, strong, moderate)."""
    merged = {
        category: [tuple(tiers["strong"]), tuple(tiers["moderate"])]
        for category, tiers in patterns.INTENT_PATTERNS.items()
    }
    for category, tiers in config.intent_patterns.items():
        if tiers.get("replace") or category not in merged:
            merged[category] = [tuple(tiers["strong"]), tuple(tiers["moderate"])]
        else:
            merged[category][0] += tuple(tiers["strong"])
            merged[category][1] += tuple(tiers["moderate"])
    return [(category, _compiled(strong), _compiled(moderate)) for category, (strong, moderate) in merged.items()]


def score_intents(text: str, config: CompanyConfig) -> list:
    """[(category, score)] in table order. Zero-match categories score 0."""
    settings = config.triage
    scores = []
    for category, strong, moderate in intent_tables(config):
        score = (
            patterns.count_matches(text, strong) * settings.strong_weight
            + patterns.count_matches(text, moderate) * settings.moderate_weight
        )
        scores.append((category, round(score, 4)))
    return scores


def is_safety_hazard(text: str) -> bool:
    """A hazard report that the caller did not negate or take back afterwards."""
    remainder = patterns.strip_matches(text, patterns.HAZARD_NEGATION_RE)
    hazard_at = patterns.last_match_start(remainder, patterns.EMERGENCY_RE)
    if hazard_at < 0:
        return False
    return patterns.last_match_start(remainder, patterns.RETRACTION_RE) < hazard_at


def assess_urgency(text: str, temperature: Optional[int], settings: TriageSettings) -> str:
    """Emergency first, then generic urgency, then the temperature threshold."""
    if is_safety_hazard(text):
        return URGENCY_EMERGENCY
    if patterns.any_match(text, patterns.VULNERABLE_RE):
        too_cold = temperature is not None and temperature <= settings.cold_temperature
        if too_cold or patterns.any_match(text, patterns.EXTREME_COLD_RE):
            return URGENCY_EMERGENCY
    if patterns.any_match(text, patterns.URGENT_RE):
        return URGENCY_URGENT
    if temperature is not None and temperature >= settings.urgent_temperature:
        return URGENCY_URGENT
    return URGENCY_NORMAL


def _temperature_symptom(temperature: Optional[int], settings: TriageSettings) -> Optional[str]:
    if temperature is None:
        return None
    if temperature >= settings.urgent_temperature or temperature <= settings.cold_temperature:
        return f"indoor temperature {temperature}F"
    return None


def _card_hit(text: str, content_index) -> Optional[str]:
    if content_index is None:
        return None
    try:
        card = content_index.lookup(text)
    except Exception as e:
        logger.error("Content card lookup failed, ignoring: %s", e)
        return None
    return card.card_id if card else None


def evaluate(utterance: str, config: CompanyConfig, content_index=None) -> TriageResult:
    settings = config.triage
    text = (utterance or "").strip()
    words = word_count(text)

    symptoms = patterns.extract_symptoms(text)
    temperature = patterns.extract_temperature(text)
    extreme = _temperature_symptom(temperature, settings)
    if extreme:
        symptoms.append(extreme)

    intent = patterns.DEFAULT_INTENT
    confidence = 0.0
    best = 0.0
    for category, score in score_intents(text, config):
        if score > best:
            intent, best = category, score

    matched_content_id = _card_hit(text, content_index)

    if best > 0:
        confidence = best + settings.symptom_boost * len(symptoms)
        if matched_content_id:
            confidence += settings.content_card_boost

    if (
        words > settings.long_utterance_words
        and symptoms
        and confidence < settings.min_confidence
    ):
        logger.info("Long narrative with %d symptom(s) — promoting to %s", len(symptoms), patterns.FALLBACK_INTENT)
        intent = patterns.FALLBACK_INTENT
        confidence = max(confidence, settings.fallback_confidence)

    result = TriageResult(
        intent_guess=intent,
        confidence=round(min(confidence, 1.0), 4),
        call_reason_detail="; ".join(symptoms) or None,
        matched_content_id=matched_content_id,
        signals=TriageSignals(
            urgency=assess_urgency(text, temperature, settings),
            symptom_count=len(symptoms),
            word_count=words,
            temperature=temperature,
        ),
    )
    logger.debug("Triage: %s", result)
    return result
