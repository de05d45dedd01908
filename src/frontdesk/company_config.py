"""Tenant configuration snapshot.

A ``CompanyConfig`` is built once per turn from the config-store document
and never mutated: every collection is a tuple, frozenset or read-only
mapping. ``from_dict`` fills defaults for anything the document omits,
so a half-configured tenant still gets a working receptionist.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from frontdesk import prompts

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a tenant document cannot be turned into a config."""


class SlotType(Enum):
    NAME = "name"
    PHONE = "phone"
    ADDRESS = "address"
    FREE_TEXT = "free_text"
    ENUM = "enum"
    TIME = "time"


class ConfirmMode(Enum):
    ALWAYS = "always"
    NEVER = "never"
    SMART_IF_CAPTURED = "smart_if_captured"
    CONFIRM_IF_CALLER_SUPPLIED = "confirm_if_caller_supplied"


class LoopAction(Enum):
    REPHRASE = "rephrase"
    SKIP = "skip"
    ESCALATE = "escalate"


CORE_SLOT_IDS = ("name", "last_name", "phone", "address", "time")
REASON_SLOT_ID = "call_reason_detail"


@dataclass(frozen=True)
class SlotDefinition:
    id: str
    type: SlotType
    required: bool = True
    discovery_fill_allowed: bool = True
    booking_confirm_required: bool = True
    label: str = ""
    options: tuple = ()


@dataclass(frozen=True)
class FlowStep:
    step_id: str
    slot_id: str
    ask: str
    reprompt: str = ""
    reprompt_variants: tuple = ()
    confirm_prompt: str = ""
    correction_prompt: str = ""
    rephrase: str = ""
    confirm_mode: ConfirmMode = ConfirmMode.SMART_IF_CAPTURED
    passive: bool = False
    order: int = 0


@dataclass(frozen=True)
class TriageSettings:
    strong_weight: float = 0.35
    moderate_weight: float = 0.15
    min_confidence: float = 0.62
    symptom_boost: float = 0.05
    content_card_boost: float = 0.10
    fallback_confidence: float = 0.55
    long_utterance_words: int = 15
    urgent_temperature: int = 90
    cold_temperature: int = 50


@dataclass(frozen=True)
class CascadeSettings:
    disable_auto_replies: bool = False
    allowed_content_types: frozenset = frozenset({"troubleshooting", "faq", "hours", "pricing"})
    tier1_min: float = 0.80
    tier2_min: float = 0.78
    tier3_min: float = 0.70
    tier2_enabled: bool = False
    tier3_enabled: bool = False
    latency_ceiling_ms: int = 500
    tier3_model: str = "gpt-4o-mini"

    def thresholds(self) -> dict:
        return {"tier1": self.tier1_min, "tier2": self.tier2_min, "tier3": self.tier3_min}


@dataclass(frozen=True)
class ResponseRecord:
    """A tenant-curated reply the cascade may speak unsolicited."""

    content_id: str
    content_type: str
    response_text: str
    keywords: tuple = ()
    phrases: tuple = ()
    negative_keywords: tuple = ()
    embedding: tuple = ()


@dataclass(frozen=True)
class ContentCard:
    card_id: str
    answer: str = ""
    keywords: tuple = ()
    phrases: tuple = ()


@dataclass(frozen=True)
class Messages:
    consent_prompt: str = prompts.CONSENT_PROMPT
    consent_declined: str = prompts.CONSENT_DECLINED
    consent_reask: str = prompts.CONSENT_REASK
    emergency: str = prompts.EMERGENCY_SCRIPT
    fallback: str = prompts.FALLBACK
    escalate: str = prompts.ESCALATE
    booking_disabled: str = prompts.BOOKING_DISABLED
    booking_review: str = prompts.BOOKING_REVIEW
    booking_review_retry: str = prompts.BOOKING_REVIEW_RETRY
    booking_correction: str = prompts.BOOKING_CORRECTION
    booking_complete: str = prompts.BOOKING_COMPLETE
    booking_complete_plain: str = prompts.BOOKING_COMPLETE_PLAIN
    booking_cancelled: str = prompts.BOOKING_CANCELLED
    discovery_complete: str = prompts.DISCOVERY_COMPLETE
    anything_else: str = prompts.ANYTHING_ELSE
    turn_limit: str = prompts.TURN_LIMIT
    rephrase_prefix: str = prompts.REPHRASE_PREFIX


def _default_slots() -> tuple:
    return (
        SlotDefinition("name", SlotType.NAME, label="first name"),
        SlotDefinition("last_name", SlotType.NAME, required=False, label="last name"),
        SlotDefinition("phone", SlotType.PHONE, label="phone number"),
        SlotDefinition("address", SlotType.ADDRESS, label="service address"),
        SlotDefinition("time", SlotType.TIME, label="preferred time"),
        SlotDefinition(REASON_SLOT_ID, SlotType.FREE_TEXT, booking_confirm_required=False, label="reason for the call"),
    )


def _default_discovery_steps() -> tuple:
    return (
        FlowStep(
            "d0", REASON_SLOT_ID,
            ask="What can I help you with today?",
            reprompt="What's going on with the system?",
            confirm_mode=ConfirmMode.NEVER,
            order=0,
        ),
        FlowStep(
            "d1", "name",
            ask="May I have your first name, please?",
            reprompt_variants=("I didn't quite catch that. What's your name?", "Sorry, could you repeat your name for me?"),
            confirm_prompt="I have your name as {value}. Is that right?",
            correction_prompt="Sorry about that. What's your first name?",
            rephrase="Who am I speaking with today?",
            order=1,
        ),
        FlowStep(
            "d2", "last_name",
            ask="And your last name?",
            confirm_prompt="That's {value} for your last name, correct?",
            confirm_mode=ConfirmMode.NEVER,
            passive=True,
            order=2,
        ),
        FlowStep(
            "d3", "address",
            ask="What's the address for the service?",
            reprompt_variants=("I didn't quite get the address. Could you repeat it?", "Sorry, where will the technician be going?"),
            confirm_prompt="Got it, that's {value}. Is that correct?",
            correction_prompt="No problem. What's the service address?",
            rephrase="What street address should the technician go to?",
            order=3,
        ),
        FlowStep(
            "d4", "phone",
            ask="What's the best phone number to reach you?",
            reprompt_variants=("I didn't catch that. What's a good callback number?", "Sorry, could you repeat that phone number?"),
            confirm_prompt="Is {value} the best number to reach you?",
            correction_prompt="What's the best number to reach you?",
            rephrase="What number should the technician call when they're on the way?",
            confirm_mode=ConfirmMode.CONFIRM_IF_CALLER_SUPPLIED,
            order=4,
        ),
    )


def _default_booking_steps() -> tuple:
    return (
        FlowStep(
            "b1", "name",
            ask="May I have your name for the appointment?",
            confirm_prompt="I have the appointment under {value}. Is that right?",
            correction_prompt="What name should I put the appointment under?",
            order=1,
        ),
        FlowStep(
            "b2", "address",
            ask="What's the service address?",
            confirm_prompt="And the technician is coming to {value}, correct?",
            correction_prompt="What's the correct service address?",
            order=2,
        ),
        FlowStep(
            "b3", "phone",
            ask="What's the best number to reach you?",
            confirm_prompt="And we can reach you at {value}?",
            correction_prompt="What's the best number to reach you?",
            order=3,
        ),
        FlowStep(
            "b4", "time",
            ask="When would be a good time for the technician to come out?",
            reprompt_variants=("When works best for you?", "What time frame are you looking at?"),
            confirm_prompt="So you're looking at {value}. Does that work?",
            correction_prompt="What time works better for you?",
            rephrase="Would mornings or afternoons be better for you?",
            order=4,
        ),
    )


def _freeze_patterns(raw) -> Mapping:
    frozen = {}
    for category, tiers in (raw or {}).items():
        frozen[category] = MappingProxyType({
            "strong": tuple((tiers or {}).get("strong", ())),
            "moderate": tuple((tiers or {}).get("moderate", ())),
            "replace": bool((tiers or {}).get("replace", False)),
        })
    return MappingProxyType(frozen)


def _normalize_step_orders(steps: tuple, flow: str, company_id: str) -> tuple:
    """Sort steps by order; duplicate orders are bumped so the walk stays deterministic."""
    indexed = sorted(enumerate(steps), key=lambda pair: (pair[1].order, pair[0]))
    normalized = []
    last_order = None
    adjusted = False
    for _, step in indexed:
        order = step.order
        if last_order is not None and order <= last_order:
            order = last_order + 1
            adjusted = True
        last_order = order
        normalized.append(step if order == step.order else replace(step, order=order))
    if adjusted:
        logger.warning(
            "Duplicate %s step orders for company %s — normalized to %s",
            flow, company_id, [s.order for s in normalized],
        )
    return tuple(normalized)


def _parse_slot(raw: dict) -> SlotDefinition:
    try:
        slot_type = SlotType(raw.get("type", "free_text"))
    except ValueError as e:
        raise ConfigError(f"slot {raw.get('id')!r}: unknown type {raw.get('type')!r}") from e
    if not raw.get("id"):
        raise ConfigError("slot definition without id")
    return SlotDefinition(
        id=raw["id"],
        type=slot_type,
        required=bool(raw.get("required", True)),
        discovery_fill_allowed=bool(raw.get("discovery_fill_allowed", True)),
        booking_confirm_required=bool(raw.get("booking_confirm_required", True)),
        label=raw.get("label", ""),
        options=tuple(raw.get("options", ())),
    )


def _parse_step(raw: dict, index: int) -> FlowStep:
    if not raw.get("slot_id"):
        raise ConfigError(f"flow step {index} has no slot_id")
    try:
        mode = ConfirmMode(raw.get("confirm_mode", ConfirmMode.SMART_IF_CAPTURED.value))
    except ValueError as e:
        raise ConfigError(f"step {raw.get('step_id')!r}: unknown confirm mode") from e
    return FlowStep(
        step_id=raw.get("step_id") or f"s{index}",
        slot_id=raw["slot_id"],
        ask=raw.get("ask", ""),
        reprompt=raw.get("reprompt", ""),
        reprompt_variants=tuple(raw.get("reprompt_variants", ())),
        confirm_prompt=raw.get("confirm_prompt", ""),
        correction_prompt=raw.get("correction_prompt", ""),
        rephrase=raw.get("rephrase", ""),
        confirm_mode=mode,
        passive=bool(raw.get("passive", False)),
        order=int(raw.get("order", index)),
    )


def _parse_record(raw: dict) -> ResponseRecord:
    if not raw.get("content_id"):
        raise ConfigError("response record without content_id")
    return ResponseRecord(
        content_id=raw["content_id"],
        content_type=raw.get("content_type", "faq"),
        response_text=raw.get("response_text", ""),
        keywords=tuple(k.lower() for k in raw.get("keywords", ())),
        phrases=tuple(p.lower() for p in raw.get("phrases", ())),
        negative_keywords=tuple(k.lower() for k in raw.get("negative_keywords", ())),
        embedding=tuple(float(x) for x in raw.get("embedding", ())),
    )


def _parse_card(raw: dict) -> ContentCard:
    if not raw.get("card_id"):
        raise ConfigError("content card without card_id")
    return ContentCard(
        card_id=raw["card_id"],
        answer=raw.get("answer", ""),
        keywords=tuple(k.lower() for k in raw.get("keywords", ())),
        phrases=tuple(p.lower() for p in raw.get("phrases", ())),
    )


def _known_fields(cls, raw: dict) -> dict:
    names = set(cls.__dataclass_fields__)
    return {k: v for k, v in (raw or {}).items() if k in names}


@dataclass(frozen=True)
class CompanyConfig:
    company_id: str
    version: str = "0"
    company_name: str = "our team"
    slots: tuple = field(default_factory=_default_slots)
    discovery_steps: tuple = field(default_factory=_default_discovery_steps)
    booking_steps: tuple = field(default_factory=_default_booking_steps)
    triage: TriageSettings = field(default_factory=TriageSettings)
    cascade: CascadeSettings = field(default_factory=CascadeSettings)
    messages: Messages = field(default_factory=Messages)
    responses: tuple = ()
    content_cards: tuple = ()
    intent_patterns: Mapping = field(default_factory=lambda: MappingProxyType({}))
    wants_booking_patterns: tuple = ()
    direct_booking_patterns: tuple = ()
    max_reprompts: int = 2
    loop_action: LoopAction = LoopAction.REPHRASE
    booking_enabled: bool = True
    booking_review_enabled: bool = True
    max_turns_per_call: int = 30

    def slot(self, slot_id: str) -> Optional[SlotDefinition]:
        for slot in self.slots:
            if slot.id == slot_id:
                return slot
        return None

    @property
    def slot_ids(self) -> frozenset:
        return frozenset(s.id for s in self.slots)

    def steps_for(self, booking: bool) -> tuple:
        return self.booking_steps if booking else self.discovery_steps

    @classmethod
    def from_dict(cls, data: dict) -> "CompanyConfig":
        """Build a config snapshot from a config-store document."""
        if not isinstance(data, dict):
            raise ConfigError("tenant document must be an object")
        company_id = data.get("company_id")
        if not company_id:
            raise ConfigError("tenant document has no company_id")

        kwargs = {
            "company_id": company_id,
            "version": str(data.get("version", "0")),
        }
        if data.get("company_name"):
            kwargs["company_name"] = data["company_name"]

        slots = tuple(_parse_slot(s) for s in data["slots"]) if "slots" in data else _default_slots()
        present = {s.id for s in slots}
        for default in _default_slots():
            if default.id in CORE_SLOT_IDS and default.id not in present:
                logger.warning("Core slot %s missing for company %s — restored", default.id, company_id)
                slots = slots + (default,)
        kwargs["slots"] = slots

        discovery = (
            tuple(_parse_step(s, i) for i, s in enumerate(data["discovery_steps"]))
            if "discovery_steps" in data else _default_discovery_steps()
        )
        booking = (
            tuple(_parse_step(s, i) for i, s in enumerate(data["booking_steps"]))
            if "booking_steps" in data else _default_booking_steps()
        )
        kwargs["discovery_steps"] = _normalize_step_orders(discovery, "discovery", company_id)
        kwargs["booking_steps"] = _normalize_step_orders(booking, "booking", company_id)

        kwargs["triage"] = TriageSettings(**_known_fields(TriageSettings, data.get("triage")))
        cascade_raw = _known_fields(CascadeSettings, data.get("cascade"))
        if "allowed_content_types" in cascade_raw:
            cascade_raw["allowed_content_types"] = frozenset(cascade_raw["allowed_content_types"])
        kwargs["cascade"] = CascadeSettings(**cascade_raw)
        kwargs["messages"] = Messages(**_known_fields(Messages, data.get("messages")))

        kwargs["responses"] = tuple(_parse_record(r) for r in data.get("responses", ()))
        kwargs["content_cards"] = tuple(_parse_card(c) for c in data.get("content_cards", ()))
        kwargs["intent_patterns"] = _freeze_patterns(data.get("intent_patterns"))
        kwargs["wants_booking_patterns"] = tuple(data.get("wants_booking_patterns", ()))
        kwargs["direct_booking_patterns"] = tuple(data.get("direct_booking_patterns", ()))

        for key in ("max_reprompts", "max_turns_per_call"):
            if key in data:
                kwargs[key] = int(data[key])
        for key in ("booking_enabled", "booking_review_enabled"):
            if key in data:
                kwargs[key] = bool(data[key])
        if "loop_action" in data:
            try:
                kwargs["loop_action"] = LoopAction(data["loop_action"])
            except ValueError as e:
                raise ConfigError(f"unknown loop_action {data['loop_action']!r}") from e

        return cls(**kwargs)


class TenantConfigCache:
    """Keeps one parsed snapshot per tenant, re-parsing only on a version change."""

    def __init__(self):
        self._snapshots: dict[str, CompanyConfig] = {}

    def resolve(self, document: dict) -> CompanyConfig:
        if not isinstance(document, dict):
            raise ConfigError("tenant document must be an object")
        company_id = document.get("company_id", "")
        version = str(document.get("version", "0"))
        cached = self._snapshots.get(company_id)
        if cached is not None and cached.version == version:
            return cached
        config = CompanyConfig.from_dict(document)
        self._snapshots[company_id] = config
        if cached is not None:
            logger.info("Tenant %s config reloaded: %s -> %s", company_id, cached.version, version)
        return config
