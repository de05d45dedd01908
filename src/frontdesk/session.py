import logging
from dataclasses import dataclass, field, fields

from frontdesk.states import LANE_RANK, Lane

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


class StateCorruptionError(Exception):
    """A persisted call state violates an invariant and cannot drive a turn."""


@dataclass
class PendingSlot:
    value: str
    source_turn: int
    confidence: float = 0.9
    source: str = "utterance"

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "source_turn": self.source_turn,
            "confidence": self.confidence,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data) -> "PendingSlot":
        if not isinstance(data, dict):
            # v1 stored bare values
            return cls(value=str(data), source_turn=0, confidence=0.5, source="migrated")
        return cls(
            value=str(data.get("value", "")),
            source_turn=int(data.get("source_turn", 0)),
            confidence=float(data.get("confidence", 0.9)),
            source=data.get("source", "utterance"),
        )


@dataclass
class ConsentState:
    pending: bool = False
    granted: bool | None = None


@dataclass
class CallState:
    call_id: str = ""
    company_id: str = ""
    caller_phone: str = ""

    turn_number: int = 0
    lane: Lane = Lane.DISCOVERY

    # Slot lifecycle
    plain_slots: dict = field(default_factory=dict)
    pending_slots: dict = field(default_factory=dict)
    confirmed_slots: dict = field(default_factory=dict)
    consent: ConsentState = field(default_factory=ConsentState)

    # Step engine
    step_cursor: int = 0
    reprompt_counts: dict = field(default_factory=dict)
    asked_slot: str = ""
    pending_confirmation: str = ""
    awaiting_final_review: bool = False
    rephrased_slots: list = field(default_factory=list)
    skipped_slots: list = field(default_factory=list)

    # Regression guard
    stage_watermark: int = 0
    watermark_turn: int = 0

    # Triage carry-over
    intent: str = ""
    urgency: str = "normal"
    emergency_announced: bool = False

    # Outcome
    escalated: bool = False
    booking_complete: bool = False
    last_response: str = ""
    last_match_source: str = ""
    start_time: float = 0.0
    transcript_log: list = field(default_factory=list)

    schema_version: int = SCHEMA_VERSION

    # ── Slot views ──

    def slot_value(self, slot_id: str) -> str:
        if slot_id in self.confirmed_slots:
            return self.confirmed_slots[slot_id]
        if slot_id in self.plain_slots:
            return self.plain_slots[slot_id]
        pending = self.pending_slots.get(slot_id)
        return pending.value if pending else ""

    def is_satisfied(self, slot_id: str) -> bool:
        return bool(self.slot_value(slot_id))

    def known_values(self) -> dict:
        """Every slot value the call knows, confirmed winning over plain over pending."""
        values = {k: p.value for k, p in self.pending_slots.items()}
        values.update(self.plain_slots)
        values.update(self.confirmed_slots)
        return values

    def accept_slot(self, slot_id: str, value: str) -> None:
        """Caller-verified value: booking lane writes confirmed, other lanes plain."""
        self.pending_slots.pop(slot_id, None)
        if self.lane.is_booking:
            self.plain_slots.pop(slot_id, None)
            self.confirmed_slots[slot_id] = value
        else:
            self.plain_slots[slot_id] = value

    def clear_slot(self, slot_id: str) -> None:
        self.pending_slots.pop(slot_id, None)
        self.plain_slots.pop(slot_id, None)
        self.confirmed_slots.pop(slot_id, None)

    # ── Lane bookkeeping ──

    def raise_watermark(self, lane: Lane, turn: int) -> None:
        """Record the highest lane reached. Never decreases."""
        if lane.rank > self.stage_watermark:
            self.stage_watermark = lane.rank
            self.watermark_turn = turn

    def check_invariants(self, registry_ids) -> None:
        unknown = [slot_id for slot_id in self.confirmed_slots if slot_id not in registry_ids]
        if unknown:
            raise StateCorruptionError(f"confirmed slots not in registry: {sorted(unknown)}")
        both = set(self.pending_slots) & set(self.confirmed_slots)
        if both:
            raise StateCorruptionError(f"slots both pending and confirmed: {sorted(both)}")
        if self.stage_watermark < self.lane.rank:
            raise StateCorruptionError(
                f"stage watermark {self.stage_watermark} below lane {self.lane.value}"
            )
        if self.turn_number < 0:
            raise StateCorruptionError(f"negative turn number {self.turn_number}")

    # ── Persistence ──

    def to_dict(self) -> dict:
        data = {}
        for f in fields(self):
            data[f.name] = getattr(self, f.name)
        data["lane"] = self.lane.value
        data["pending_slots"] = {k: p.to_dict() for k, p in self.pending_slots.items()}
        data["consent"] = {"pending": self.consent.pending, "granted": self.consent.granted}
        data["plain_slots"] = dict(self.plain_slots)
        data["confirmed_slots"] = dict(self.confirmed_slots)
        data["reprompt_counts"] = dict(self.reprompt_counts)
        data["rephrased_slots"] = list(self.rephrased_slots)
        data["skipped_slots"] = list(self.skipped_slots)
        data["transcript_log"] = list(self.transcript_log)
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> "CallState":
        """Load a persisted state, filling defaults and migrating older schemas."""
        if not data:
            return cls()
        data = dict(data)
        version = int(data.get("schema_version", 1))
        if version < 2:
            data = _migrate_v1(data)

        known = {f.name for f in fields(cls)}
        dropped = sorted(set(data) - known)
        if dropped:
            logger.warning("Ignoring unknown call state fields: %s", dropped)
        kwargs = {k: v for k, v in data.items() if k in known}

        try:
            kwargs["lane"] = Lane(kwargs.get("lane", Lane.DISCOVERY.value))
        except ValueError as e:
            raise StateCorruptionError(f"unknown lane {kwargs.get('lane')!r}") from e
        kwargs["pending_slots"] = {
            k: PendingSlot.from_dict(v) for k, v in (kwargs.get("pending_slots") or {}).items()
        }
        consent = kwargs.get("consent") or {}
        kwargs["consent"] = ConsentState(
            pending=bool(consent.get("pending", False)),
            granted=consent.get("granted"),
        )
        for key in ("plain_slots", "confirmed_slots", "reprompt_counts"):
            kwargs[key] = dict(kwargs.get(key) or {})
        for key in ("rephrased_slots", "skipped_slots", "transcript_log"):
            kwargs[key] = list(kwargs.get(key) or [])
        kwargs["schema_version"] = SCHEMA_VERSION
        return cls(**kwargs)


_V1_STAGES = {
    "discovery": "discovery",
    "consent": "consent_pending",
    "consent_pending": "consent_pending",
    "booking": "booking",
}


def _migrate_v1(data: dict) -> dict:
    """v1 kept a flat ``slots`` map and a free-form ``stage`` string."""
    migrated = dict(data)
    slots = migrated.pop("slots", None) or {}
    plain = dict(migrated.get("plain_slots") or {})
    for slot_id, value in slots.items():
        plain.setdefault(slot_id, value)
    migrated["plain_slots"] = plain

    stage = migrated.pop("stage", None)
    if stage is not None and "lane" not in migrated:
        migrated["lane"] = _V1_STAGES.get(str(stage).lower(), "discovery")
    lane_rank = LANE_RANK.get(migrated.get("lane", "discovery"), 0)
    migrated["stage_watermark"] = max(int(migrated.get("stage_watermark", 0)), lane_rank)

    if "turn" in migrated and "turn_number" not in migrated:
        migrated["turn_number"] = migrated.pop("turn")
    migrated["schema_version"] = SCHEMA_VERSION
    logger.info("Migrated call state from schema v1")
    return migrated
