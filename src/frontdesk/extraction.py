"""Slot extraction from a single caller utterance.

Each ``SlotType`` resolves to one strategy function through
``SLOT_STRATEGIES``. A strategy looks at the utterance (and whether the
slot is the one currently being asked) and returns a ``Candidate`` or
None. ``extract`` then decides where the value lands:

* DISCOVERY / CONSENT_PENDING: ``pending_slots``
* BOOKING: the slot being asked goes straight to ``confirmed_slots``,
  anything else is pending

Confirmed and plain values are only replaced when the caller uses a
correction phrase ("no, it's...", "actually...").
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, NamedTuple, Optional

from frontdesk import patterns
from frontdesk.company_config import REASON_SLOT_ID, CompanyConfig, SlotDefinition, SlotType
from frontdesk.events import EventLog
from frontdesk.session import CallState, PendingSlot
from frontdesk.states import Lane
from frontdesk.validation import (
    is_no,
    is_yes,
    match_any_keyword,
    validate_address,
    validate_name,
    validate_phone,
    word_count,
    words_to_digits,
)

logger = logging.getLogger(__name__)

CALLER_ID_CONFIDENCE = 0.7
MAX_FREE_TEXT_CHARS = 240


class Candidate(NamedTuple):
    value: str
    confidence: float


@dataclass
class ExtractionResult:
    updated_slots: dict = field(default_factory=dict)
    events: list = field(default_factory=list)


# --- Name ---

NAME_INTRO_RE = re.compile(
    r"\b(my name is|my name's|name's|this is|i'm|i am|call me)\s+"
    r"(?:(mr|mrs|ms|miss|dr)\.?\s+)?"
    r"([A-Za-z][A-Za-z'\-]*)(?:\s+([A-Za-z][A-Za-z'\-]*))?",
    re.IGNORECASE,
)
HONORIFIC_RE = re.compile(r"\b(?:mr|mrs|ms|miss|dr)\.?\s+([A-Z][A-Za-z'\-]+)")
LAST_NAME_RE = re.compile(r"\b(?:my )?last name(?: is|'s)\s+([A-Za-z][A-Za-z'\-]*)", re.IGNORECASE)
FIRST_NAME_RE = re.compile(r"\b(?:my )?first name(?: is|'s)\s+([A-Za-z][A-Za-z'\-]*)", re.IGNORECASE)
ANSWER_FILLER_RE = re.compile(
    r"^(?:(?:yeah|yes|sure|um|uh|ok|okay|so|it's|its|it is|this is|my name is|name's|that's)[\s,.]+)+",
    re.IGNORECASE,
)
NAME_SLOT_IDS = ("name", "last_name")


def _looks_proper(word: str, text: str) -> bool:
    # All-lowercase transcripts carry no casing signal
    return word[:1].isupper() or not any(ch.isupper() for ch in text)


def _parse_name(text: str, asked_slot: str) -> dict:
    """Return {"name": Candidate, "last_name": Candidate} for whatever was said."""
    found = {}

    last = LAST_NAME_RE.search(text)
    if last and validate_name(last.group(1)):
        found["last_name"] = Candidate(validate_name(last.group(1)), 0.9)
    first = FIRST_NAME_RE.search(text)
    if first and validate_name(first.group(1)):
        found["name"] = Candidate(validate_name(first.group(1)), 0.9)
    if found:
        return found

    for match in NAME_INTRO_RE.finditer(text):
        intro, honorific, word1, word2 = match.groups()
        if honorific:
            surname = validate_name(word1)
            if surname:
                found["last_name"] = Candidate(surname, 0.85)
                return found
            continue
        if intro.lower() in ("i'm", "i am") and not _looks_proper(word1, text):
            continue
        given = validate_name(word1)
        if not given:
            continue
        found["name"] = Candidate(given, 0.9)
        if word2 and _looks_proper(word2, text) and validate_name(word2):
            found["last_name"] = Candidate(validate_name(word2), 0.85)
        return found

    honorific = HONORIFIC_RE.search(text)
    if honorific and validate_name(honorific.group(1)):
        found["last_name"] = Candidate(validate_name(honorific.group(1)), 0.85)
        return found

    if asked_slot in NAME_SLOT_IDS and word_count(text) <= 4:
        answer = ANSWER_FILLER_RE.sub("", text.strip()).strip(" .,!?")
        words = answer.split()
        if asked_slot == "last_name" and len(words) == 1 and validate_name(words[0]):
            found["last_name"] = Candidate(validate_name(words[0]), 0.8)
        elif asked_slot == "name" and 1 <= len(words) <= 2 and validate_name(answer):
            found["name"] = Candidate(validate_name(words[0]), 0.8)
            if len(words) == 2:
                found["last_name"] = Candidate(validate_name(words[1]), 0.8)
    return found


def extract_name(text: str, slot: SlotDefinition, state: CallState) -> Optional[Candidate]:
    key = "last_name" if slot.id == "last_name" else "name"
    return _parse_name(text, state.asked_slot).get(key)


# --- Phone ---

PHONE_RE = re.compile(r"(?:\+?1[\s.\-]?)?\(?\d{3}\)?[\s.\-]?\d{3}[\s.\-]?\d{4}\b")


def extract_phone(text: str, slot: SlotDefinition, state: CallState) -> Optional[Candidate]:
    for match in PHONE_RE.finditer(text):
        phone = validate_phone(match.group(0))
        if phone:
            return Candidate(phone, 0.9)
    if state.asked_slot == slot.id:
        phone = validate_phone(words_to_digits(text))
        if phone:
            return Candidate(phone, 0.8)
    return None


# --- Address ---

STREET_SUFFIXES = (
    "street", "st", "avenue", "ave", "road", "rd", "drive", "dr", "lane", "ln",
    "boulevard", "blvd", "court", "ct", "way", "place", "pl", "circle", "cir",
    "parkway", "pkwy", "terrace", "ter", "trail", "trl", "highway", "hwy",
)

ADDRESS_RE = re.compile(
    r"\b\d{1,6}\s+(?:[A-Za-z0-9'\-]+\s+){1,4}?"
    r"(?:" + "|".join(STREET_SUFFIXES) + r")\b\.?"
    # City only when it is capitalized, so "... St, and it's leaking" stays out
    r"(?:,\s*(?-i:[A-Z][a-z]+(?:\s[A-Z][a-z]+)?))?",
    re.IGNORECASE,
)
BARE_ADDRESS_RE = re.compile(r"^\s*(?:it's\s+|it is\s+)?(\d{1,6}\s+[A-Za-z].*?)\s*[.!]?\s*$", re.IGNORECASE)


def extract_address(text: str, slot: SlotDefinition, state: CallState) -> Optional[Candidate]:
    match = ADDRESS_RE.search(text)
    if match:
        address = validate_address(match.group(0))
        if address:
            return Candidate(address, 0.9)
    if state.asked_slot == slot.id:
        bare = BARE_ADDRESS_RE.match(text)
        if bare:
            address = validate_address(bare.group(1))
            if address:
                return Candidate(address, 0.7)
    return None


# --- Time ---

ASAP_RE = re.compile(r"\b(asap|as soon as (possible|you can)|right away|soonest|earliest|first available)\b", re.IGNORECASE)
DAY_RE = re.compile(
    r"\b(today|tonight|tomorrow|this week|next week|"
    r"monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b",
    re.IGNORECASE,
)
PART_OF_DAY_RE = re.compile(r"\b(morning|afternoon|evening)\b", re.IGNORECASE)
CLOCK_RE = re.compile(r"\b(\d{1,2}(?::\d{2})?\s*(?:am|pm|a\.m\.|p\.m\.)|noon)\b", re.IGNORECASE)
SCHEDULING_CUE_RE = re.compile(
    r"\b(come|come out|available|schedule|appointment|book|visit|works? for|works? best|out here)\b",
    re.IGNORECASE,
)


def extract_time(text: str, slot: SlotDefinition, state: CallState) -> Optional[Candidate]:
    asked = state.asked_slot == slot.id
    if not asked and not SCHEDULING_CUE_RE.search(text):
        return None
    if ASAP_RE.search(text):
        return Candidate("as soon as possible", 0.9)
    parts = []
    day = DAY_RE.search(text)
    if day:
        parts.append(day.group(1).lower() if day.group(1).lower() in ("today", "tonight", "tomorrow", "this week", "next week") else day.group(1).capitalize())
    part_of_day = PART_OF_DAY_RE.search(text)
    if part_of_day:
        parts.append(part_of_day.group(1).lower())
    clock = CLOCK_RE.search(text)
    if clock:
        parts.append("at " + clock.group(1).lower())
    if not parts:
        return None
    return Candidate(" ".join(parts), 0.85 if asked else 0.75)


# --- Free text and enum ---


def _is_consent_turn(state: CallState) -> bool:
    return state.lane is Lane.CONSENT_PENDING or bool(state.pending_confirmation) or state.awaiting_final_review


def extract_free_text(text: str, slot: SlotDefinition, state: CallState) -> Optional[Candidate]:
    if _is_consent_turn(state):
        return None
    asked = state.asked_slot == slot.id
    if asked and word_count(text) >= 2 and not (word_count(text) <= 3 and (is_yes(text) or is_no(text))):
        return Candidate(text.strip()[:MAX_FREE_TEXT_CHARS], 0.8)
    if slot.id == REASON_SLOT_ID:
        symptoms = patterns.extract_symptoms(text)
        if symptoms:
            return Candidate("; ".join(symptoms), 0.75)
    return None


def extract_enum(text: str, slot: SlotDefinition, state: CallState) -> Optional[Candidate]:
    for option in slot.options:
        if match_any_keyword(text, [option.lower()]):
            return Candidate(option, 0.9)
    return None


SLOT_STRATEGIES: dict[SlotType, Callable] = {
    SlotType.NAME: extract_name,
    SlotType.PHONE: extract_phone,
    SlotType.ADDRESS: extract_address,
    SlotType.TIME: extract_time,
    SlotType.FREE_TEXT: extract_free_text,
    SlotType.ENUM: extract_enum,
}


# --- Writing values into the call state ---


def _record(
    state: CallState,
    events: EventLog,
    result: ExtractionResult,
    slot_id: str,
    candidate: Candidate,
    source: str,
    target: str,
    correction: bool = False,
) -> None:
    if target == "confirmed":
        state.accept_slot(slot_id, candidate.value)
    else:
        state.pending_slots[slot_id] = PendingSlot(
            value=candidate.value,
            source_turn=state.turn_number,
            confidence=candidate.confidence,
            source=source,
        )
    result.updated_slots[slot_id] = candidate.value
    result.events.append(events.emit(
        "slot_extracted",
        slot=slot_id,
        value=candidate.value,
        source_turn=state.turn_number,
        confidence=candidate.confidence,
        source=source,
        target=target,
        correction=correction,
    ))


def seed_caller_id(state: CallState, events: EventLog, result: ExtractionResult) -> None:
    """First turn only: offer the caller-ID number as a pending phone value."""
    if state.turn_number > 1 or not state.caller_phone or state.is_satisfied("phone"):
        return
    phone = validate_phone(state.caller_phone)
    if phone:
        _record(state, events, result, "phone", Candidate(phone, CALLER_ID_CONFIDENCE), "caller_id", "pending")


def extract(utterance: str, config: CompanyConfig, state: CallState, events: EventLog) -> ExtractionResult:
    """Run every slot strategy over the utterance and write what was found.

    ``state`` is the orchestrator's working copy and is updated in place.
    """
    result = ExtractionResult()
    seed_caller_id(state, events, result)

    text = (utterance or "").strip()
    if not text:
        return result

    # anything said during the final review is a change to what was read back
    correcting = patterns.is_correction(text) or state.awaiting_final_review
    for slot in config.slots:
        strategy = SLOT_STRATEGIES[slot.type]
        candidate = strategy(text, slot, state)
        if candidate is None or not candidate.value:
            continue

        if state.lane is not Lane.BOOKING and not slot.discovery_fill_allowed:
            continue

        held_firm = slot.id in state.confirmed_slots or slot.id in state.plain_slots
        existing = state.slot_value(slot.id)
        if existing == candidate.value:
            continue
        if held_firm and existing:
            if not correcting:
                logger.debug("Keeping verified %s; no correction phrase", slot.id)
                continue
            state.clear_slot(slot.id)
            _record(state, events, result, slot.id, candidate, "correction", "pending", correction=True)
            continue

        answering_booking_ask = (
            state.lane is Lane.BOOKING
            and state.asked_slot == slot.id
            and state.pending_confirmation != slot.id
        )
        target = "confirmed" if answering_booking_ask else "pending"
        source = "answer" if state.asked_slot == slot.id else "utterance"
        _record(state, events, result, slot.id, candidate, source, target)

    if result.updated_slots:
        logger.info("Extracted slots: %s", sorted(result.updated_slots))
    return result
