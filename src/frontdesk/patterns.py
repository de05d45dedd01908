"""Declarative pattern tables used by extraction, triage and the lanes.

Tables are ordered tuples so every evaluation walks them in the same
order. Regexes are matched against the lower-cased utterance unless a
table says otherwise. Tenants can extend or replace the intent tables
through ``CompanyConfig.intent_patterns``.
"""

import re

# --- Intent tables: category -> strong / moderate regex tiers ---

INTENT_PATTERNS = {
    "service_request": {
        "strong": (
            r"\b(ac|a/c|air conditioner|air conditioning|furnace|heater|heat pump|unit|system|hvac)\s+(is\s+|went\s+|has\s+gone\s+)?(down|dead|broken|out|busted)\b",
            r"\bnot (cooling|heating|working|turning on|blowing)\b",
            r"\b(stopped|quit) (working|cooling|heating|running)\b",
            r"\b(won'?t|doesn'?t|does not|will not) (turn on|start|cool|heat|run|kick on)\b",
            r"\bno (power|heat|ac|air|cold air|hot air)\b",
            r"\b(leak|leaking|leaks)\b",
            r"\bblowing (warm|hot|cold) air\b",
            r"\bbroke(n)?\b",
        ),
        "moderate": (
            r"\b(problem|issue|trouble)\b",
            r"\b(noise|noisy|grinding|rattling|buzzing|squealing|banging)\b",
            r"\b(smell|smells|odor)\b",
            r"\b(frozen|freezing up|ice on)\b",
            r"\b(repair|fix|service call|take a look|come out)\b",
            r"\b(weird|strange|acting up)\b",
            r"\bthermostat\b",
        ),
    },
    "maintenance": {
        "strong": (
            r"\b(tune[- ]?up|maintenance|annual check|seasonal check|inspection)\b",
            r"\b(clean|cleaning) (the )?(ducts|coils|system|unit)\b",
        ),
        "moderate": (
            r"\b(check ?up|filter|service plan|maintenance plan)\b",
        ),
    },
    "estimate": {
        "strong": (
            r"\b(new|replacement|replace|brand new) (system|unit|ac|furnace|heat pump)\b",
            r"\b(quote|estimate) (for|on)\b",
            r"\bhow much (for|is|would) (a )?new\b",
        ),
        "moderate": (
            r"\b(quote|estimate|upgrade|install|installation)\b",
        ),
    },
    "billing": {
        "strong": (
            r"\b(my|the) (bill|invoice)\b",
            r"\b(charged|overcharged|refund|payment)\b",
        ),
        "moderate": (
            r"\b(billing|price|warranty|charge)\b",
        ),
    },
    "follow_up": {
        "strong": (
            r"\b(following up|called (before|earlier|yesterday)|still waiting|waiting for a call ?back)\b",
        ),
        "moderate": (
            r"\b(any update|checking on|check on)\b",
        ),
    },
    "manage_booking": {
        "strong": (
            r"\b(reschedule|cancel my|cancel the|move my appointment|change my appointment)\b",
        ),
        "moderate": (
            r"\bmy appointment\b",
        ),
    },
}

DEFAULT_INTENT = "other"
FALLBACK_INTENT = "service_request"

# --- Symptom table: regex -> canonical phrase (evaluated on the full utterance) ---

SYMPTOM_PATTERNS = (
    (r"\b(ac|a/c|air conditioner|unit|system)\s+(is\s+|went\s+)?(down|dead|out)\b", "AC not working"),
    (r"\bnot (working|turning on|running)\b|\b(stopped|quit) (working|running)\b", "system not working"),
    (r"\bnot cooling\b|\bblowing (warm|hot) air\b|\bwarm air\b|\bno cold air\b|\bno ac\b", "not cooling"),
    (r"\bnot heating\b|\bno heat\b|\bblowing cold air\b|\bno hot air\b", "no heat"),
    (r"\b(leak|leaking|leaks|dripping|water (on|all over) the floor)\b", "water leak"),
    (r"\b(grinding|rattling|buzzing|squealing|banging|loud noise|strange noise|weird noise)\b", "unusual noise"),
    (r"\b(burning smell|musty smell|weird smell|strange smell|bad smell|odor)\b", "unusual smell"),
    (r"\b(frozen|ice on|iced up|freezing up)\b", "frozen coil"),
    (r"\b(won'?t|doesn'?t|will not|does not) (turn on|start|kick on)\b|\bno power\b", "no power"),
    (r"\bthermostat (is )?(blank|dead|not responding|not working)\b", "thermostat issue"),
    (r"\b(short cycling|turns? on and off|keeps cycling)\b", "short cycling"),
)

TEMPERATURE_PATTERN = re.compile(
    r"\b(\d{2,3})\s*(?:degrees|degree|°|deg)\b"
    r"|\b(?:it'?s|is|at|reads|reading|over|above)\s+(\d{2,3})\s+(?:in here|inside|in the house)\b"
)

# --- Urgency tables (priority order: emergency, urgent, temperature) ---

EMERGENCY_PATTERNS = (
    r"\b(smell|smells|smelling|smelled) (of |like )?gas\b|\bgas (smell|leak|odor)\b|\bleaking gas\b",
    r"\brotten eggs?\b",
    r"\b(fire|flames|smoke|smoking|sparks|sparking)\b",
    r"\bburning (smell|wires?|plastic)\b",
    r"\b(carbon monoxide|co detector|co alarm)\b",
    r"\b(can'?t breathe|medical emergency|passed out|unconscious|chest pain)\b",
)

VULNERABLE_OCCUPANT = (
    r"\b(elderly|senior|grandma|grandmother|grandpa|grandfather|baby|infant|newborn|oxygen|disabled|pregnant)\b",
)

EXTREME_COLD = (
    r"\bno heat\b|\bfreezing\b|\bnot heating\b|\bice cold\b",
)

# A negated hazard removes only that phrase; other hazards in the utterance stand.
HAZARD_NEGATIONS = (
    r"\bno (gas|smoke|fire|flames|sparks|burning)( smell| leak| odor)?\b",
    r"\b(don'?t|do not|doesn'?t|does not) smell (any |like )?(gas|smoke|burning)\b",
    r"\bnot (smoking|sparking|on fire)\b",
)

# Retract the whole report, but only hazards mentioned before them.
EMERGENCY_RETRACTIONS = (
    r"\bnever ?mind\b",
    r"\bnot (a|an) emergency\b",
    r"\bno emergency\b",
    r"\bforget i said\b",
)

URGENT_PATTERNS = (
    r"\b(asap|right now|right away|immediately|urgent|urgently|emergency)\b",
    r"\b(today|tonight|as soon as possible|soonest|same day)\b",
    r"\bget someone (out )?(here )?now\b|\bsomeone now\b|\bsend someone now\b",
    r"\b(flooding|water everywhere|leaking everywhere)\b",
)

# --- Lane signals ---

WANTS_BOOKING_PATTERNS = (
    r"\b(schedule|book|set up|make) (an |a )?(appointment|visit|service|tech|technician)\b",
    r"\b(can|could) (you|someone) (come|send|get)\b",
    r"\bsend (someone|a tech|a technician)\b",
    r"\bneed (someone|a tech|a technician) (to come|out)\b",
    r"\bwhen can (you|someone) come\b",
)

DIRECT_BOOKING_PATTERNS = (
    r"\bbook (me|it|an appointment|a visit) (now|for)\b",
    r"\bjust (book|schedule) (it|me|an appointment)\b",
)

CANCEL_PATTERNS = (
    r"\b(cancel|never ?mind|forget it)\b",
    r"\bdon'?t (book|schedule)\b",
)

CORRECTION_PATTERNS = (
    r"\bno\s*,?\s*(it'?s|my name is|i'?m|i am|actually|the address is|my number is)\s+",
    r"\bactually\s*,?\s*(it'?s|my name is|i'?m|i am|the address is|my number is)\s+",
    r"\bsorry\s*,?\s*(it'?s|my name is|i'?m)\s+",
    r"\bi said\s+",
    r"\bthat'?s wrong\b",
    r"\bcorrection\b",
)

LAST_NAME_CORRECTION_PATTERNS = (
    r"\bthat'?s my last name\b",
    r"\bthat is my last name\b",
    r"\bit'?s my last name\b",
)


def compile_table(patterns) -> tuple:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


def any_match(text: str, compiled) -> bool:
    return any(p.search(text) for p in compiled)


def count_matches(text: str, compiled) -> int:
    return sum(1 for p in compiled if p.search(text))


def strip_matches(text: str, compiled) -> str:
    for p in compiled:
        text = p.sub(" ", text)
    return text


def last_match_start(text: str, compiled) -> int:
    """Offset of the right-most match of any pattern, -1 if none match."""
    return max((m.start() for p in compiled for m in p.finditer(text)), default=-1)


EMERGENCY_RE = compile_table(EMERGENCY_PATTERNS)
VULNERABLE_RE = compile_table(VULNERABLE_OCCUPANT)
EXTREME_COLD_RE = compile_table(EXTREME_COLD)
HAZARD_NEGATION_RE = compile_table(HAZARD_NEGATIONS)
RETRACTION_RE = compile_table(EMERGENCY_RETRACTIONS)
URGENT_RE = compile_table(URGENT_PATTERNS)
WANTS_BOOKING_RE = compile_table(WANTS_BOOKING_PATTERNS)
DIRECT_BOOKING_RE = compile_table(DIRECT_BOOKING_PATTERNS)
CANCEL_RE = compile_table(CANCEL_PATTERNS)
CORRECTION_RE = compile_table(CORRECTION_PATTERNS)
LAST_NAME_CORRECTION_RE = compile_table(LAST_NAME_CORRECTION_PATTERNS)
SYMPTOM_RE = tuple((re.compile(p, re.IGNORECASE), phrase) for p, phrase in SYMPTOM_PATTERNS)


def extract_symptoms(text: str) -> list[str]:
    """All canonical symptom phrases found in text, de-duplicated, table order."""
    found = []
    for pattern, phrase in SYMPTOM_RE:
        if pattern.search(text) and phrase not in found:
            found.append(phrase)
    return found


def extract_temperature(text: str) -> int | None:
    """First plausible indoor temperature mentioned (°F), or None."""
    for match in TEMPERATURE_PATTERN.finditer(text.lower()):
        raw = match.group(1) or match.group(2)
        value = int(raw)
        if 30 <= value <= 130:
            return value
    return None


def is_correction(text: str) -> bool:
    return any_match(text, CORRECTION_RE)


def wants_booking(text: str, extra_patterns=()) -> bool:
    return any_match(text, WANTS_BOOKING_RE) or any_match(text, compile_table(extra_patterns))


def is_direct_booking(text: str, extra_patterns=()) -> bool:
    return any_match(text, DIRECT_BOOKING_RE) or any_match(text, compile_table(extra_patterns))


def is_cancellation(text: str) -> bool:
    return any_match(text, CANCEL_RE)
