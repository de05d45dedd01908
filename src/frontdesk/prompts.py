import re

# --- Default scripts (tenants override through CompanyConfig.messages) ---

CONSENT_PROMPT = "Would you like me to get a technician scheduled for you?"
CONSENT_DECLINED = "No problem. Is there anything else I can help you with?"
CONSENT_REASK = "Sorry, I didn't catch that. Would you like me to schedule a technician? Just say yes or no."

EMERGENCY_SCRIPT = (
    "This sounds like a safety emergency. Please leave the house right now "
    "and call 911 from outside. Don't flip any light switches on the way out. "
    "I'm flagging this for our on-call team."
)

FALLBACK = "I'm sorry, I didn't quite get that. Could you say that one more time?"
ESCALATE = "Let me have someone from the team call you back to help you out."
TURN_LIMIT = "I apologize, but let me have someone from the team call you back to help you out."

BOOKING_DISABLED = "I can't book that on this line, but I'll have someone from the team call you right back to get you scheduled."
BOOKING_REVIEW = "Let me make sure I have everything right. {summary}. Is that all correct?"
BOOKING_REVIEW_RETRY = "Sorry, just to double-check: {summary}. Is that correct?"
BOOKING_CORRECTION = "No problem. What should I change?"
BOOKING_COMPLETE = "You're all set, {name}. A technician will reach out at {phone} to confirm the arrival window."
BOOKING_COMPLETE_PLAIN = "You're all set. A technician will reach out to confirm the arrival window."
BOOKING_CANCELLED = "Okay, I won't book anything. Is there anything else I can help with?"
DISCOVERY_COMPLETE = "Thanks, I have everything I need for now."
ANYTHING_ELSE = "Is there anything else I can help you with?"
REPHRASE_PREFIX = "Let me ask that a different way."

SUMMARY_LABELS = {
    "name": "name",
    "last_name": "last name",
    "phone": "phone number",
    "address": "address",
    "time": "time",
}

GENERATIVE_SYSTEM_PROMPT = """You are the virtual receptionist for {company_name}.
Answer the caller's question in ONE short sentence using only the reference answers below.
Return ONLY valid JSON: {{"content_id": "<id of the reference used>", "answer": "<sentence>", "confidence": <0 to 1>}}
If none of the reference answers apply, return {{"content_id": "", "answer": "NO_MATCH", "confidence": 0}}
NEVER say an appointment is booked, scheduled or confirmed.
NEVER invent prices, hours or policies.

Reference answers:
{references}"""

PLACEHOLDER_RE = re.compile(r"\{([a-z_]+)\}")


class _Missing(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def placeholders(template: str) -> set[str]:
    return set(PLACEHOLDER_RE.findall(template or ""))


def render(template: str, values: dict) -> str:
    """Fill {placeholders} from values; unknown placeholders are left as-is."""
    if not template:
        return ""
    return template.format_map(_Missing({k: v for k, v in values.items() if v}))


def unresolved(template: str, values: dict) -> set[str]:
    return {name for name in placeholders(template) if not values.get(name)}


def render_script(template: str, values: dict, fallback: str) -> str:
    """Render a spoken script, switching to fallback if the template names a value the call lacks."""
    if unresolved(template, values):
        return render(fallback, values)
    return render(template, values)


def format_phone(digits: str) -> str:
    if len(digits) == 10 and digits.isdigit():
        return f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"
    return digits


def booking_summary(slots: dict, slot_ids) -> str:
    parts = []
    for slot_id in slot_ids:
        value = slots.get(slot_id)
        if not value:
            continue
        if slot_id == "phone":
            value = format_phone(value)
        label = SUMMARY_LABELS.get(slot_id, slot_id.replace("_", " "))
        parts.append(f"{label} {value}")
    return ", ".join(parts)


def generative_prompt(company_name: str, records) -> str:
    references = "\n".join(f"- [{r.content_id}] {r.response_text}" for r in records if r.response_text)
    return GENERATIVE_SYSTEM_PROMPT.format(company_name=company_name, references=references or "- (none)")
