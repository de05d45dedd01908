import json
import time
import logging
from datetime import datetime, timezone

from frontdesk.audit_sync import AuditClient
from frontdesk.session import CallState
from frontdesk.states import Lane
from frontdesk.transcript import to_json_array, to_plain_text, to_timestamped_dump

logger = logging.getLogger(__name__)


def derive_end_call_reason(state: CallState) -> str:
    """Map the final call state to an end_call_reason string."""
    if state.urgency == "emergency" and state.emergency_announced:
        return "safety_emergency"
    if state.booking_complete:
        return "completed"
    if state.escalated:
        return "callback_later"
    if state.lane is Lane.BOOKING:
        return "abandoned_booking"
    return "customer_hangup"


def derive_booking_status(state: CallState) -> str:
    if state.booking_complete:
        return "confirmed"
    if state.lane is Lane.BOOKING or state.consent.granted:
        return "attempted_incomplete"
    if state.consent.granted is False:
        return "declined"
    return "not_requested"


def build_call_payload(state: CallState, end_time: float) -> dict:
    """Build the end-of-call archive record."""
    now_dt = datetime.now(timezone.utc).isoformat()
    start_dt = datetime.fromtimestamp(state.start_time, tz=timezone.utc).isoformat() if state.start_time > 0 else now_dt
    end_dt = datetime.fromtimestamp(end_time, tz=timezone.utc).isoformat() if end_time > 0 else now_dt
    duration = int(end_time - state.start_time) if state.start_time > 0 else 0

    return {
        "call_id": state.call_id,
        "company_id": state.company_id,
        "phone_number": state.caller_phone or "unknown",
        "started_at": start_dt,
        "ended_at": end_dt,
        "duration_seconds": duration,
        "turns": state.turn_number,
        "final_lane": state.lane.value,
        "intent": state.intent or "other",
        "urgency": state.urgency,
        "escalated": state.escalated,
        "booking_status": derive_booking_status(state),
        "end_call_reason": derive_end_call_reason(state),
        "slots": {
            "confirmed": dict(state.confirmed_slots),
            "plain": dict(state.plain_slots),
            "pending": {k: p.value for k, p in state.pending_slots.items()},
        },
        "call_transcript": to_plain_text(state.transcript_log),
        "transcript_object": to_json_array(state.transcript_log),
    }


DUMP_TAG = "TRANSCRIPT_DUMP"


def _size(body: dict) -> int:
    return len(json.dumps(body).encode("utf-8"))


def _entry_batches(header: dict, entries: list, max_bytes: int):
    """Greedy batches whose serialized body stays under max_bytes.

    Only the first body carries the header. An entry too large on its own
    still gets a batch of its own.
    """
    batch: list = []
    base = header
    for entry in entries:
        if batch and _size({**base, "entries": batch + [entry]}) > max_bytes:
            yield batch
            batch, base = [], {}
        batch.append(entry)
    yield batch


def transcript_dump_lines(dump: dict, max_bytes: int = 3500) -> list[str]:
    """Log lines for a transcript dump, tagged ``TRANSCRIPT_DUMP|i/n|<json>``."""
    header = {k: v for k, v in dump.items() if k != "entries"}
    bodies = []
    for batch in _entry_batches(header, list(dump.get("entries") or ()), max_bytes):
        bodies.append({**header, "entries": batch} if not bodies else {"entries": batch})
    return [f"{DUMP_TAG}|{n}/{len(bodies)}|{json.dumps(body)}" for n, body in enumerate(bodies, 1)]


async def handle_call_ended(state: CallState, audit: AuditClient | None) -> dict:
    """Archive a finished call. Called once when the transport reports hangup."""
    end_time = time.time()
    payload = build_call_payload(state, end_time)

    result = {"success": False, "error": "audit not configured"}
    if audit is None:
        logger.warning("Event store not configured, skipping call archive")
    else:
        result = await audit.send_call_archive(payload)
        logger.info("Call archive sync for %s: %s", state.call_id, result)

    dump = to_timestamped_dump(
        state.transcript_log,
        start_time=state.start_time,
        call_id=state.call_id,
        phone=state.caller_phone,
        final_lane=state.lane.value,
    )
    dump["duration_s"] = round(end_time - state.start_time, 1) if state.start_time > 0 else 0
    for line in transcript_dump_lines(dump):
        logger.info(line)

    logger.info(
        "Post-call complete for %s: lane=%s, booking=%s",
        state.call_id, state.lane.value, payload["booking_status"],
    )
    return result
