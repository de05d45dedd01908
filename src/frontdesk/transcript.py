"""Renderings of ``CallState.transcript_log`` for the call archive.

Log entries are written by the orchestrator, one per speaker per turn:
``{role, content, turn, lane, timestamp}`` plus ``source`` on agent lines.
"""

SPEAKERS = {"user": "Caller", "agent": "Agent"}


def _spoken(log: list[dict]) -> list[dict]:
    return [entry for entry in log or () if entry.get("role") in SPEAKERS]


def to_plain_text(log: list[dict]) -> str:
    """One "Caller: ..." / "Agent: ..." line per spoken entry."""
    return "\n".join(f"{SPEAKERS[e['role']]}: {e.get('content', '')}" for e in _spoken(log))


def to_json_array(log: list[dict]) -> list[dict]:
    """Structured transcript. Agent lines keep the match source that produced them."""
    result = []
    for entry in _spoken(log):
        item = {"role": entry["role"], "content": entry.get("content", "")}
        if entry["role"] == "agent":
            item["source"] = entry.get("source", "")
        result.append(item)
    return result


def to_timestamped_dump(
    log: list[dict],
    start_time: float,
    call_id: str,
    phone: str,
    final_lane: str,
) -> dict:
    """Dump for structured logging, with times relative to the call start.

    A zero start_time falls back to the first timestamped entry. Entries
    without a timestamp are left out.
    """
    stamped = [entry for entry in log or () if "timestamp" in entry]
    base_time = start_time if start_time > 0 else (stamped[0]["timestamp"] if stamped else 0.0)

    entries = []
    for entry in stamped:
        item = {
            "t": round(entry["timestamp"] - base_time, 1),
            "turn": entry.get("turn", 0),
            "role": entry.get("role", ""),
            "lane": entry.get("lane", ""),
        }
        for key in ("content", "source"):
            if key in entry:
                item[key] = entry[key]
        entries.append(item)

    return {
        "call_id": call_id,
        "phone": phone,
        "final_lane": final_lane,
        "entries": entries,
    }
