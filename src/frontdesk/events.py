"""Per-turn audit trail.

Critical events must reach the event store before the turn's response is
returned; advisory events are flushed best-effort.
"""

import time
from dataclasses import dataclass, field

CRITICAL_TYPES = frozenset({
    "slot_extracted",
    "owner_selected",
    "component_error",
    "state_corruption",
    "emergency_escalation",
    "lane_changed",
    "booking_completed",
    "loop_action",
})

CASCADE_EVENT = "cascade_evaluated"
CRITICAL_CASCADE_REASONS = frozenset({"error", "timeout"})


def is_critical(event_type: str, data: dict) -> bool:
    if event_type in CRITICAL_TYPES:
        return True
    if event_type == CASCADE_EVENT:
        return data.get("reason") in CRITICAL_CASCADE_REASONS
    return False


@dataclass(frozen=True)
class TurnEvent:
    type: str
    turn: int
    data: dict
    critical: bool
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "turn": self.turn,
            "data": self.data,
            "critical": self.critical,
            "timestamp": self.timestamp,
        }


@dataclass
class EventLog:
    """Ordered, append-only list of events for one turn."""

    turn: int
    events: list = field(default_factory=list)

    def emit(self, event_type: str, **data) -> TurnEvent:
        event = TurnEvent(
            type=event_type,
            turn=self.turn,
            data=data,
            critical=is_critical(event_type, data),
            timestamp=time.time(),
        )
        self.events.append(event)
        return event

    def append(self, event: TurnEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[TurnEvent]:
        return [e for e in self.events if e.type == event_type]

    @property
    def critical(self) -> list[TurnEvent]:
        return [e for e in self.events if e.critical]

    @property
    def advisory(self) -> list[TurnEvent]:
        return [e for e in self.events if not e.critical]

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self):
        return iter(self.events)
