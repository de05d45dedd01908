from enum import Enum

LANE_RANK = {
    "discovery": 0,
    "consent_pending": 1,
    "booking": 2,
}


class Lane(Enum):
    DISCOVERY = "discovery"
    CONSENT_PENDING = "consent_pending"
    BOOKING = "booking"

    @property
    def rank(self) -> int:
        return LANE_RANK[self.value]

    @property
    def is_discovery(self) -> bool:
        return self is Lane.DISCOVERY

    @property
    def is_booking(self) -> bool:
        return self is Lane.BOOKING

    @classmethod
    def from_rank(cls, rank: int) -> "Lane":
        for lane in cls:
            if lane.rank == rank:
                return lane
        raise ValueError(f"unknown lane rank: {rank}")
