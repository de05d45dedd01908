import pytest

from frontdesk.states import LANE_RANK, Lane


class TestLane:
    def test_ranks_are_ordered(self):
        assert Lane.DISCOVERY.rank < Lane.CONSENT_PENDING.rank < Lane.BOOKING.rank

    def test_every_lane_has_a_rank(self):
        assert set(LANE_RANK) == {lane.value for lane in Lane}

    def test_from_rank(self):
        assert Lane.from_rank(2) is Lane.BOOKING

    def test_from_rank_unknown(self):
        with pytest.raises(ValueError):
            Lane.from_rank(9)

    def test_flags(self):
        assert Lane.DISCOVERY.is_discovery
        assert Lane.BOOKING.is_booking
        assert not Lane.CONSENT_PENDING.is_booking
