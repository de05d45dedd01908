from frontdesk.transcript import to_json_array, to_plain_text, to_timestamped_dump

LOG = [
    {"role": "user", "content": "My AC is broken.", "turn": 1, "lane": "discovery", "timestamp": 1002.0},
    {"role": "agent", "content": "May I have your first name?", "turn": 1, "lane": "discovery",
     "source": "state_machine:d1", "timestamp": 1003.5},
]


class TestToPlainText:
    def test_basic_conversation(self):
        assert to_plain_text(LOG) == "Caller: My AC is broken.\nAgent: May I have your first name?"

    def test_empty_log(self):
        assert to_plain_text([]) == ""


class TestToJsonArray:
    def test_agent_lines_carry_source(self):
        result = to_json_array(LOG)
        assert result[0] == {"role": "user", "content": "My AC is broken."}
        assert result[1]["source"] == "state_machine:d1"

    def test_empty_log(self):
        assert to_json_array([]) == []


class TestToTimestampedDump:
    def test_relative_timestamps(self):
        dump = to_timestamped_dump(LOG, start_time=1000.0, call_id="c1", phone="5125551234", final_lane="discovery")
        assert dump["call_id"] == "c1"
        assert [e["t"] for e in dump["entries"]] == [2.0, 3.5]
        assert dump["entries"][1]["source"] == "state_machine:d1"

    def test_zero_start_uses_first_entry(self):
        dump = to_timestamped_dump(LOG, start_time=0, call_id="c1", phone="", final_lane="discovery")
        assert dump["entries"][0]["t"] == 0.0

    def test_skips_entries_without_timestamp(self):
        log = LOG + [{"role": "agent", "content": "no time"}]
        dump = to_timestamped_dump(log, start_time=1000.0, call_id="c1", phone="", final_lane="discovery")
        assert len(dump["entries"]) == 2
