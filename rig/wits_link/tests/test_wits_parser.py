import json
from types import MappingProxyType

import pytest

from rig.errors import WitsParseError
from rig.wits_link.lib.enums import FrameType, WitsLevel
from rig.wits_link.lib.link_config import ConnectionConfig
from rig.wits_link.lib.wits_parser import (
    ChannelMap,
    ChannelValue,
    RecordFramer,
    WitsRecordParser,
    control_frame,
    parse_control_frame,
    parse_json_record,
    parse_level0,
    parse_noralis,
    parse_pair,
)


def test_channel_value_tagging():
    assert ChannelValue.parse("12.5").number == 12.5
    assert ChannelValue.parse(" 3 ").as_float() == 3.0
    text = ChannelValue.parse("SLIDE")
    assert text.is_numeric is False
    assert text.text == "SLIDE"
    assert text.as_float() is None


def test_parse_pair_errors():
    with pytest.raises(WitsParseError):
        parse_pair("1234")
    with pytest.raises(WitsParseError):
        parse_pair("abc=1")


def test_level0_skips_malformed_pairs_and_keeps_the_rest():
    values = parse_level0("1=1500.5\tgarbage\tx=3\t5=12.25\t7=HS")
    assert set(values) == {1, 5, 7}
    assert values[1].number == 1500.5
    assert values[5].number == 12.25
    assert values[7].text == "HS"


def test_level0_value_may_contain_equals():
    values = parse_level0("7=a=b")
    assert values[7].text == "a=b"


def test_json_record():
    values = parse_json_record(json.dumps({"1": 100.0, "9": "60", "timestamp": "x", "4": None}))
    assert values[1].number == 100.0
    assert values[9].number == 60.0
    assert 4 not in values


def test_json_record_invalid():
    with pytest.raises(WitsParseError):
        parse_json_record("{not json")
    with pytest.raises(WitsParseError):
        parse_json_record("[1, 2]")


def test_noralis_record():
    values = parse_noralis("01 1234.5 05 12.0 123 4 06 abc")
    assert values[1].number == 1234.5
    assert values[5].number == 12.0
    assert 6 not in values
    assert len(values) == 2


def test_noralis_odd_tokens():
    with pytest.raises(WitsParseError):
        parse_noralis("01 1234.5 02")


def test_framer_keeps_incomplete_tail():
    f = RecordFramer("\r\n")
    assert f.feed("1=1\t2=2\r\n3=") == ["1=1\t2=2"]
    assert f.pending == "3="
    assert f.feed("3\r\n\r\n") == ["3=3"]
    assert f.pending == ""


def test_framer_truncates_runaway_buffer():
    f = RecordFramer("\n")
    f.feed("x" * 10001)
    assert len(f.pending) == 5000


def test_channel_map_filters_unknown_channels():
    cmap = ChannelMap({1: "bit_depth", 9: "rotary_rpm"})
    kept = cmap.filter({1: ChannelValue(1.0), 2: ChannelValue(2.0)})
    assert list(kept) == [1]
    assert cmap.channel("rotary_rpm") == 9


def test_empty_channel_map_accepts_everything():
    cmap = ChannelMap({})
    assert len(cmap.filter({1: ChannelValue(1.0), 77: ChannelValue(2.0)})) == 2


def test_channel_map_validation():
    with pytest.raises(ValueError):
        ChannelMap({-1: "x"})
    with pytest.raises(ValueError):
        ChannelMap({1: " "})


def test_record_parser_builds_immutable_sample():
    cfg = ConnectionConfig(well_id="W-1", sensor_offset=45.0)
    parser = WitsRecordParser.from_config(cfg)
    sample = parser.parse("1=1500\t9=80", timestamp="2024-01-01T00:00:00.000Z")
    assert sample.timestamp == "2024-01-01T00:00:00.000Z"
    assert sample.number(9) == 80.0
    assert sample.well_id == "W-1"
    assert sample.sensor_offset == 45.0
    assert isinstance(sample.values, MappingProxyType)
    with pytest.raises(TypeError):
        sample.values[2] = ChannelValue(1.0)


def test_record_parser_returns_none_when_nothing_survives():
    parser = WitsRecordParser(channel_map=ChannelMap({1: "bit_depth"}))
    assert parser.parse("2=5\t3=6") is None
    assert parser.parse("junk") is None


def test_record_parser_json_level_and_noralis():
    json_parser = WitsRecordParser(level=WitsLevel.LEVEL_1)
    assert json_parser.parse('{"5": 30.5}').number(5) == 30.5
    assert json_parser.parse("{broken") is None

    noralis = WitsRecordParser(noralis_mode=True)
    sample = noralis.parse("05 30.5 06 271.0")
    assert sample.source == "noralis"
    assert sample.number(6) == 271.0


def test_sample_to_dict_with_names():
    parser = WitsRecordParser()
    d = parser.parse("1=1500\t7=HS").to_dict(parser.channel_map)
    assert d["channels"] == {"1": 1500.0, "7": "HS"}
    assert d["named"]["bit_depth"] == 1500.0
    assert d["named"]["tool_face"] == "HS"


def test_control_frames():
    assert parse_control_frame('{"type": "pong", "timestamp": 5}') == {"type": "pong", "timestamp": 5}
    assert parse_control_frame('{"type": "hello"}') is None
    assert parse_control_frame('{"1": 100}') is None
    assert parse_control_frame("1=100\t2=3") is None


def test_control_frame_encoding():
    assert json.loads(control_frame(FrameType.PING, 1234)) == {"type": "ping", "timestamp": 1234}
    assert json.loads(control_frame(FrameType.DISCONNECT)) == {"type": "disconnect", "command": "disconnect"}
