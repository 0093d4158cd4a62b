import math

import pytest

from rig.curve_engine.lib.surveys import (
    QualityCheck,
    SurveyAggregator,
    SurveyRecord,
    is_near_duplicate,
    parse_timestamp,
    sanitize_survey,
)
from rig.safe_math import FallbackTable


def survey(sid, ts, md, inc=10.0, az=90.0, **extra):
    data = {"id": sid, "timestamp": ts, "measuredDepth": md, "inclination": inc, "azimuth": az}
    data.update(extra)
    return data


def test_sanitize_defaults_and_aliases():
    rec = sanitize_survey({"measuredDepth": "1200.5", "inclination": float("nan"), "toolTemp": 85})
    assert rec.id.startswith("survey-")
    assert rec.measured_depth == 1200.5
    assert rec.inclination == 0.0
    assert rec.temperature == 85.0
    assert rec.quality_check == QualityCheck("pass", "Default quality check")
    assert parse_timestamp(rec.timestamp) is not None


def test_measured_depth_derived_from_bit_depth():
    rec = sanitize_survey({"bitDepth": 5050, "sensorOffset": 50})
    assert rec.measured_depth == 5000.0


def test_sanitize_rejects_other_types():
    with pytest.raises(TypeError):
        sanitize_survey(["not", "a", "survey"])


def test_parse_timestamp_forms():
    assert parse_timestamp("2024-01-01T00:00:00Z") == 1704067200000.0
    assert parse_timestamp(1704067200000) == 1704067200000.0
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(0) is None


def test_to_dict_is_camel_case():
    out = sanitize_survey(survey("a", "2024-01-01T00:00:00Z", 100)).to_dict()
    assert out["measuredDepth"] == 100.0
    assert out["qualityCheck"]["status"] == "pass"
    assert "measured_depth" not in out


def test_duplicate_id_is_noop():
    agg = SurveyAggregator()
    assert agg.add_survey(survey("a", "2024-01-01T00:00:00Z", 1000)) is not None
    assert agg.add_survey(survey("a", "2024-01-01T01:00:00Z", 2000)) is None
    assert len(agg) == 1


def test_near_duplicate_is_noop_and_outside_bounds_inserts():
    agg = SurveyAggregator()
    agg.add_survey(survey("a", "2024-01-01T00:00:00.000Z", 1000.0))
    assert agg.add_survey(survey("b", "2024-01-01T00:00:04.000Z", 1000.3)) is None
    # close in time, far in depth
    assert agg.add_survey(survey("c", "2024-01-01T00:00:01.000Z", 1000.6)) is not None
    # same depth, far in time
    assert agg.add_survey(survey("d", "2024-01-01T00:00:06.000Z", 1000.0)) is not None
    assert [s.id for s in agg.surveys] == ["a", "c", "d"]


def test_is_near_duplicate_needs_timestamps():
    a = SurveyRecord(id="a", timestamp="bad", measured_depth=10)
    b = SurveyRecord(id="b", timestamp="bad", measured_depth=10)
    assert is_near_duplicate(a, b) is False


def test_update_is_upsert_in_place():
    agg = SurveyAggregator()
    agg.add_survey(survey("a", "2024-01-01T00:00:00Z", 1000))
    agg.add_survey(survey("b", "2024-01-01T01:00:00Z", 1100))
    before = agg.surveys
    agg.update_survey(survey("a", "2024-01-01T00:00:00Z", 1005, inc=12))
    assert [s.id for s in agg.surveys] == ["a", "b"]
    assert agg.get("a").measured_depth == 1005
    # whole-value replacement
    assert before[0].measured_depth == 1000
    agg.update_survey(survey("z", "2024-01-01T02:00:00Z", 1200))
    assert [s.id for s in agg.surveys] == ["a", "b", "z"]


def test_delete_and_notifications():
    seen = []
    agg = SurveyAggregator(on_change=seen.append)
    agg.add_survey(survey("a", "2024-01-01T00:00:00Z", 1000))
    assert agg.delete_survey("a") is True
    assert agg.delete_survey("a") is False
    assert len(seen) == 2
    assert seen[-1] == ()


def test_latest_and_recent_skip_bad_timestamps():
    agg = SurveyAggregator()
    agg.load(
        [
            survey("old", "2024-01-01T00:00:00Z", 1000),
            survey("new", "2024-01-01T02:00:00Z", 1200),
            survey("mid", "2024-01-01T01:00:00Z", 1100),
            survey("bad", "not a time", 1300),
        ]
    )
    assert agg.latest_survey().id == "new"
    assert [s.id for s in agg.recent_surveys()] == ["new", "mid", "old"]
    assert [s.id for s in agg.recent_surveys(2)] == ["new", "mid"]


def test_moving_average_rates_with_wraparound():
    agg = SurveyAggregator(moving_average_count=3)
    agg.load(
        [
            survey("s1", "2024-01-01T00:00:00Z", 1000, inc=10, az=350),
            survey("s2", "2024-01-01T01:00:00Z", 1100, inc=12, az=0),
            survey("s3", "2024-01-01T02:00:00Z", 1200, inc=16, az=20),
        ]
    )
    build, turn = agg.moving_average_rates()
    assert math.isclose(build, 3.0)
    assert math.isclose(turn, 15.0)


def test_rates_fall_back_without_a_usable_pair():
    fb = FallbackTable(build_rate=1.1, turn_rate=0.7)
    agg = SurveyAggregator(fallbacks=fb)
    agg.add_survey(survey("a", "2024-01-01T00:00:00Z", 1000))
    assert agg.moving_average_rates() == (1.1, 0.7)
    agg.add_survey(survey("b", "2024-01-01T01:00:00Z", 1000.5))
    assert agg.moving_average_rates() == (1.1, 0.7)


def test_stations_in_depth_order():
    agg = SurveyAggregator()
    agg.load([survey("b", "2024-01-01T01:00:00Z", 1100, 5, 10), survey("a", "2024-01-01T00:00:00Z", 1000, 4, 9)])
    assert agg.stations() == [(1000.0, 4.0, 9.0), (1100.0, 5.0, 10.0)]


def test_invalid_aggregator_settings():
    with pytest.raises(ValueError):
        SurveyAggregator(moving_average_count=1)
    with pytest.raises(TypeError):
        SurveyAggregator(moving_average_count=2.5)
