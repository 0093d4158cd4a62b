import math

import pytest

from rig.curve_engine.lib.models import Constraint, CurveDataSnapshot
from rig.curve_engine.lib.overrides import ManualOverrideLayer


def test_override_replaces_computed_value():
    layer = ManualOverrideLayer()
    assert layer.set("dogleg_needed", 4.2) is True
    snap = layer.apply(CurveDataSnapshot(dogleg_needed=1.0, slide_seen=2.0))
    assert snap.dogleg_needed == 4.2
    assert snap.slide_seen == 2.0
    assert snap.overridden == ("dogleg_needed",)


def test_constrained_fields_are_clamped():
    layer = ManualOverrideLayer()
    layer.set("motor_yield", 50)
    layer.set("build_rate", 0.0)
    assert layer.get("motor_yield") == 10.0
    assert layer.get("build_rate") == 0.1


def test_unconstrained_fields_pass_through():
    layer = ManualOverrideLayer(constraints={"motor_yield": Constraint(0.1, 10)})
    layer.set("left_right", -250.0)
    assert layer.get("left_right") == -250.0


def test_none_clears_and_restores_computed():
    layer = ManualOverrideLayer()
    layer.set("slide_ahead", 3.0)
    assert layer.set("slide_ahead", None) is True
    snap = layer.apply(CurveDataSnapshot(slide_ahead=1.5))
    assert snap.slide_ahead == 1.5
    assert snap.overridden == ()


def test_non_finite_is_rejected():
    layer = ManualOverrideLayer()
    layer.set("turn_rate", 2.0)
    assert layer.set("turn_rate", math.nan) is False
    assert layer.get("turn_rate") == 2.0


def test_same_value_reports_no_change():
    layer = ManualOverrideLayer()
    assert layer.set("projected_az", 120.0) is True
    assert layer.set("projected_az", 120.0) is False


def test_is_rotating_must_be_bool():
    layer = ManualOverrideLayer()
    layer.set("is_rotating", True)
    assert layer.apply(CurveDataSnapshot()).is_rotating is True
    with pytest.raises(TypeError):
        layer.set("is_rotating", 1)


def test_unknown_field_and_bad_type():
    layer = ManualOverrideLayer()
    with pytest.raises(ValueError):
        layer.set("target_tvd", 100)
    with pytest.raises(TypeError):
        layer.set("motor_yield", "3")


def test_clear_all():
    layer = ManualOverrideLayer()
    layer.set("motor_yield", 3)
    layer.set("above_below", 12)
    assert layer.clear() is True
    assert dict(layer.values) == {}
    assert layer.clear() is False


def test_values_view_is_read_only():
    layer = ManualOverrideLayer()
    layer.set("motor_yield", 3)
    with pytest.raises(TypeError):
        layer.values["motor_yield"] = 5


@pytest.mark.parametrize("given, stored", [(370.0, 10.0), (-90.0, 270.0), (360.0, 0.0), (359.5, 359.5)])
def test_projected_azimuth_override_is_normalized(given, stored):
    layer = ManualOverrideLayer()
    layer.set("projected_az", given)
    assert math.isclose(layer.get("projected_az"), stored)
    assert 0.0 <= layer.apply(CurveDataSnapshot()).projected_az < 360.0
