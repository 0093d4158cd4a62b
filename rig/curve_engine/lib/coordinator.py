"""Owner of all live steering state.

``SteeringCoordinator`` wires the telemetry link, the rotation debouncer, the
survey aggregator and the manual overrides together and republishes a new
``CurveDataSnapshot`` whenever any input changes. The snapshot itself comes
from :func:`compute_snapshot`, a pure function of :class:`SteeringInputs`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from rig.curve_engine.lib import calculations as calc
from rig.curve_engine.lib.configparser import CurveEngineParser
from rig.curve_engine.lib.models import (
    DEFAULT_CONSTRAINTS,
    Constraint,
    CurveDataSnapshot,
    SlideParameters,
    TargetLine,
)
from rig.curve_engine.lib.overrides import ManualOverrideLayer, OverrideValue
from rig.curve_engine.lib.rotation import RotationDebouncer
from rig.curve_engine.lib.surveys import SurveyAggregator, SurveyRecord
from rig.curve_engine.lib.trajectory import minimum_curvature
from rig.events import (
    TOPIC_ROTATION,
    TOPIC_SAMPLE,
    TOPIC_SNAPSHOT,
    TOPIC_SURVEYS,
    EventHub,
)
from rig.safe_math import DEFAULT_FALLBACKS, FallbackTable
from rig.wits_link.lib.enums import ConnectionState
from rig.wits_link.lib.configparser import WitsLinkParser
from rig.wits_link.lib.link_config import ConnectionConfig
from rig.wits_link.lib.wits_link import TelemetryLink, TransportFactory
from rig.wits_link.lib.wits_parser import ChannelMap, TelemetrySample

LOG = logging.getLogger("curve_engine.coordinator")


@dataclass(frozen=True)
class EngineSettings:
    rotation_threshold: float = 5.0
    debounce_ms: float = 500.0
    moving_average_count: int = 3
    min_distance_threshold: float = 1.0
    gravity_toolface: bool = False
    rotary_channel: str = "rotary_rpm"
    fallbacks: FallbackTable = DEFAULT_FALLBACKS
    constraints: Mapping[str, Constraint] = field(default_factory=lambda: dict(DEFAULT_CONSTRAINTS))

    def __post_init__(self) -> None:
        for name in ("rotation_threshold", "debounce_ms", "min_distance_threshold"):
            val = getattr(self, name)
            if isinstance(val, bool) or not isinstance(val, (int, float)):
                raise TypeError(f"{name} must be a number")
            if val < 0:
                raise ValueError(f"{name} must be non-negative")

    @classmethod
    def from_ini(cls, config_path: Union[str, Path]) -> "EngineSettings":
        p = CurveEngineParser(str(config_path))
        constraints = dict(DEFAULT_CONSTRAINTS)
        for name, (lo, hi) in (p.parse_constraints() or {}).items():
            constraints[name] = Constraint(lo, hi)
        return cls(
            rotation_threshold=p.parse_rotation_threshold(),
            debounce_ms=p.parse_debounce_ms(),
            moving_average_count=p.parse_moving_average_count(),
            min_distance_threshold=p.parse_min_distance_threshold(),
            gravity_toolface=p.parse_gravity_toolface(),
            rotary_channel=p.parse_rotary_channel(),
            fallbacks=FallbackTable(**p.parse_fallbacks()),
            constraints=constraints,
        )


@dataclass(frozen=True)
class SteeringInputs:
    """Everything a snapshot depends on, captured at one instant."""

    recent_surveys: Tuple[SurveyRecord, ...] = ()
    stations: Tuple[Tuple[float, float, float], ...] = ()
    build_rate: float = DEFAULT_FALLBACKS.build_rate
    turn_rate: float = DEFAULT_FALLBACKS.turn_rate
    sample_inclination: Optional[float] = None
    sample_azimuth: Optional[float] = None
    is_rotating: bool = False
    target: TargetLine = field(default_factory=TargetLine)
    slide: SlideParameters = field(default_factory=SlideParameters)
    min_distance_threshold: float = 1.0
    fallbacks: FallbackTable = DEFAULT_FALLBACKS


def current_orientation(inputs: SteeringInputs) -> Tuple[float, float]:
    """Latest survey orientation, else live telemetry, else vertical/north."""
    if inputs.recent_surveys:
        latest = inputs.recent_surveys[0]
        return latest.inclination, latest.azimuth
    inc = inputs.sample_inclination if inputs.sample_inclination is not None else 0.0
    az = inputs.sample_azimuth if inputs.sample_azimuth is not None else 0.0
    return inc, az


def compute_snapshot(inputs: SteeringInputs, overrides: Optional[Mapping[str, OverrideValue]] = None) -> CurveDataSnapshot:
    overrides = overrides or {}
    target, slide = inputs.target, inputs.slide
    cur_inc, cur_az = current_orientation(inputs)

    build_rate = overrides.get("build_rate", inputs.build_rate)
    turn_rate = overrides.get("turn_rate", inputs.turn_rate)
    is_rotating = overrides.get("is_rotating", inputs.is_rotating)

    if "motor_yield" in overrides:
        motor_yield = overrides["motor_yield"]
    else:
        pair: Tuple[Optional[float], ...] = (None, None, None)
        if len(inputs.recent_surveys) >= 2:
            cur, prev = inputs.recent_surveys[0], inputs.recent_surveys[1]
            pair = (cur.inclination, prev.inclination, abs(cur.measured_depth - prev.measured_depth))
        motor_yield = calc.motor_yield(
            *pair,
            slide_distance=slide.slide_distance,
            bend_angle=slide.bend_angle,
            bit_to_bend_distance=slide.bit_to_bend_distance,
            min_distance=inputs.min_distance_threshold,
            fallbacks=inputs.fallbacks,
        )

    above_below = 0.0
    left_right = 0.0
    traj = minimum_curvature(inputs.stations)
    if traj is not None:
        tvd = float(traj.tvd[-1])
        vs = float(traj.vertical_section(target.target_azimuth)[-1])
        above_below = calc.above_below(tvd, target.target_tvd)
        left_right = calc.left_right(vs, cur_az, target.target_vs, target.target_azimuth)

    if inputs.recent_surveys or inputs.sample_inclination is not None:
        dogleg_needed = calc.dogleg_needed(
            cur_inc, cur_az, target.target_inclination, target.target_azimuth, target.target_distance
        )
    else:
        # no orientation known yet
        dogleg_needed = inputs.fallbacks.dogleg

    snapshot = CurveDataSnapshot(
        motor_yield=motor_yield,
        dogleg_needed=dogleg_needed,
        slide_seen=calc.slide_seen(motor_yield, slide.slide_distance, is_rotating),
        slide_ahead=calc.slide_ahead(motor_yield, slide.slide_distance, slide.bit_to_bend_distance, is_rotating),
        projected_inc=calc.projected_inclination(cur_inc, build_rate, target.target_distance),
        projected_az=calc.projected_azimuth(cur_az, turn_rate, target.target_distance),
        build_rate=build_rate,
        turn_rate=turn_rate,
        is_rotating=is_rotating,
        above_below=above_below,
        left_right=left_right,
        slide_distance=slide.slide_distance,
        bit_to_bend_distance=slide.bit_to_bend_distance,
        bend_angle=slide.bend_angle,
        target_distance=target.target_distance,
        target_inc=target.target_inclination,
        target_az=target.target_azimuth,
    )
    if overrides:
        snapshot = replace(snapshot, overridden=tuple(sorted(overrides)), **overrides)
    return snapshot


class SteeringCoordinator:
    def __init__(
        self,
        link: Optional[TelemetryLink] = None,
        settings: Optional[EngineSettings] = None,
        target: Optional[TargetLine] = None,
        slide: Optional[SlideParameters] = None,
    ):
        self.link = link if link is not None else TelemetryLink()
        self.hub: EventHub = self.link.hub
        self.settings = settings if settings is not None else EngineSettings()
        s = self.settings

        self.overrides = ManualOverrideLayer(s.constraints)
        self.debouncer = RotationDebouncer(s.rotation_threshold, s.debounce_ms, on_change=self._on_rotation)
        self.aggregator = SurveyAggregator(
            moving_average_count=s.moving_average_count,
            min_distance_threshold=s.min_distance_threshold,
            fallbacks=s.fallbacks,
            on_change=self._on_surveys,
        )
        self._target = target if target is not None else TargetLine()
        self._slide = (slide if slide is not None else SlideParameters()).clamped(s.constraints)
        self._snapshot: Optional[CurveDataSnapshot] = None
        self._unsubs: list = []
        self._running = False

    @classmethod
    def from_ini(
        cls, config_path: Union[str, Path], transport_factory: Optional[TransportFactory] = None
    ) -> "SteeringCoordinator":
        """Build the link, engine settings and operator inputs from one INI file."""
        path = str(config_path)
        LOG.info("Reading steering config from %s", path)
        channel_map = ChannelMap(WitsLinkParser(path).parse_channels())
        kwargs = {} if transport_factory is None else {"transport_factory": transport_factory}
        link = TelemetryLink(ConnectionConfig.from_ini(path), channel_map, **kwargs)
        p = CurveEngineParser(path)
        return cls(
            link,
            EngineSettings.from_ini(path),
            TargetLine(**p.parse_target_line()),
            SlideParameters(**p.parse_slide_parameters()),
        )

    # ---------------------
    # Lifecycle
    # ---------------------
    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Begin consuming samples. Returns the auto-connect task, if any."""
        if self._running:
            return None
        self._running = True
        self._unsubs.append(self.hub.subscribe(TOPIC_SAMPLE, self._on_sample))
        self.recompute()
        LOG.info("Steering coordinator started")
        return self.link.start()

    def stop(self) -> None:
        if not self._running:
            return
        for unsub in self._unsubs:
            unsub()
        self._unsubs = []
        self.debouncer.cancel()
        self.link.disconnect()
        self._running = False
        LOG.info("Steering coordinator stopped")

    def subscribe(self, topic: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        return self.hub.subscribe(topic, callback)

    # ---------------------
    # Read access
    # ---------------------
    @property
    def connection_state(self) -> ConnectionState:
        return self.link.state

    @property
    def latest_sample(self) -> Optional[TelemetrySample]:
        return self.link.latest_sample

    @property
    def surveys(self) -> Tuple[SurveyRecord, ...]:
        return self.aggregator.surveys

    @property
    def snapshot(self) -> CurveDataSnapshot:
        if self._snapshot is None:
            return self.recompute()
        return self._snapshot

    @property
    def target_line(self) -> TargetLine:
        return self._target

    @property
    def slide_parameters(self) -> SlideParameters:
        return self._slide

    # ---------------------
    # Link operations
    # ---------------------
    async def connect(self, config: Optional[ConnectionConfig] = None) -> bool:
        return await self.link.connect(config)

    def disconnect(self) -> None:
        self.link.disconnect()

    def update_config(self, **changes: Any) -> ConnectionConfig:
        return self.link.update_config(**changes)

    async def test_connection(self, timeout_ms: int = 5000) -> bool:
        return await self.link.test_connection(timeout_ms)

    def send_command(self, command: str, params: Optional[Mapping[str, Any]] = None) -> bool:
        return self.link.send_command(command, params)

    # ---------------------
    # Survey operations
    # ---------------------
    def add_survey(self, record) -> Optional[SurveyRecord]:
        return self.aggregator.add_survey(record)

    def update_survey(self, record) -> SurveyRecord:
        return self.aggregator.update_survey(record)

    def delete_survey(self, survey_id: str) -> bool:
        return self.aggregator.delete_survey(survey_id)

    # ---------------------
    # Operator inputs
    # ---------------------
    def set_manual_override(self, name: str, value: Optional[OverrideValue]) -> CurveDataSnapshot:
        if self.overrides.set(name, value):
            LOG.info("Manual override %s=%s", name, self.overrides.get(name))
        return self.recompute()

    def clear_manual_override(self, name: Optional[str] = None) -> CurveDataSnapshot:
        if self.overrides.clear(name):
            LOG.info("Manual override cleared: %s", name or "all")
        return self.recompute()

    def set_target_line(self, target: Optional[TargetLine] = None, **changes: Any) -> CurveDataSnapshot:
        new = target if target is not None else self._target
        if changes:
            new = new.merged(**changes)
        self._target = new
        LOG.info("Target line set: %s", new.to_dict())
        return self.recompute()

    def set_slide_parameters(self, **changes: Any) -> CurveDataSnapshot:
        self._slide = self._slide.merged(**changes).clamped(self.settings.constraints)
        LOG.info("Slide parameters set: %s", self._slide)
        return self.recompute()

    # ---------------------
    # Reactive recompute
    # ---------------------
    def inputs(self) -> SteeringInputs:
        sample = self.link.latest_sample
        cmap = self.link.channel_map
        sample_inc = sample_az = None
        if sample is not None:
            inc_ch, az_ch = cmap.channel("inclination"), cmap.channel("azimuth")
            sample_inc = sample.number(inc_ch) if inc_ch is not None else None
            sample_az = sample.number(az_ch) if az_ch is not None else None
        build, turn = self.aggregator.moving_average_rates()
        return SteeringInputs(
            recent_surveys=tuple(self.aggregator.recent_surveys()),
            stations=tuple(self.aggregator.stations()),
            build_rate=build,
            turn_rate=turn,
            sample_inclination=sample_inc,
            sample_azimuth=sample_az,
            is_rotating=self.debouncer.is_rotating,
            target=self._target,
            slide=self._slide,
            min_distance_threshold=self.settings.min_distance_threshold,
            fallbacks=self.settings.fallbacks,
        )

    def recompute(self) -> CurveDataSnapshot:
        snap = compute_snapshot(self.inputs(), self.overrides.values)
        if snap != self._snapshot:
            self._snapshot = snap
            self.hub.publish(TOPIC_SNAPSHOT, snap)
        return snap

    def _on_sample(self, sample: TelemetrySample) -> None:
        ch = self.link.channel_map.channel(self.settings.rotary_channel)
        if ch is not None and sample.get(ch) is not None:
            self.debouncer.update(sample.number(ch))
        self.recompute()

    def _on_rotation(self, is_rotating: bool) -> None:
        self.hub.publish(TOPIC_ROTATION, is_rotating)
        self.recompute()

    def _on_surveys(self, surveys: Tuple[SurveyRecord, ...]) -> None:
        self.hub.publish(TOPIC_SURVEYS, surveys)
        self.recompute()

    def nudge(self, tool_face: float) -> Dict[str, float]:
        """Where the bit would point after sliding the current slide distance at ``tool_face``."""
        inc, az = current_orientation(self.inputs())
        snap = self.snapshot
        return calc.nudge_projection(
            inc, az, tool_face, snap.motor_yield, self._slide.slide_distance, self.settings.gravity_toolface
        )

    def status(self) -> Dict[str, Any]:
        return {"link": self.link.status(), "surveys": len(self.aggregator), "running": self._running}
