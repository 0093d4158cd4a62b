import asyncio
import configparser
import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import paho.mqtt.client as mqtt
from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError

from rig.curve_engine.lib.coordinator import SteeringCoordinator
from rig.curve_engine.lib.models import CurveDataSnapshot
from rig.errors import LinkError, now_iso
from rig.events import TOPIC_CONNECTION_STATE, TOPIC_ERROR, TOPIC_SAMPLE, TOPIC_SNAPSHOT
from rig.wits_link.lib.enums import ConnectionState
from rig.wits_link.lib.wits_parser import TelemetrySample

LOG = logging.getLogger("curve_engine.bridge")

_TARGET_KEYS = {
    "targetTVD": "target_tvd",
    "targetVS": "target_vs",
    "targetDistance": "target_distance",
    "targetInc": "target_inclination",
    "targetAz": "target_azimuth",
}


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", str(name)).lower()


def _object_field(data: Mapping[str, Any], key: str, ctrl: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{ctrl} expects '{key}' to be an object")
    return value


def _default_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)


class SteeringPublisher:
    """
    MQTT face of a SteeringCoordinator: publishes snapshots, link state and
    samples, and turns JSON messages on the control topic into coordinator
    calls. paho's network thread only ever schedules work on the asyncio loop.
    """

    def __init__(
        self,
        coordinator: SteeringCoordinator,
        config_path: str = "./rig/curve_engine/config.ini",
        client_factory: Callable[[str], Any] = _default_client,
    ):
        self.coordinator = coordinator
        self.config_path = Path(config_path)
        self._client_factory = client_factory

        self.broker_host: str = "localhost"
        self.broker_port: int = 1883
        self.client_id: str = "steering"
        self.retain_status: bool = True
        self.topic: str = "steering/curve"
        self.link_topic: str = "steering/link"
        self.sample_topic: str = "steering/sample"
        self.control_topic: str = "steering/control"
        self.status_topic: str = "steering/status"
        self.qos: int = 0
        self.publish_samples: bool = True
        self.validate_schema: bool = False
        self.schema_path: Optional[Path] = None
        self._validators: Dict[str, Draft7Validator] = {}
        self.log_messages: bool = False

        self.client = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubs: list = []

        self._load_mqtt_config()

    def _load_mqtt_config(self) -> None:
        cp = configparser.ConfigParser(inline_comment_prefixes=(";",))
        cp.read(self.config_path)
        if not cp.has_section("mqtt"):
            LOG.debug("No [mqtt] section in %s, using defaults", self.config_path)
            return
        sec = cp["mqtt"]

        self.broker_host = sec.get("host", "localhost")
        try:
            self.broker_port = int(sec.get("port", "1883"))
        except ValueError:
            LOG.warning("Invalid MQTT port %r, using 1883", sec.get("port"))
            self.broker_port = 1883
        self.client_id = sec.get("client_id", "steering")
        self.retain_status = sec.getboolean("retain_status", fallback=True)
        self.topic = sec.get("topic", "steering/curve")
        self.link_topic = sec.get("link_topic", "steering/link")
        self.sample_topic = sec.get("sample_topic", "steering/sample")
        self.control_topic = sec.get("control_topic", "steering/control")
        self.status_topic = sec.get("status_topic", "steering/status")
        try:
            self.qos = int(sec.get("qos", "0"))
        except ValueError:
            self.qos = 0
        self.publish_samples = sec.getboolean("publish_samples", fallback=True)

        self.validate_schema = sec.getboolean("validate_schema", fallback=False)
        schema_path_cfg = sec.get("schema_path", "").strip()
        if schema_path_cfg:
            sp = Path(schema_path_cfg)
            if not sp.is_absolute():
                sp = (self.config_path.parent / sp).resolve()
            self.schema_path = sp
        self.log_messages = sec.getboolean("log_messages", fallback=False)

        LOG.debug(
            "MQTT config loaded: host=%s port=%s client_id=%s topic=%s qos=%s validate_schema=%s schema_path=%s",
            self.broker_host,
            self.broker_port,
            self.client_id,
            self.topic,
            self.qos,
            self.validate_schema,
            str(self.schema_path) if self.schema_path else None,
        )

    def _load_schema(self) -> None:
        if not self.schema_path:
            LOG.error("validate_schema requested but schema_path not provided in INI")
            self.validate_schema = False
            return
        try:
            with self.schema_path.open("r", encoding="utf-8") as fh:
                top_spec = json.load(fh)
        except (OSError, ValueError) as e:
            LOG.error("Failed to open schema file '%s': %s. Disabling schema validation.", self.schema_path, e)
            self.validate_schema = False
            return

        topics = top_spec.get("topics", {})
        for topic in (self.topic, self.link_topic, self.sample_topic):
            schema = topics.get(topic, {}).get("schema")
            if not schema:
                LOG.warning("No schema for topic %s in %s", topic, self.schema_path)
                continue
            self._validators[topic] = Draft7Validator(schema)
            LOG.info("Loaded schema for topic %s from %s", topic, self.schema_path)

    # ---------------------
    # MQTT client
    # ---------------------
    def _setup_mqtt_client(self) -> None:
        self.client = self._client_factory(self.client_id)
        lwt_payload = json.dumps({"status": "offline", "ts": now_iso()})
        self.client.will_set(self.status_topic, payload=lwt_payload, qos=1, retain=self.retain_status)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    def _publish_status(self, status: str) -> None:
        if not self.retain_status or self.client is None:
            return
        self.client.publish(self.status_topic, json.dumps({"status": status, "ts": now_iso()}), qos=1, retain=True)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            LOG.info("Connected to broker %s:%s", self.broker_host, self.broker_port)
            self._publish_status("online")
            client.subscribe(self.control_topic)
        else:
            LOG.error("MQTT connect failed with rc=%s", reason_code)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        LOG.warning("Disconnected from broker (rc=%s)", reason_code)

    def _on_message(self, client, userdata, msg):
        if msg.topic != self.control_topic:
            return
        try:
            data = json.loads(msg.payload.decode())
        except (UnicodeDecodeError, ValueError):
            LOG.warning("Ignoring malformed control message on %s", msg.topic)
            return
        if not isinstance(data, dict):
            LOG.warning("Ignoring control message that is not a JSON object")
            return
        if self._loop is None:
            LOG.warning("Control message received before start(), dropped")
            return
        self._loop.call_soon_threadsafe(self.handle_command, data)

    # ---------------------
    # Commands
    # ---------------------
    def handle_command(self, data: Mapping[str, Any]) -> bool:
        """Apply one control message. Returns False when it was not understood or rejected."""
        ctrl = str(data.get("control", "")).upper()
        handler = getattr(self, f"_cmd_{ctrl.lower()}", None) if ctrl else None
        if handler is None:
            LOG.warning("Unknown control command %r", ctrl)
            return False
        try:
            handler(data)
        except (TypeError, ValueError) as e:
            LOG.warning("Control command %s rejected: %s", ctrl, e)
            return False
        LOG.debug("Control command %s applied", ctrl)
        return True

    def _cmd_add_survey(self, data: Mapping[str, Any]) -> None:
        survey = data.get("survey")
        if not isinstance(survey, Mapping) or not survey:
            raise ValueError("ADD_SURVEY needs a survey object")
        self.coordinator.add_survey(survey)

    def _cmd_update_survey(self, data: Mapping[str, Any]) -> None:
        survey = data.get("survey")
        if not isinstance(survey, Mapping) or not survey.get("id"):
            raise ValueError("UPDATE_SURVEY needs a survey with an id")
        self.coordinator.update_survey(survey)

    def _cmd_delete_survey(self, data: Mapping[str, Any]) -> None:
        sid = data.get("id")
        if not sid:
            raise ValueError("DELETE_SURVEY needs an id")
        if not self.coordinator.delete_survey(str(sid)):
            LOG.info("Survey %s not found, nothing deleted", sid)

    def _cmd_set_override(self, data: Mapping[str, Any]) -> None:
        field = data.get("field")
        if not field:
            raise ValueError("SET_OVERRIDE needs a field")
        self.coordinator.set_manual_override(_snake(field), data.get("value"))

    def _cmd_clear_override(self, data: Mapping[str, Any]) -> None:
        field = data.get("field")
        self.coordinator.clear_manual_override(_snake(field) if field else None)

    def _cmd_set_target_line(self, data: Mapping[str, Any]) -> None:
        raw = _object_field(data, "target", "SET_TARGET_LINE")
        changes = {_TARGET_KEYS.get(k, _snake(k)): v for k, v in raw.items()}
        self.coordinator.set_target_line(**changes)

    def _cmd_set_slide(self, data: Mapping[str, Any]) -> None:
        raw = _object_field(data, "slide", "SET_SLIDE")
        self.coordinator.set_slide_parameters(**{_snake(k): v for k, v in raw.items()})

    def _cmd_connect(self, data: Mapping[str, Any]) -> None:
        config = _object_field(data, "config", "CONNECT")
        if config:
            self.coordinator.update_config(**{_snake(k): v for k, v in config.items()})
        loop = self._loop if self._loop is not None else asyncio.get_running_loop()
        loop.create_task(self.coordinator.connect())

    def _cmd_disconnect(self, data: Mapping[str, Any]) -> None:
        self.coordinator.disconnect()

    def _cmd_send_command(self, data: Mapping[str, Any]) -> None:
        command = data.get("command")
        if not command:
            raise ValueError("SEND_COMMAND needs a command")
        self.coordinator.send_command(str(command), data.get("params"))

    # ---------------------
    # Outgoing
    # ---------------------
    def publish(self, topic: str, payload: Dict[str, Any]) -> bool:
        validator = self._validators.get(topic) if self.validate_schema else None
        if validator is not None:
            try:
                validator.validate(payload)
            except ValidationError as ve:
                LOG.warning("Outgoing payload for %s failed schema validation: %s", topic, ve.message)
                return False
        if self.log_messages:
            LOG.info(json.dumps({"topic": topic, "ts_local": now_iso(), "payload": payload}, separators=(",", ":")))
        if self.client is None:
            return False
        self.client.publish(topic, json.dumps(payload, separators=(",", ":")), qos=self.qos, retain=False)
        return True

    def _publish_snapshot(self, snapshot: CurveDataSnapshot) -> None:
        payload = snapshot.to_dict()
        payload["ts"] = now_iso()
        self.publish(self.topic, payload)

    def _publish_state(self, state: ConnectionState) -> None:
        payload = self.coordinator.link.status()
        payload["state"] = state.value
        payload["ts"] = now_iso()
        self.publish(self.link_topic, payload)

    def _publish_error(self, error: LinkError) -> None:
        payload = {"state": self.coordinator.connection_state.value, "ts": error.ts, "error": error.to_dict()}
        self.publish(self.link_topic, payload)

    def _publish_sample(self, sample: TelemetrySample) -> None:
        self.publish(self.sample_topic, sample.to_dict(self.coordinator.link.channel_map))

    # ---------------------
    # Lifecycle
    # ---------------------
    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Connect to the broker and start forwarding. Call from inside the event loop."""
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        if self.validate_schema and not self._validators:
            self._load_schema()

        initial = self.coordinator.snapshot
        hub = self.coordinator.hub
        self._unsubs = [
            hub.subscribe(TOPIC_SNAPSHOT, self._publish_snapshot),
            hub.subscribe(TOPIC_CONNECTION_STATE, self._publish_state),
            hub.subscribe(TOPIC_ERROR, self._publish_error),
        ]
        if self.publish_samples:
            self._unsubs.append(hub.subscribe(TOPIC_SAMPLE, self._publish_sample))

        self._setup_mqtt_client()
        LOG.info("Connecting to MQTT broker %s:%d", self.broker_host, self.broker_port)
        self.client.connect(self.broker_host, self.broker_port, keepalive=60)
        self.client.loop_start()
        self._publish_status("online")
        self._publish_snapshot(initial)

    def stop(self) -> None:
        LOG.info("Stopping steering MQTT publisher")
        for unsub in self._unsubs:
            unsub()
        self._unsubs = []
        if self.client is None:
            return
        self._publish_status("offline")
        self.client.loop_stop()
        self.client.disconnect()
        self.client = None
