import asyncio
import logging
import os
import signal
from pathlib import Path

from rig.curve_engine.lib.coordinator import SteeringCoordinator
from rig.curve_engine.lib.mqtt_bridge import SteeringPublisher
from rig.events import TOPIC_CONNECTION_STATE, TOPIC_ERROR, TOPIC_ROTATION

LOG = logging.getLogger("curve_engine.app")

CONFIG_FILE = Path(os.getenv("RIG_CONFIG", Path(__file__).resolve().parent / "config.ini"))


async def run(config_path: Path) -> None:
    coordinator = SteeringCoordinator.from_ini(config_path)
    publisher = SteeringPublisher(coordinator, str(config_path))

    coordinator.subscribe(TOPIC_CONNECTION_STATE, lambda s: LOG.info("link state=%s", s.value))
    coordinator.subscribe(TOPIC_ERROR, lambda e: LOG.warning("link error (%s): %s", e.kind, e.message))
    coordinator.subscribe(TOPIC_ROTATION, lambda r: LOG.info("rotating=%s", r))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    publisher.start(loop)
    if coordinator.start() is None:
        LOG.info("auto_connect disabled, waiting for a CONNECT command on %s", publisher.control_topic)
    await stop.wait()
    LOG.info("Signal received, shutting down")
    coordinator.stop()
    publisher.stop()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(run(CONFIG_FILE))


if __name__ == "__main__":
    main()
