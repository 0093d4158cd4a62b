import asyncio
import json
import logging
import os
import signal
from pathlib import Path

from rig.events import TOPIC_CONNECTION_STATE, TOPIC_ERROR, TOPIC_SAMPLE
from rig.wits_link.lib.configparser import WitsLinkParser
from rig.wits_link.lib.link_config import ConnectionConfig
from rig.wits_link.lib.wits_link import TelemetryLink
from rig.wits_link.lib.wits_parser import ChannelMap

LOG = logging.getLogger("wits_link.app")

CONFIG_FILE = Path(os.getenv("RIG_CONFIG", Path(__file__).resolve().parent / "config.ini"))


async def run(config_path: Path) -> None:
    config = ConnectionConfig.from_ini(config_path)
    channel_map = ChannelMap(WitsLinkParser(str(config_path)).parse_channels())
    link = TelemetryLink(config, channel_map)

    link.hub.subscribe(TOPIC_CONNECTION_STATE, lambda s: LOG.info("state=%s", s.value))
    link.hub.subscribe(TOPIC_ERROR, lambda e: LOG.warning("error=%s", e.message))
    link.hub.subscribe(
        TOPIC_SAMPLE,
        lambda s: LOG.info(json.dumps(s.to_dict(channel_map), separators=(",", ":"))),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    if link.start() is None:
        await link.connect()
    await stop.wait()
    LOG.info("Signal received, shutting down")
    link.disconnect()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(run(CONFIG_FILE))


if __name__ == "__main__":
    main()
