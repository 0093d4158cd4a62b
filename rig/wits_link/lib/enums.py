from enum import Enum


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING   = "connecting"
    CONNECTED    = "connected"
    RECEIVING    = "receiving"
    RECONNECTING = "reconnecting"

    @property
    def is_open(self) -> bool:
        return self in (ConnectionState.CONNECTED, ConnectionState.RECEIVING)


class Protocol(Enum):
    TCP    = "tcp"
    UDP    = "udp"
    SERIAL = "serial"
    WS     = "ws"

    @classmethod
    def parse(cls, raw: str) -> "Protocol":
        key = str(raw).strip().lower()
        aliases = {"websocket": "ws", "wss": "ws", "streaming-socket": "ws"}
        try:
            return cls(aliases.get(key, key))
        except ValueError as exc:
            raise ValueError("protocol must be one of tcp, udp, serial, ws") from exc


class WitsLevel(Enum):
    LEVEL_0 = 0
    LEVEL_1 = 1
    LEVEL_2 = 2


class FrameType(Enum):
    PING       = "ping"
    PONG       = "pong"
    DISCONNECT = "disconnect"
