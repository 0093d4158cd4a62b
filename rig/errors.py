from dataclasses import dataclass, field
from datetime import datetime, timezone


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class LinkConnectionError(ConnectionError):
    """Transport could not be opened, or closed underneath the link."""


class WitsParseError(ValueError):
    """A single telemetry pair or record could not be parsed."""


@dataclass(frozen=True)
class LinkError:
    kind: str
    message: str
    ts: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "ts": self.ts}
