import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

LOG = logging.getLogger("rig.events")

Callback = Callable[[Any], None]

TOPIC_CONNECTION_STATE = "connection_state"
TOPIC_SAMPLE = "sample"
TOPIC_ERROR = "error"
TOPIC_SNAPSHOT = "snapshot"
TOPIC_SURVEYS = "surveys"
TOPIC_ROTATION = "rotation"


class EventHub:
    """In-process publish/subscribe keyed by topic name.

    Subscribers run synchronously in registration order. A subscriber that
    raises is logged and the remaining subscribers still run.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[Callback]] = defaultdict(list)

    def subscribe(self, topic: str, callback: Callback) -> Callable[[], None]:
        self._subs[topic].append(callback)

        def _unsubscribe() -> None:
            try:
                self._subs[topic].remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def publish(self, topic: str, payload: Any = None) -> int:
        delivered = 0
        for cb in list(self._subs.get(topic, ())):
            try:
                cb(payload)
                delivered += 1
            except Exception:
                LOG.exception("Subscriber for topic %s failed", topic)
        return delivered

    def subscriber_count(self, topic: str) -> int:
        return len(self._subs.get(topic, ()))
