from __future__ import annotations

from typing import Any

from libs.core import logging as core_logging
from libs.core.events import REFRESH_EVENT, validate_event_name
from libs.core.realtime import EventBroadcaster, SubscriptionRegistry, user_key
from libs.core.snapshots import SnapshotBuilder

LOGGER = core_logging.get_logger("notify")


class NotifyTrigger:
    """Push a fresh snapshot to a user's sinks after a committed mutation."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        builder: SnapshotBuilder,
        broadcaster: EventBroadcaster,
    ) -> None:
        self._registry = registry
        self._builder = builder
        self._broadcaster = broadcaster

    def notify(self, user_id: Any, event_name: str = REFRESH_EVENT) -> int:
        key = user_key(user_id)
        name = validate_event_name(event_name)
        if not self._registry.has_subscribers(key):
            return 0
        snapshot = self._builder.build(key)
        delivered = self._broadcaster.publish(key, name, snapshot.model_dump(mode="json"))
        LOGGER.info("notify_delivered", user_id=key, event_name=name, delivered=delivered)
        return self._registry.count(key)

    def notify_quietly(self, user_id: Any, event_name: str = REFRESH_EVENT) -> int:
        try:
            return self.notify(user_id, event_name)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("notify_failed", user_id=str(user_id), event_name=event_name, error=str(exc))
            return 0
