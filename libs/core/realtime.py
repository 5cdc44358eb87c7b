from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional, Set, Tuple

from libs.core import logging as core_logging
from libs.core.errors import ValidationError
from libs.core.events import HEARTBEAT_MESSAGE, format_event

LOGGER = core_logging.get_logger("realtime")

DEFAULT_HEARTBEAT_S = 25.0
DEFAULT_MAX_PENDING = 100


class SinkClosedError(RuntimeError):
    pass


def user_key(user_id: Any) -> str:
    key = str(user_id).strip() if user_id is not None else ""
    if not key:
        raise ValidationError("userId required")
    return key


class Sink:
    """A live push channel for one client session of one user."""

    user_id: str

    def write(self, message: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class QueueSink(Sink):
    """Sink backed by an ``asyncio.Queue`` owned by the streaming response's loop.

    ``write`` may be called from any thread; off-loop writes are marshalled
    with ``call_soon_threadsafe`` so per-sink order follows call order. A
    full backlog or a closed loop counts as a write failure.
    """

    def __init__(
        self,
        user_id: Any,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self.user_id = user_key(user_id)
        self.connected_at = datetime.utcnow()
        self._loop = loop or asyncio.get_running_loop()
        self._max_pending = max(1, max_pending)
        # One spare slot so the close sentinel always fits.
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=self._max_pending + 1)
        self._closed = False
        self._close_lock = threading.Lock()
        self._heartbeat: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def heartbeat_active(self) -> bool:
        return self._heartbeat is not None and not self._heartbeat.done()

    def write(self, message: str) -> None:
        if self._closed:
            raise SinkClosedError("sink_closed")
        if self._queue.qsize() >= self._max_pending:
            self.close()
            raise SinkClosedError("sink_backlog_full")
        if self._on_loop_thread():
            self._enqueue(message)
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue, message)
        except RuntimeError as exc:
            self.close()
            raise SinkClosedError("sink_loop_closed") from exc

    def start_heartbeat(self, interval_s: float = DEFAULT_HEARTBEAT_S) -> None:
        if self._heartbeat is not None or self._closed:
            return
        self._heartbeat = self._loop.create_task(self._heartbeat_loop(interval_s))

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        if self._on_loop_thread():
            self._shutdown()
            return
        try:
            self._loop.call_soon_threadsafe(self._shutdown)
        except RuntimeError:
            # Loop already gone; nothing left to wake up.
            self._heartbeat = None

    async def messages(self) -> AsyncIterator[str]:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            yield message

    def _enqueue(self, message: str) -> None:
        # Writes accepted before close() was called still land ahead of the sentinel.
        if self._queue.qsize() >= self._max_pending:
            if not self._closed:
                LOGGER.warning("sink_backlog_full", user_id=self.user_id)
                self.close()
            return
        self._queue.put_nowait(message)

    def _shutdown(self) -> None:
        heartbeat, self._heartbeat = self._heartbeat, None
        if heartbeat is not None:
            heartbeat.cancel()
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def _heartbeat_loop(self, interval_s: float) -> None:
        while not self._closed:
            await asyncio.sleep(interval_s)
            try:
                self.write(HEARTBEAT_MESSAGE)
            except SinkClosedError:
                return

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False


@dataclass(frozen=True)
class RegistryStats:
    connected_users: int
    connected_sinks: int


class SubscriptionRegistry:
    """Process-wide map of user id -> live sinks.

    A single lock guards the map. Every critical section is a constant-time
    set operation, and callers arrive both from worker threads (notify) and
    from the event loop (stream open/close), which a thread lock covers.
    """

    def __init__(self) -> None:
        self._sinks: Dict[str, Set[Sink]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: Any, sink: Sink) -> None:
        key = user_key(user_id)
        if sink.user_id != key:
            raise ValueError(f"sink_user_mismatch:{sink.user_id}!={key}")
        with self._lock:
            self._sinks.setdefault(key, set()).add(sink)
        LOGGER.info("sink_subscribed", user_id=key)

    def unsubscribe(self, user_id: Any, sink: Sink) -> bool:
        key = user_key(user_id)
        with self._lock:
            sinks = self._sinks.get(key)
            if not sinks or sink not in sinks:
                return False
            sinks.discard(sink)
            if not sinks:
                del self._sinks[key]
        LOGGER.info("sink_unsubscribed", user_id=key)
        return True

    def sinks_for(self, user_id: Any) -> Tuple[Sink, ...]:
        key = user_key(user_id)
        with self._lock:
            return tuple(self._sinks.get(key, ()))

    def count(self, user_id: Any) -> int:
        key = user_key(user_id)
        with self._lock:
            return len(self._sinks.get(key, ()))

    def has_subscribers(self, user_id: Any) -> bool:
        return self.count(user_id) > 0

    def stats(self) -> RegistryStats:
        with self._lock:
            return RegistryStats(
                connected_users=len(self._sinks),
                connected_sinks=sum(len(sinks) for sinks in self._sinks.values()),
            )


class EventBroadcaster:
    """Best-effort fan-out of one named event to every sink of a user."""

    def __init__(self, registry: SubscriptionRegistry, stripes: int = 64) -> None:
        self._registry = registry
        # Publishes for one user are serialized so each sink sees them in call order.
        self._stripes = [threading.Lock() for _ in range(max(1, stripes))]

    def publish(self, user_id: Any, event_name: str, payload: Any) -> int:
        key = user_key(user_id)
        message = format_event(event_name, payload)
        delivered = 0
        with self._stripes[hash(key) % len(self._stripes)]:
            for sink in self._registry.sinks_for(key):
                try:
                    sink.write(message)
                except Exception as exc:  # noqa: BLE001
                    LOGGER.warning("sink_dropped", user_id=key, event_name=event_name, error=str(exc))
                    self._registry.unsubscribe(key, sink)
                    _close_quietly(sink)
                    continue
                delivered += 1
        return delivered


def _close_quietly(sink: Sink) -> None:
    try:
        sink.close()
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning("sink_close_failed", user_id=getattr(sink, "user_id", None), error=str(exc))
