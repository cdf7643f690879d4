"""
Live progress fan-out to connected observers.

The hub is transport-agnostic: a connection only needs a ``connection_id``
and a ``send(bytes) -> bool`` method, and the transport calls
``disconnect`` when the peer goes away. An optional ``close()`` lets the hub
close connections it drops on its own. Messages are JSON objects of the
form ``{"type": ..., "data": {...}}``.
"""
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set, Union, runtime_checkable

from cloudaudit.utils.clock import now_ms

logger = logging.getLogger(__name__)


@runtime_checkable
class Connection(Protocol):
    connection_id: str

    def send(self, data: bytes) -> bool:
        ...


@dataclass
class Subscriber:
    """A live connection and the channel ids it observes."""
    connection: Connection
    run_ids: Set[str] = field(default_factory=set)
    connected_at: int = field(default_factory=now_ms)
    last_seen: int = field(default_factory=now_ms)


def encode_message(message_type: str, data: Optional[Dict[str, Any]] = None) -> bytes:
    return json.dumps({"type": message_type, "data": data or {}}, default=str).encode("utf-8")


class ProgressHub:
    """
    Registry of subscribers per run (or batch) id.

    A single lock guards the registry; it is held only to mutate or snapshot
    it, never while sending.
    """

    # Alias chains longer than this indicate a cycle
    MAX_ALIAS_DEPTH = 8

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Subscriber] = {}
        # run id -> {connection id: connection}
        self._channels: Dict[str, Dict[str, Connection]] = {}
        # run id moved onto a batch id -> batch id
        self._aliases: Dict[str, str] = {}
        self._messages_sent = 0
        self._send_failures = 0

    # Connection lifecycle

    def register(self, connection: Connection) -> Subscriber:
        """Track a new connection and greet it."""
        with self._lock:
            subscriber = self._ensure_subscriber(connection)
        self._send(connection, encode_message("connection_established", {
            "connection_id": connection.connection_id,
            "timestamp": now_ms(),
        }))
        logger.info(f"Progress connection registered: {connection.connection_id}")
        return subscriber

    def _ensure_subscriber(self, connection: Connection) -> Subscriber:
        subscriber = self._subscribers.get(connection.connection_id)
        if subscriber is None:
            subscriber = Subscriber(connection=connection)
            self._subscribers[connection.connection_id] = subscriber
        return subscriber

    def disconnect(self, connection: Union[Connection, str]) -> List[str]:
        """
        Remove a connection from every channel it observes.

        Channels left without subscribers are dropped. Returns the channel
        ids the connection was removed from.
        """
        connection_id = connection if isinstance(connection, str) else connection.connection_id
        with self._lock:
            subscriber = self._subscribers.pop(connection_id, None)
            if subscriber is None:
                return []
            removed = sorted(subscriber.run_ids)
            for run_id in removed:
                self._remove_from_channel(run_id, connection_id)
        logger.info(f"Progress connection {connection_id} disconnected; left {len(removed)} channel(s)")
        return removed

    def _remove_from_channel(self, run_id: str, connection_id: str) -> None:
        members = self._channels.get(run_id)
        if members is None:
            return
        members.pop(connection_id, None)
        if not members:
            del self._channels[run_id]

    def touch(self, connection: Connection) -> None:
        with self._lock:
            subscriber = self._subscribers.get(connection.connection_id)
            if subscriber is not None:
                subscriber.last_seen = now_ms()

    def sweep_stale(self, max_idle_seconds: int) -> List[str]:
        """
        Disconnect every connection silent for longer than ``max_idle_seconds``.

        Connections that define ``close()`` are also closed, so the transport
        releases the socket the hub no longer tracks.
        """
        cutoff = now_ms() - max_idle_seconds * 1000
        with self._lock:
            stale = [s.connection for s in self._subscribers.values() if s.last_seen < cutoff]
        dropped = []
        for connection in stale:
            self.disconnect(connection)
            self._close(connection)
            dropped.append(connection.connection_id)
        if dropped:
            logger.info(f"Dropped {len(dropped)} stale progress connection(s)")
        return dropped

    # Subscriptions

    def _resolve(self, run_id: str) -> str:
        seen = 0
        while run_id in self._aliases and seen < self.MAX_ALIAS_DEPTH:
            run_id = self._aliases[run_id]
            seen += 1
        return run_id

    def subscribe(self, connection: Connection, run_id: str) -> bool:
        """
        Subscribe ``connection`` to ``run_id``.

        Idempotent; the caller is acknowledged either way. A run id already
        moved onto a batch subscribes to the batch instead.

        Returns:
            True if a new subscription was added
        """
        if not run_id:
            self.send_error(connection, "MISSING_INSPECTION_ID", "Inspection ID is required for subscription")
            return False

        with self._lock:
            subscriber = self._ensure_subscriber(connection)
            subscriber.last_seen = now_ms()
            target = self._resolve(run_id)
            members = self._channels.setdefault(target, {})
            already = connection.connection_id in members
            members[connection.connection_id] = connection
            subscriber.run_ids.add(target)
            count = len(members)

        data = {
            "inspection_id": target,
            "timestamp": now_ms(),
            "subscriber_count": count,
            "already_subscribed": already,
        }
        if target != run_id:
            data["moved_from"] = run_id
        self._send(connection, encode_message("subscription_confirmed", data))
        if not already:
            logger.info(f"Connection {connection.connection_id} subscribed to {target} ({count} subscriber(s))")
        return not already

    def unsubscribe(self, connection: Connection, run_id: str) -> bool:
        """Returns True if a subscription was removed."""
        if not run_id:
            return False
        with self._lock:
            target = self._resolve(run_id)
            subscriber = self._subscribers.get(connection.connection_id)
            removed = False
            if subscriber is not None and target in subscriber.run_ids:
                subscriber.run_ids.discard(target)
                removed = True
            members = self._channels.get(target)
            if members is not None and connection.connection_id in members:
                removed = True
            self._remove_from_channel(target, connection.connection_id)

        self._send(connection, encode_message("unsubscription_confirmed", {
            "inspection_id": target,
            "timestamp": now_ms(),
        }))
        return removed

    def move_subscribers(self, from_id: str, to_batch_id: str) -> int:
        """
        Move every subscriber of ``from_id`` onto ``to_batch_id``.

        Connections already on the batch are not duplicated. Afterwards
        publishing to ``from_id`` reaches nobody and later subscriptions to
        it land on the batch.

        Returns:
            Number of connections newly added to the batch
        """
        if from_id == to_batch_id:
            return 0
        with self._lock:
            self._aliases[from_id] = to_batch_id
            moved_from = self._channels.pop(from_id, {})
            if not moved_from:
                return 0
            batch_members = self._channels.setdefault(to_batch_id, {})
            added = []
            for connection_id, connection in moved_from.items():
                if connection_id not in batch_members:
                    batch_members[connection_id] = connection
                    added.append(connection)
                subscriber = self._subscribers.get(connection_id)
                if subscriber is not None:
                    subscriber.run_ids.discard(from_id)
                    subscriber.run_ids.add(to_batch_id)
            notify = list(moved_from.values())

        message = encode_message("subscription_moved", {
            "from_inspection_id": from_id,
            "to_batch_id": to_batch_id,
            "timestamp": now_ms(),
            "message": "Your subscription has been moved to batch updates",
        })
        for connection in notify:
            self._send(connection, message)
        logger.info(f"Moved {len(added)} subscriber(s) from {from_id} to batch {to_batch_id}")
        return len(added)

    def force_move_to_batch(self, batch_id: str, run_ids: List[str]) -> int:
        """Move subscribers of every id in ``run_ids`` onto ``batch_id``."""
        return sum(self.move_subscribers(run_id, batch_id) for run_id in run_ids)

    def cleanup_batch(self, batch_id: str, run_ids: List[str]) -> None:
        """Forget a finished batch: its channel, its member run channels and aliases."""
        ids = [batch_id, *run_ids]
        with self._lock:
            for channel_id in ids:
                members = self._channels.pop(channel_id, {})
                for connection_id in members:
                    subscriber = self._subscribers.get(connection_id)
                    if subscriber is not None:
                        subscriber.run_ids.discard(channel_id)
                self._aliases.pop(channel_id, None)
        logger.debug(f"Cleaned up batch {batch_id} and {len(run_ids)} run channel(s)")

    # Publishing

    def publish(self, channel_id: str, event: Dict[str, Any], /) -> int:
        """
        Send ``event`` to every subscriber of ``channel_id`` (a run or batch id).

        No subscribers is a no-op. ``event`` must carry a ``type``; everything
        else becomes the message data. Returns the number of successful sends.
        The channel is positional-only so events may carry their own ``run_id``.
        """
        with self._lock:
            members = self._channels.get(channel_id)
            if not members:
                return 0
            targets = list(members.values())

        event = dict(event)
        message_type = event.pop("type", "progress_update")
        event.setdefault("inspection_id", channel_id)
        event.setdefault("timestamp", now_ms())
        payload = encode_message(message_type, event)

        delivered = 0
        for connection in targets:
            if self._send(connection, payload):
                delivered += 1
        return delivered

    def publish_progress(self, channel_id: str, progress: Dict[str, Any], /) -> int:
        return self.publish(channel_id, {"type": "progress_update", "progress": progress})

    def publish_status_change(self, channel_id: str, status: str, /, **data) -> int:
        return self.publish(channel_id, {"type": "status_change", "status": status, **data})

    def publish_completion(self, channel_id: str, /, **data) -> int:
        return self.publish(channel_id, {"type": "inspection_complete", "force_refresh": True, **data})

    def _send(self, connection: Connection, payload: bytes) -> bool:
        try:
            ok = bool(connection.send(payload))
        except Exception as e:
            # A broken peer must not affect other subscribers or the run
            logger.warning(f"Send to connection {connection.connection_id} failed: {e}")
            ok = False
        with self._lock:
            if ok:
                self._messages_sent += 1
            else:
                self._send_failures += 1
        return ok

    def _close(self, connection: Connection) -> None:
        close = getattr(connection, "close", None)
        if not callable(close):
            return
        try:
            close()
        except Exception as e:
            logger.warning(f"Closing connection {connection.connection_id} failed: {e}")

    def send_error(self, connection: Connection, code: str, message: str) -> None:
        self._send(connection, encode_message("error", {"code": code, "message": message}))

    # Transport protocol

    def handle_message(self, connection: Connection, raw: Union[bytes, str]) -> None:
        """
        Handle one client message.

        Supported types: ``subscribe_inspection`` and ``unsubscribe_inspection``
        (payload ``{"inspection_id": ...}``) and ``ping``.
        """
        self.touch(connection)
        try:
            message = json.loads(raw)
            if not isinstance(message, dict):
                raise ValueError("message must be a JSON object")
        except (ValueError, TypeError) as e:
            logger.warning(f"Unparseable message from {connection.connection_id}: {e}")
            self.send_error(connection, "MESSAGE_PARSE_ERROR", "Failed to parse message")
            return

        message_type = message.get("type")
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        inspection_id = payload.get("inspection_id") or payload.get("inspectionId")

        if message_type == "subscribe_inspection":
            self.subscribe(connection, inspection_id)
        elif message_type == "unsubscribe_inspection":
            self.unsubscribe(connection, inspection_id)
        elif message_type == "ping":
            self._send(connection, encode_message("pong", {"timestamp": now_ms()}))
        else:
            logger.warning(f"Unknown message type {message_type!r} from {connection.connection_id}")
            self.send_error(connection, "UNKNOWN_MESSAGE_TYPE", f"Unknown message type: {message_type}")

    # Introspection

    def subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._channels.get(run_id, {}))

    def subscriptions_of(self, connection: Union[Connection, str]) -> Set[str]:
        connection_id = connection if isinstance(connection, str) else connection.connection_id
        with self._lock:
            subscriber = self._subscribers.get(connection_id)
            return set(subscriber.run_ids) if subscriber else set()

    def has_channel(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._channels

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "connections": len(self._subscribers),
                "channels": len(self._channels),
                "subscriptions": sum(len(m) for m in self._channels.values()),
                "aliases": len(self._aliases),
                "messages_sent": self._messages_sent,
                "send_failures": self._send_failures,
            }
