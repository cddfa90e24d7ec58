from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

HANDSHAKE_TYPE = "ANALYTICS_CONFIG"
WILDCARD_ORIGIN = "*"

TrackFn = Callable[[dict[str, Any]], object]
PostTextFn = Callable[[str], object]
PostMessageFn = Callable[[dict[str, Any], str], object]


@dataclass(slots=True)
class HostBridges:
    """Transports the host has attached so far. Any of them may appear or vanish later."""

    track_game_session: TrackFn | None = None
    native_post_message: PostTextFn | None = None
    parent_post_message: PostMessageFn | None = None
    parent_origin: str = WILDCARD_ORIGIN


class Channel:
    name = "channel"

    def is_available(self) -> bool:
        raise NotImplementedError

    def send(self, payload: dict[str, Any]) -> None:
        """Hand ``payload`` to the transport. Raises when the transport rejects it."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class HostTrackerChannel(Channel):
    name = "host_tracker"

    def __init__(self, bridges: HostBridges) -> None:
        self.bridges = bridges

    def is_available(self) -> bool:
        return callable(self.bridges.track_game_session)

    def send(self, payload: dict[str, Any]) -> None:
        track = self.bridges.track_game_session
        if track is None:
            raise ConnectionError("host tracker detached")
        track(payload)


class MessageBridgeChannel(Channel):
    name = "message_bridge"

    def __init__(self, bridges: HostBridges) -> None:
        self.bridges = bridges

    def is_available(self) -> bool:
        return callable(self.bridges.native_post_message)

    def send(self, payload: dict[str, Any]) -> None:
        post = self.bridges.native_post_message
        if post is None:
            raise ConnectionError("message bridge detached")
        post(json.dumps(payload))


class ParentFrameChannel(Channel):
    name = "parent_frame"

    def __init__(self, bridges: HostBridges) -> None:
        self.bridges = bridges

    @property
    def target_origin(self) -> str:
        return self.bridges.parent_origin or WILDCARD_ORIGIN

    def set_target_origin(self, origin: str) -> None:
        self.bridges.parent_origin = origin

    def is_available(self) -> bool:
        return callable(self.bridges.parent_post_message)

    def send(self, payload: dict[str, Any]) -> None:
        post = self.bridges.parent_post_message
        if post is None:
            raise ConnectionError("parent frame detached")
        post(payload, self.target_origin)


class DiagnosticChannel(Channel):
    """Last resort: writes the payload to the log. Never counts as delivery."""

    name = "diagnostic"

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    def is_available(self) -> bool:
        return True

    def send(self, payload: dict[str, Any]) -> None:
        self.log.info("Payload:%s", json.dumps(payload))


def default_channels(bridges: HostBridges) -> list[Channel]:
    return [
        HostTrackerChannel(bridges),
        MessageBridgeChannel(bridges),
        ParentFrameChannel(bridges),
    ]


def parse_handshake(message: object) -> str | None:
    """Return the parent origin announced by an ANALYTICS_CONFIG message, else None."""
    if isinstance(message, (str, bytes)):
        try:
            message = json.loads(message)
        except ValueError:
            return None
    if not isinstance(message, dict):
        return None
    if message.get("type") != HANDSHAKE_TYPE:
        return None
    origin = message.get("parentOrigin")
    if not isinstance(origin, str) or not origin.strip():
        return None
    return origin.strip()


class StreamBridge:
    """Fan-out of serialized reports to connected stream subscribers.

    Plugged into ``HostBridges.native_post_message`` by the HTTP host. Posting never
    blocks: a subscriber whose buffer is full makes the post fail for that report.
    """

    def __init__(self, buffer_size: int = 64) -> None:
        self.buffer_size = buffer_size
        self._subscribers: list[queue.Queue[str]] = []
        self._lock = threading.Lock()

    def subscribe(self) -> queue.Queue[str]:
        inbox: queue.Queue[str] = queue.Queue(maxsize=self.buffer_size)
        with self._lock:
            self._subscribers.append(inbox)
        return inbox

    def unsubscribe(self, inbox: queue.Queue[str]) -> None:
        with self._lock:
            if inbox in self._subscribers:
                self._subscribers.remove(inbox)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def post_message(self, text: str) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        if not subscribers:
            raise ConnectionError("no stream subscribers connected")
        delivered = 0
        for inbox in subscribers:
            try:
                inbox.put_nowait(text)
                delivered += 1
            except queue.Full:
                logger.debug("Stream subscriber buffer full; report not queued for it")
        if delivered == 0:
            raise ConnectionError("every stream subscriber buffer is full")
