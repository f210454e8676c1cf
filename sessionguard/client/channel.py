from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Protocol

from sessionguard.logging import get_logger

logger = get_logger(__name__)

LEADER_PING = "LEADER_PING"
LEADER_ACK = "LEADER_ACK"
REFRESH_SUCCESS = "REFRESH_SUCCESS"
REFRESH_FAILED = "REFRESH_FAILED"

MESSAGE_TYPES = frozenset({LEADER_PING, LEADER_ACK, REFRESH_SUCCESS, REFRESH_FAILED})


@dataclass(frozen=True)
class CrossTabMessage:
    type: str
    sender: str
    expires_in: Optional[int] = None
    timestamp: Optional[float] = None
    claimed_at: Optional[float] = None

    def __post_init__(self) -> None:
        if self.type not in MESSAGE_TYPES:
            raise ValueError(f"unknown cross-tab message type: {self.type}")

    def to_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "CrossTabMessage":
        return cls(
            type=data["type"],
            sender=data["sender"],
            expires_in=data.get("expires_in"),
            timestamp=data.get("timestamp"),
            claimed_at=data.get("claimed_at"),
        )


MessageHandler = Callable[[CrossTabMessage], None]


class TabChannel(Protocol):
    """One tab's endpoint on a named broadcast channel."""

    tab_id: str

    def send(self, message: CrossTabMessage) -> None: ...

    def on_message(self, handler: MessageHandler) -> None: ...

    def close(self) -> None: ...


class _BusEndpoint:
    def __init__(self, bus: "InMemoryBroadcastBus", tab_id: str) -> None:
        self.tab_id = tab_id
        self._bus = bus
        self._handlers: List[MessageHandler] = []
        self.closed = False

    def send(self, message: CrossTabMessage) -> None:
        if self.closed:
            return
        self._bus._publish(self, message.to_dict())

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def close(self) -> None:
        self.closed = True
        self._handlers.clear()
        self._bus._detach(self)

    def _deliver(self, payload: dict) -> None:
        if self.closed:
            return
        message = CrossTabMessage.from_dict(payload)
        for handler in list(self._handlers):
            try:
                handler(message)
            except Exception as exc:
                logger.error(
                    "channel_handler_failed",
                    tab_id=self.tab_id,
                    message_type=message.type,
                    error=str(exc),
                )


class InMemoryBroadcastBus:
    """Process-local stand-in for a browser BroadcastChannel.

    Messages cross the bus as plain dicts, are delivered on a later loop
    iteration, and never reach the endpoint that sent them.
    """

    _registry: Dict[str, "InMemoryBroadcastBus"] = {}

    def __init__(self, name: str) -> None:
        self.name = name
        self._endpoints: List[_BusEndpoint] = []

    @classmethod
    def named(cls, name: str) -> "InMemoryBroadcastBus":
        """Return the shared bus for ``name``, creating it on first use."""
        bus = cls._registry.get(name)
        if bus is None:
            bus = cls._registry[name] = cls(name)
        return bus

    @classmethod
    def reset_registry(cls) -> None:
        cls._registry.clear()

    def open(self, tab_id: Optional[str] = None) -> _BusEndpoint:
        endpoint = _BusEndpoint(self, tab_id or uuid.uuid4().hex)
        self._endpoints.append(endpoint)
        return endpoint

    @property
    def endpoints(self) -> List[_BusEndpoint]:
        return list(self._endpoints)

    def _detach(self, endpoint: _BusEndpoint) -> None:
        if endpoint in self._endpoints:
            self._endpoints.remove(endpoint)

    def _publish(self, sender: _BusEndpoint, payload: dict) -> None:
        loop = asyncio.get_running_loop()
        for endpoint in list(self._endpoints):
            if endpoint is sender:
                continue
            # Fresh dict per receiver, like structured clone
            loop.call_soon(endpoint._deliver, dict(payload))
