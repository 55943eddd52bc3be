import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class MessageReceived:
    """Inbound relay message delivered to a node."""
    subscription_id: str
    payload: Any
    relay_url: Optional[str] = None


@dataclass
class TransportClosed:
    """The transport lost its last open relay connection."""
    reason: str = ""
    relay_urls: List[str] = field(default_factory=list)


@dataclass
class NodeClosed:
    node: Any
    reason: str = ""


@dataclass
class NodeReady:
    node: Any


class EventChannel(Generic[T]):
    """Single-event fan-out with explicit subscribe/unsubscribe.

    Handlers are called synchronously in subscription order. A handler that
    raises is logged and does not prevent the remaining handlers from running.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._handlers: List[Callable[[T], None]] = []

    def subscribe(self, handler: Callable[[T], None]):
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: Callable[[T], None]) -> bool:
        try:
            self._handlers.remove(handler)
        except ValueError:
            return False
        return True

    def emit(self, payload: T) -> int:
        delivered = 0
        for handler in list(self._handlers):
            try:
                handler(payload)
                delivered += 1
            except Exception as exc:
                logger.error("Handler for %s event failed: %s", self.name or "unnamed", exc)
        return delivered

    def __len__(self) -> int:
        return len(self._handlers)
