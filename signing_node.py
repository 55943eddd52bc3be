import logging
import secrets
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from credentials import decode_group, share_pubkey
from node_events import EventChannel, MessageReceived, NodeClosed, NodeReady, TransportClosed
from nostr_client import EventKind, Filter, FiltersList, RelayPool

logger = logging.getLogger(__name__)

SIGNER_SUBSCRIPTION = "signer"
PING_PREFIX = "ping-"


class NodeConfigurationError(ValueError):
    pass


@dataclass
class PingResult:
    ok: bool
    err: Optional[str] = None


class Transport(Protocol):
    on_close: EventChannel[TransportClosed]

    async def resubscribe(self) -> None:
        ...

    async def connect(self) -> None:
        ...


class SigningNode(Protocol):
    transport: Optional[Transport]
    on_message: EventChannel[MessageReceived]
    on_closed: EventChannel[NodeClosed]

    async def ping(self, pubkey: str) -> PingResult:
        ...


NodeFactory = Callable[[str, str, List[str]], Awaitable[SigningNode]]


class RelayNode:
    """Signer handle backed by a :class:`nostr_client.RelayPool`."""

    def __init__(self, pool: RelayPool, pubkey: str, group: Optional[Dict] = None):
        self.transport = pool
        self.pubkey = pubkey
        self.group = group
        self.on_message: EventChannel[MessageReceived] = EventChannel("message")
        self.on_closed: EventChannel[NodeClosed] = EventChannel("closed")
        self.on_ready: EventChannel[NodeReady] = EventChannel("ready")
        pool.on_message.subscribe(self._forward_message)

    @property
    def relays(self) -> List[str]:
        return list(self.transport.relays)

    def _forward_message(self, msg: MessageReceived):
        if msg.subscription_id.startswith(PING_PREFIX):
            return
        self.on_message.emit(msg)

    async def connect(self):
        await self.transport.connect()
        await self.transport.subscribe(
            SIGNER_SUBSCRIPTION,
            FiltersList([Filter(kinds=[EventKind.SIGNER_MESSAGE], **{"#p": [self.pubkey]})]),
        )
        self.on_ready.emit(NodeReady(self))

    async def ping(self, pubkey: str) -> PingResult:
        """Relay round trip for ``pubkey``: REQ answered by EVENT or EOSE."""
        sub_id = PING_PREFIX + secrets.token_hex(4)
        filters = FiltersList([Filter(authors=[pubkey], kinds=[EventKind.SET_METADATA], limit=1)])
        if await self.transport.roundtrip(sub_id, filters):
            return PingResult(True)
        return PingResult(False, "no relay answered")

    async def close(self):
        await self.transport.close_connections()
        self.on_closed.emit(NodeClosed(self, reason="closed by owner"))


async def create_connected_node(
    group_credential: str,
    share_credential: str,
    relays: List[str],
    timeout: float = 2.0,
) -> RelayNode:
    """Build a fresh node for the given credentials and connect it."""
    if not relays:
        raise NodeConfigurationError("At least one relay URL must be provided")
    group = decode_group(group_credential)
    pool = RelayPool(timeout=timeout)
    for url in relays:
        pool.add_relay(url)
    node = RelayNode(pool, share_pubkey(share_credential), group)
    await node.connect()
    logger.info("Signer node connected to %d relay(s)", len(relays))
    return node
