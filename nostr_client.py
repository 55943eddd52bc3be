import asyncio
import json
import os
import ssl
import logging
from dataclasses import dataclass, field
from typing import List, Dict
import websockets

from node_events import EventChannel, MessageReceived, TransportClosed

logger = logging.getLogger(__name__)


class TransportError(ConnectionError):
    """Raised when a relay operation needs a connection and none is open."""


# --- Event and Filters ---

class EventKind:
    SET_METADATA = 0
    TEXT_NOTE = 1
    SIGNER_MESSAGE = 20004


@dataclass
class Event:
    public_key: str
    content: str = ""
    kind: int = EventKind.TEXT_NOTE
    tags: List[list] = field(default_factory=list)
    created_at: int = 0
    sig: str = ""
    id: str = ""

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "pubkey": self.public_key,
            "content": self.content,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Event":
        return cls(
            public_key=data.get("pubkey", ""),
            content=data.get("content", ""),
            kind=data.get("kind", 0),
            tags=data.get("tags", []),
            created_at=data.get("created_at", 0),
            sig=data.get("sig", ""),
            id=data.get("id", ""),
        )


class Filter:
    def __init__(self, **kwargs):
        self.fields = kwargs

    def to_json(self) -> Dict:
        return self.fields


class FiltersList:
    def __init__(self, filters: List["Filter"]):
        self.filters = filters

    def to_request(self, sub_id: str) -> str:
        return json.dumps(["REQ", sub_id, *[f.to_json() for f in self.filters]])


# --- Relay and pool ---

class _Relay:
    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout
        self.ws = None


def _tls_verification_disabled() -> bool:
    return os.getenv("DISABLE_TLS_VERIFY", "0").lower() in {"1", "true", "yes"}


class RelayPool:
    """Websocket connections to a fixed set of relays.

    The pool remembers every active subscription so that ``resubscribe`` can
    re-issue them, and emits ``on_close`` once the last open socket drops
    without the pool having been asked to close.
    """

    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout
        self.relays: Dict[str, _Relay] = {}
        self.connection_statuses: Dict[str, bool] = {}
        self.subscriptions: Dict[str, FiltersList] = {}
        self.on_message: EventChannel[MessageReceived] = EventChannel("message")
        self.on_close: EventChannel[TransportClosed] = EventChannel("close")
        self._recv_tasks: List[asyncio.Task] = []
        self._waiters: Dict[str, asyncio.Future] = {}
        self._closing = False

    def add_relay(self, url: str):
        self.relays[url] = _Relay(url, self.timeout)

    @property
    def connected(self) -> bool:
        return any(
            r.ws is not None and self.connection_statuses.get(url)
            for url, r in self.relays.items()
        )

    async def _connect(self, relay: _Relay, ssl_ctx):
        try:
            if relay.url.startswith("wss://"):
                ssl_param = ssl_ctx if ssl_ctx is not None else True
                if _tls_verification_disabled():
                    logger.warning(
                        "TLS verification is disabled; connection to %s will not verify certificates",
                        relay.url,
                    )
            else:
                ssl_param = None
            relay.ws = await websockets.connect(
                relay.url,
                open_timeout=self.timeout,
                ssl=ssl_param,
            )
            self.connection_statuses[relay.url] = True
            self._recv_tasks.append(asyncio.create_task(self._recv_loop(relay, relay.ws)))
        except Exception as exc:
            relay.ws = None
            self.connection_statuses[relay.url] = False
            logger.error("Failed to connect to %s: %s", relay.url, exc)

    async def connect(self):
        """(Re)open a socket to every relay, dropping any existing ones first."""
        await self._drop_sockets()
        self._closing = False
        ssl_ctx = None
        if _tls_verification_disabled():
            ssl_ctx = ssl.create_default_context()
            ssl_ctx.check_hostname = False
            ssl_ctx.verify_mode = ssl.CERT_NONE
        await asyncio.gather(*(self._connect(r, ssl_ctx) for r in self.relays.values()))
        if not self.connected:
            raise TransportError("Unable to connect to any relay: %s" % self.connection_statuses)
        for sub_id, filters in self.subscriptions.items():
            await self._send_all(filters.to_request(sub_id))

    async def _recv_loop(self, relay: _Relay, ws):
        try:
            try:
                async for msg in ws:
                    try:
                        data = json.loads(msg)
                    except Exception:
                        continue
                    if not isinstance(data, list) or not data:
                        continue
                    self._dispatch(relay.url, data)
            except websockets.exceptions.ConnectionClosed as exc:
                logger.debug("Websocket closed for %s: %s", relay.url, exc)
        finally:
            await ws.close()
            # A replaced socket must not report the relay as down.
            if relay.ws is ws:
                relay.ws = None
                self.connection_statuses[relay.url] = False
                if not self._closing and not self.connected:
                    self.on_close.emit(
                        TransportClosed(reason="all relays disconnected", relay_urls=list(self.relays))
                    )

    def _dispatch(self, relay_url: str, data: list):
        typ = data[0]
        if typ == "NOTICE" and len(data) >= 2:
            logger.debug("Notice from %s: %s", relay_url, data[1])
            return
        if len(data) < 2 or not isinstance(data[1], str):
            return
        sub_id = data[1]
        if typ == "EVENT" and len(data) >= 3 and isinstance(data[2], dict):
            self._resolve(sub_id)
            self.on_message.emit(MessageReceived(sub_id, Event.from_dict(data[2]), relay_url))
        elif typ == "EOSE":
            self._resolve(sub_id)

    def _resolve(self, sub_id: str, answered: bool = True):
        waiter = self._waiters.get(sub_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(answered)

    async def _send_all(self, msg: str) -> int:
        sent = 0
        for url, r in self.relays.items():
            if not r.ws:
                logger.debug("Relay %s not connected; skipping send", url)
                continue
            try:
                await r.ws.send(msg)
                sent += 1
            except Exception as exc:
                logger.error("Failed to send to %s: %s", url, exc)
        return sent

    async def subscribe(self, sub_id: str, filters: FiltersList):
        self.subscriptions[sub_id] = filters
        await self._send_all(filters.to_request(sub_id))

    async def unsubscribe(self, sub_id: str):
        self.subscriptions.pop(sub_id, None)
        await self._send_all(json.dumps(["CLOSE", sub_id]))

    async def resubscribe(self):
        """Re-send every active subscription on the open sockets."""
        if not self.connected:
            raise TransportError("No open relay connection to resubscribe on")
        for sub_id, filters in self.subscriptions.items():
            if not await self._send_all(filters.to_request(sub_id)):
                raise TransportError("Resubscribe of %s reached no relay" % sub_id)

    async def roundtrip(self, sub_id: str, filters: FiltersList) -> bool:
        """Send a one-shot REQ and wait for the first EVENT or EOSE on it."""
        if not self.connected:
            return False
        waiter = asyncio.get_running_loop().create_future()
        self._waiters[sub_id] = waiter
        try:
            if not await self._send_all(filters.to_request(sub_id)):
                return False
            try:
                return await asyncio.wait_for(waiter, self.timeout)
            except asyncio.TimeoutError:
                logger.debug("No relay answered %s within %ss", sub_id, self.timeout)
                return False
        finally:
            self._waiters.pop(sub_id, None)
            await self._send_all(json.dumps(["CLOSE", sub_id]))

    async def _drop_sockets(self):
        # Pending round trips can no longer be answered.
        for sub_id in list(self._waiters):
            self._resolve(sub_id, answered=False)
        for r in self.relays.values():
            ws, r.ws = r.ws, None
            self.connection_statuses[r.url] = False
            if ws:
                try:
                    await ws.close()
                except Exception as exc:
                    logger.debug("Error closing %s: %s", r.url, exc)
        alive_tasks = []
        for task in self._recv_tasks:
            if task.done():
                continue
            task.cancel()
            alive_tasks.append(task)
        if alive_tasks:
            await asyncio.gather(*alive_tasks, return_exceptions=True)
        self._recv_tasks.clear()

    async def close_connections(self):
        self._closing = True
        await self._drop_sockets()
