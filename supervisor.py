"""Keep-alive supervision for a signer node.

A heartbeat probes the node on a fixed interval. When the node looks unhealthy
(no inbound messages for ``stale_threshold`` seconds, or two failed probes in
a row) the heal ladder runs: resubscribe, then reconnect the transport, then
build a brand new node. Each rung is retried through a short backoff sequence;
if all of them fail the next heartbeat starts the ladder again.

Everything runs on the event loop of the caller of :meth:`start`. Only one
tick (including its heal) is ever in flight, so the connection state is never
mutated concurrently.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from node_events import NodeClosed, TransportClosed
from nostr_client import TransportError
from signing_node import NodeFactory, create_connected_node

logger = logging.getLogger(__name__)

BACKOFF_SEQUENCE = (0.0, 1.0, 2.0, 5.0, 10.0)
FAILURE_THRESHOLD = 2


@dataclass
class SupervisorOptions:
    heartbeat_interval: float = 30.0
    heartbeat_timeout: float = 5.0
    stale_threshold: float = 30.0
    max_backoff: float = 30.0


@dataclass
class NodeReplacement:
    next: Any
    previous: Any


@dataclass
class ConnectionState:
    node: Any
    last_activity: float
    consecutive_failures: int = 0
    stopped: bool = False


class HeartbeatSchedule:
    """Runs ``tick`` now and then every ``interval`` seconds after it returns.

    ``cancel`` is the single way to end the schedule; it also wakes any
    :meth:`sleep` in progress.
    """

    def __init__(self, tick: Callable[[], Awaitable[None]], interval: float):
        self._tick = tick
        self.interval = interval
        self._cancelled = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self):
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self):
        while not self.cancelled:
            await self._tick()
            if await self.sleep(self.interval):
                break

    async def sleep(self, delay: float) -> bool:
        """Wait ``delay`` seconds; return True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        return self.cancelled

    def cancel(self):
        self._cancelled.set()

    async def wait(self):
        if self._task is not None:
            await self._task


def _discard_result(task: asyncio.Future):
    if not task.cancelled():
        task.exception()


def _probe_ok(result) -> bool:
    if isinstance(result, dict):
        return result.get("ok") is True
    return getattr(result, "ok", None) is True


def _probe_error(result) -> str:
    err = result.get("err") if isinstance(result, dict) else getattr(result, "err", None)
    return str(err) if err else "ping failed"


class ConnectionSupervisor:
    """Keeps a signer node reachable, replacing it when repair fails.

    ``node_factory(group_credential, share_credential, relays)`` must return a
    connected node; it is only called when cheaper repairs have failed. The
    owner learns about replacements through :meth:`on_replace`.
    """

    def __init__(
        self,
        node,
        group_credential: str,
        share_credential: str,
        relays: List[str],
        self_pubkey: str,
        node_factory: NodeFactory = create_connected_node,
        options: Optional[SupervisorOptions] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._node = node
        self.group_credential = group_credential
        self.share_credential = share_credential
        self.relays = list(relays)
        self.self_pubkey = self_pubkey
        self.node_factory = node_factory
        self.options = options or SupervisorOptions()
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._state: Optional[ConnectionState] = None
        self._schedule: Optional[HeartbeatSchedule] = None
        self._replace_callback: Optional[Callable[[NodeReplacement], None]] = None
        self._close_bridge = None
        self._terminated = False

    @property
    def node(self):
        return self._state.node if self._state is not None else self._node

    @property
    def is_running(self) -> bool:
        return self._state is not None and not self._state.stopped

    @property
    def state(self) -> Optional[ConnectionState]:
        return self._state

    def on_replace(self, callback: Callable[[NodeReplacement], None]):
        self._replace_callback = callback

    # --- lifecycle ---

    def start(self):
        """Attach to the current node and tick immediately.

        Must be called from a running event loop.
        """
        if self._terminated:
            self.logger.debug("Keep-alive was stopped; not restarting")
            return
        if self._state is not None:
            self.logger.debug("Keep-alive already running")
            return
        self._state = ConnectionState(node=self._node, last_activity=self._clock())
        self._watch(self._node)
        self._schedule = HeartbeatSchedule(self._safe_tick, self.options.heartbeat_interval)
        self._schedule.start()

    def stop(self):
        """Stop ticking and detach from the node. Idempotent."""
        state = self._state
        if state is None:
            self._terminated = True
            return
        state.stopped = True
        self._terminated = True
        if self._schedule is not None:
            self._schedule.cancel()
        self._unwatch()
        self._node = state.node
        self._state = None

    async def wait_stopped(self):
        """Wait for the heartbeat loop to exit after :meth:`stop`."""
        if self._schedule is not None:
            await self._schedule.wait()

    # --- listeners ---

    def _on_message(self, _msg):
        if self._state is not None:
            self._state.last_activity = self._clock()

    def _watch(self, node):
        self._unwatch()
        state = self._state
        state.node = node
        state.last_activity = self._clock()
        state.consecutive_failures = 0
        node.on_message.subscribe(self._on_message)
        self._attach_close_bridge(node)

    def _unwatch(self):
        self._detach_close_bridge()
        if self._state is not None:
            self._state.node.on_message.unsubscribe(self._on_message)

    def _attach_close_bridge(self, node):
        transport = getattr(node, "transport", None)
        channel = getattr(transport, "on_close", None)
        if channel is None:
            self.logger.debug("No transport available for close bridge")
            return

        def handler(event: TransportClosed):
            self.logger.warning("Underlying transport closed (%s), emitting node closed", event.reason)
            node.on_closed.emit(NodeClosed(node, reason=event.reason))

        channel.subscribe(handler)
        self._close_bridge = (channel, handler)

    def _detach_close_bridge(self):
        if self._close_bridge is None:
            return
        channel, handler = self._close_bridge
        channel.unsubscribe(handler)
        self._close_bridge = None

    # --- heartbeat ---

    async def _safe_tick(self):
        state = self._state
        if state is None or state.stopped:
            return
        try:
            await self._tick(state)
        except Exception as exc:
            self.logger.error("Keep-alive tick failed: %s", exc, exc_info=exc)

    async def _probe(self, node):
        probe = asyncio.ensure_future(node.ping(self.self_pubkey))
        done, _ = await asyncio.wait({probe}, timeout=self.options.heartbeat_timeout)
        if not done:
            # The late probe keeps running; its outcome is ignored.
            probe.add_done_callback(_discard_result)
            raise asyncio.TimeoutError("heartbeat timeout")
        return probe.result()

    async def _tick(self, state: ConnectionState):
        stale = self._clock() - state.last_activity > self.options.stale_threshold
        try:
            result = await self._probe(state.node)
            if not _probe_ok(result):
                raise TransportError(_probe_error(result))
            state.consecutive_failures = 0
            state.last_activity = self._clock()
        except Exception as exc:
            state.consecutive_failures += 1
            self.logger.debug(
                "Heartbeat failed: %s (failures=%d)", exc, state.consecutive_failures
            )
        if state.stopped:
            return
        if stale or state.consecutive_failures >= FAILURE_THRESHOLD:
            if stale and state.consecutive_failures < FAILURE_THRESHOLD:
                reason = "inactivity"
            else:
                reason = "heartbeat failures"
            await self._heal(state, reason)

    # --- heal ladder ---

    async def _resubscribe(self, node):
        transport = getattr(node, "transport", None)
        if transport is None or not hasattr(transport, "resubscribe"):
            raise TransportError("transport missing resubscribe")
        await transport.resubscribe()

    async def _reconnect(self, node):
        transport = getattr(node, "transport", None)
        if transport is None or not hasattr(transport, "connect"):
            raise TransportError("transport missing connect")
        await transport.connect()

    async def _recreate_node(self, state: ConnectionState):
        self.logger.info("Recreating signer node")
        previous = state.node
        fresh = await self.node_factory(self.group_credential, self.share_credential, list(self.relays))
        if state.stopped:
            # Stopped while building: hand the node over without watching it.
            self._node = fresh
        else:
            self._watch(fresh)
        if self._replace_callback is not None:
            self._replace_callback(NodeReplacement(next=fresh, previous=previous))

    def _mark_healthy(self, state: ConnectionState):
        state.consecutive_failures = 0
        state.last_activity = self._clock()

    async def _heal(self, state: ConnectionState, reason: str):
        self.logger.warning(
            "Keep-alive triggered heal: reason=%s failures=%d", reason, state.consecutive_failures
        )
        for delay in BACKOFF_SEQUENCE:
            if state.stopped:
                return
            if delay and await self._schedule.sleep(min(delay, self.options.max_backoff)):
                return

            for name, repair in (("Resubscribe", self._resubscribe), ("Reconnect", self._reconnect)):
                try:
                    await repair(state.node)
                except Exception as exc:
                    self.logger.debug("%s failed: %s", name, exc)
                else:
                    self.logger.info("%s succeeded", name)
                    self._mark_healthy(state)
                    return
                if state.stopped:
                    return

            try:
                await self._recreate_node(state)
            except Exception as exc:
                self.logger.error("Node recreation failed: %s", exc)
            else:
                self.logger.info("Node recreation succeeded")
                return
        self.logger.error("Heal ladder exhausted (reason=%s); retrying on next heartbeat", reason)
