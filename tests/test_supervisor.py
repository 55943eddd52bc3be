import asyncio
import logging
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from node_events import EventChannel, MessageReceived, TransportClosed
from nostr_client import TransportError
from signing_node import PingResult
from supervisor import ConnectionSupervisor, NodeReplacement, SupervisorOptions

FAST = SupervisorOptions(heartbeat_interval=0.01, heartbeat_timeout=0.05, stale_threshold=100, max_backoff=0)


class DummyTransport:
    def __init__(self, calls, resubscribe_ok=False, reconnect_ok=False):
        self.calls = calls
        self.resubscribe_ok = resubscribe_ok
        self.reconnect_ok = reconnect_ok
        self.on_close = EventChannel("close")

    async def resubscribe(self):
        self.calls.append("resubscribe")
        if not self.resubscribe_ok:
            raise TransportError("resubscribe failed")

    async def connect(self):
        self.calls.append("reconnect")
        if not self.reconnect_ok:
            raise TransportError("reconnect failed")


class DummyNode:
    def __init__(self, calls=None, ping_ok=True, ping_delay=0, **transport_kwargs):
        self.calls = calls if calls is not None else []
        self.transport = DummyTransport(self.calls, **transport_kwargs)
        self.on_message = EventChannel("message")
        self.on_closed = EventChannel("closed")
        self.ping_ok = ping_ok
        self.ping_delay = ping_delay
        self.pings = []
        self.late_pings = 0

    async def ping(self, pubkey):
        self.pings.append(pubkey)
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)
            self.late_pings += 1
        return PingResult(self.ping_ok, None if self.ping_ok else "no answer")


def make_factory(calls, fresh_nodes, fail=False):
    async def factory(group, share, relays):
        calls.append("recreate")
        if fail:
            raise ConnectionError("relays unreachable")
        node = DummyNode(calls=[], ping_ok=True)
        fresh_nodes.append((node, group, share, relays))
        return node
    return factory


def supervisor_for(node, factory=None, options=FAST, **kwargs):
    return ConnectionSupervisor(
        node,
        "bfgroup1test",
        "bfshare1test",
        ["wss://relay.example.com"],
        "selfpk",
        node_factory=factory or make_factory([], []),
        options=options,
        **kwargs,
    )


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def test_first_tick_is_immediate_and_pings_self():
    async def run():
        node = DummyNode()
        sup = supervisor_for(node, options=SupervisorOptions(heartbeat_interval=60))
        sup.start()
        await wait_until(lambda: node.pings)
        sup.stop()
        await sup.wait_stopped()
        assert node.pings == ["selfpk"]

    asyncio.run(run())


def test_heal_ladder_order_ends_in_replacement():
    async def run():
        calls, fresh = [], []
        node = DummyNode(calls=calls, ping_ok=False)
        sup = supervisor_for(node, factory=make_factory(calls, fresh))
        replacements = []

        def on_replace(payload):
            assert sup.node is payload.next
            replacements.append(payload)

        sup.on_replace(on_replace)
        sup.start()
        await wait_until(lambda: replacements)
        sup.stop()
        await sup.wait_stopped()

        assert calls[:3] == ["resubscribe", "reconnect", "recreate"]
        new_node, group, share, relays = fresh[0]
        assert replacements[0] == NodeReplacement(next=new_node, previous=node)
        assert (group, share, relays) == ("bfgroup1test", "bfshare1test", ["wss://relay.example.com"])
        assert sup.node is new_node

    asyncio.run(run())


def test_heal_stops_at_first_success():
    async def run():
        calls = []
        node = DummyNode(calls=calls, ping_ok=False, reconnect_ok=True)
        sup = supervisor_for(node, factory=make_factory(calls, []))
        sup.start()
        await wait_until(lambda: "reconnect" in calls)
        sup.stop()
        await sup.wait_stopped()
        assert calls[:2] == ["resubscribe", "reconnect"]
        assert "recreate" not in calls
        assert sup.node is node

    asyncio.run(run())


def test_single_failure_does_not_heal():
    async def run():
        calls = []
        node = DummyNode(calls=calls, ping_ok=False)
        sup = supervisor_for(node, options=SupervisorOptions(heartbeat_interval=60, stale_threshold=100))
        sup.start()
        await wait_until(lambda: node.pings)
        await asyncio.sleep(0.02)
        assert sup.state.consecutive_failures == 1
        sup.stop()
        await sup.wait_stopped()
        assert calls == []

    asyncio.run(run())


def test_stale_connection_heals_even_when_ping_succeeds(caplog):
    async def run():
        now = [0.0]
        calls = []
        node = DummyNode(calls=calls, ping_ok=True, resubscribe_ok=True)
        options = SupervisorOptions(heartbeat_interval=60, heartbeat_timeout=0.05, stale_threshold=10, max_backoff=0)
        sup = supervisor_for(node, options=options, clock=lambda: now[0])
        sup.start()
        now[0] = 50.0
        await wait_until(lambda: calls)
        sup.stop()
        await sup.wait_stopped()
        assert calls == ["resubscribe"]

    caplog.set_level(logging.WARNING)
    asyncio.run(run())
    assert any("reason=inactivity" in rec.getMessage() for rec in caplog.records)


def test_message_activity_refreshes_timestamp():
    async def run():
        now = [0.0]
        node = DummyNode()
        sup = supervisor_for(node, options=SupervisorOptions(heartbeat_interval=60), clock=lambda: now[0])
        sup.start()
        await wait_until(lambda: node.pings)
        now[0] = 42.0
        node.on_message.emit(MessageReceived("signer", {"kind": 20004}))
        assert sup.state.last_activity == 42.0
        sup.stop()
        await sup.wait_stopped()

    asyncio.run(run())


def test_probe_timeout_counts_as_failure_without_cancelling_probe():
    async def run():
        calls = []
        node = DummyNode(calls=calls, ping_delay=0.1, reconnect_ok=True)
        sup = supervisor_for(node)
        sup.start()
        await wait_until(lambda: "reconnect" in calls)
        sup.stop()
        await sup.wait_stopped()
        await wait_until(lambda: node.late_pings >= 1)

    asyncio.run(run())


def test_transport_close_is_bridged_once():
    async def run():
        node = DummyNode()
        closed = []
        node.on_closed.subscribe(closed.append)
        sup = supervisor_for(node, options=SupervisorOptions(heartbeat_interval=60))
        sup.start()
        node.transport.on_close.emit(TransportClosed(reason="all relays disconnected"))
        assert len(closed) == 1
        assert closed[0].node is node
        assert closed[0].reason == "all relays disconnected"
        sup.stop()
        node.transport.on_close.emit(TransportClosed(reason="again"))
        assert len(closed) == 1
        assert len(node.transport.on_close) == 0
        assert len(node.on_message) == 0
        await sup.wait_stopped()

    asyncio.run(run())


def test_replacement_moves_listeners_to_new_node():
    async def run():
        calls, fresh = [], []
        node = DummyNode(calls=calls, ping_ok=False)
        sup = supervisor_for(node, factory=make_factory(calls, fresh))
        sup.start()
        await wait_until(lambda: fresh)
        new_node = fresh[0][0]
        assert len(node.transport.on_close) == 0
        assert len(node.on_message) == 0
        assert len(new_node.transport.on_close) == 1
        assert len(new_node.on_message) == 1
        sup.stop()
        await sup.wait_stopped()

    asyncio.run(run())


def test_exhausted_ladder_keeps_running(caplog):
    async def run():
        calls = []
        node = DummyNode(calls=calls, ping_ok=False)
        sup = supervisor_for(node, factory=make_factory(calls, [], fail=True))
        sup.start()
        await wait_until(lambda: calls.count("recreate") >= 5)
        assert sup.is_running
        sup.stop()
        await sup.wait_stopped()
        assert calls[:6] == ["resubscribe", "reconnect", "recreate"] * 2

    caplog.set_level(logging.ERROR)
    asyncio.run(run())
    messages = [rec.getMessage() for rec in caplog.records]
    assert any("Node recreation failed" in m for m in messages)
    assert any("Heal ladder exhausted" in m for m in messages)


def test_stop_during_heal_halts_escalation():
    async def run():
        calls = []
        node = DummyNode(calls=calls, ping_ok=False)
        sup = supervisor_for(node, factory=make_factory(calls, []))

        async def resubscribe():
            calls.append("resubscribe")
            sup.stop()
            raise TransportError("resubscribe failed")

        node.transport.resubscribe = resubscribe
        sup.start()
        await wait_until(lambda: calls)
        await sup.wait_stopped()
        assert calls == ["resubscribe"]

    asyncio.run(run())


def test_stop_is_terminal_and_idempotent():
    async def run():
        node = DummyNode()
        sup = supervisor_for(node)
        sup.start()
        await wait_until(lambda: len(node.pings) >= 2)
        sup.stop()
        await sup.wait_stopped()
        seen = len(node.pings)
        sup.stop()
        sup.start()
        await asyncio.sleep(0.05)
        assert len(node.pings) == seen
        assert not sup.is_running

    asyncio.run(run())


def test_stop_before_start_is_safe():
    node = DummyNode()
    sup = supervisor_for(node)
    sup.stop()
    sup.stop()
    assert sup.node is node
    asyncio.run(sup.wait_stopped())


def test_dict_probe_results_are_accepted():
    async def run():
        node = DummyNode()

        async def ping(pubkey):
            node.pings.append(pubkey)
            return {"ok": False, "err": "rejected"}

        node.ping = ping
        sup = supervisor_for(node, options=SupervisorOptions(heartbeat_interval=60))
        sup.start()
        await wait_until(lambda: node.pings)
        await asyncio.sleep(0.01)
        assert sup.state.consecutive_failures == 1
        sup.stop()
        await sup.wait_stopped()

    asyncio.run(run())
