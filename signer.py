import asyncio
import os
import logging
from typing import List, Optional

from credentials import share_pubkey
from node_events import NodeClosed
from relay_config import env_relay
from relay_planner import RelayPlan, compute_relay_plan
from signing_node import NodeFactory, create_connected_node
from supervisor import ConnectionSupervisor, NodeReplacement, SupervisorOptions

logger = logging.getLogger(__name__)

# Configuration
RELAY_CONNECT_TIMEOUT = float(os.getenv("RELAY_CONNECT_TIMEOUT", "2"))


def options_from_env() -> SupervisorOptions:
    return SupervisorOptions(
        heartbeat_interval=float(os.getenv("HEARTBEAT_INTERVAL", "30")),
        heartbeat_timeout=float(os.getenv("HEARTBEAT_TIMEOUT", "5")),
        stale_threshold=float(os.getenv("STALE_THRESHOLD", "30")),
        max_backoff=float(os.getenv("MAX_BACKOFF", "30")),
    )


async def _default_factory(group_credential: str, share_credential: str, relays: List[str]):
    return await create_connected_node(
        group_credential, share_credential, relays, timeout=RELAY_CONNECT_TIMEOUT
    )


def _log_close_failure(task):
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Closing replaced node failed: %s", task.exception())


class SignerSession:
    """Owns the live signer node and its keep-alive.

    The relay plan is computed once in :meth:`start`; node replacements made
    by the supervisor reuse the same relay list and are swapped into
    :attr:`node` as they happen.
    """

    def __init__(
        self,
        group_credential: str,
        share_credential: str,
        explicit_relays: Optional[List[str]] = None,
        node_factory: NodeFactory = _default_factory,
        options: Optional[SupervisorOptions] = None,
        self_pubkey: Optional[str] = None,
        config=None,
    ):
        self.group_credential = group_credential
        self.share_credential = share_credential
        self.explicit_relays = explicit_relays
        self.node_factory = node_factory
        self.options = options or options_from_env()
        self.self_pubkey = self_pubkey
        self.config = config
        self.plan: Optional[RelayPlan] = None
        self.node = None
        self.supervisor: Optional[ConnectionSupervisor] = None
        self.closed_events = 0

    async def start(self):
        self.plan = compute_relay_plan(
            group_credential=self.group_credential,
            explicit_relays=self.explicit_relays,
            env_relay=env_relay(),
            config=self.config,
        )
        logger.info("Connecting signer to relays: %s", ", ".join(self.plan.relays))
        if self.self_pubkey is None:
            self.self_pubkey = share_pubkey(self.share_credential)
        self._adopt(await self.node_factory(self.group_credential, self.share_credential, self.plan.relays))
        self.supervisor = ConnectionSupervisor(
            self.node,
            self.group_credential,
            self.share_credential,
            self.plan.relays,
            self.self_pubkey,
            node_factory=self.node_factory,
            options=self.options,
        )
        self.supervisor.on_replace(self._on_replace)
        self.supervisor.start()
        return self.node

    def _adopt(self, node):
        if self.node is not None:
            self.node.on_closed.unsubscribe(self._on_closed)
        self.node = node
        node.on_closed.subscribe(self._on_closed)

    def _on_closed(self, event: NodeClosed):
        self.closed_events += 1
        logger.warning("Signer node closed: %s", event.reason or "no reason given")

    def _on_replace(self, replacement: NodeReplacement):
        logger.info("Signer node replaced")
        self._adopt(replacement.next)
        close = getattr(replacement.previous, "close", None)
        if close is not None:
            asyncio.ensure_future(close()).add_done_callback(_log_close_failure)

    async def stop(self):
        if self.supervisor is not None:
            self.supervisor.stop()
            await self.supervisor.wait_stopped()
        close = getattr(self.node, "close", None)
        if close is not None:
            await close()
