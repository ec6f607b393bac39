"""Fleet orchestrator: fans the node registry out into supervisors.

Resolves every node's outbound identity, makes sure each node has a persisted
hardware fingerprint, then starts one :class:`NodeSupervisor` task per node.
Nodes start independently: a slow or failing IP lookup for one node never
holds back another.

This is the main entry point ``python -m nodefleet`` uses.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import replace
from typing import Callable

from nodefleet.active import ActiveRegistry
from nodefleet.client import GatewayClient
from nodefleet.config import FleetConfig
from nodefleet.faults import BackoffPolicy, classify
from nodefleet.identity import IdentityStore
from nodefleet.models import (
    FleetReport,
    HardwareFingerprint,
    IdentityStrategy,
    NodeDescriptor,
)
from nodefleet.registry import NodeRegistry, load_proxies
from nodefleet.supervisor import (
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_HEARTBEAT_INTERVAL,
    NodeSupervisor,
)

logger = logging.getLogger(__name__)

RegistryLoader = Callable[[], NodeRegistry]

_RESERVED_FIRST_OCTETS = {10, 100, 127, 169, 172, 192}


def synthetic_ip(node_id: str) -> str:
    """Stable, public-looking IPv4 address derived from *node_id*."""
    digest = hashlib.sha256(node_id.encode("utf-8")).digest()
    first = 11 + digest[0] % 212
    while first in _RESERVED_FIRST_OCTETS:
        first += 1
    return f"{first}.{digest[1]}.{digest[2]}.{1 + digest[3] % 254}"


def config_registry_loader(config: FleetConfig) -> RegistryLoader:
    """Build a loader that re-reads the node registry from *config* each call."""

    def load() -> NodeRegistry:
        with_proxies = config.identity_strategy is IdentityStrategy.PROXY
        if config.accounts:
            registry = NodeRegistry.from_accounts(config.accounts)
            if with_proxies and any(n.proxy is None for n in registry):
                registry = registry.assign_proxies(load_proxies(config.proxy_file))
            return registry
        return NodeRegistry.from_files(
            config.ids_file,
            config.token_file,
            proxy_path=config.proxy_file if with_proxies else None,
        )

    return load


class FleetOrchestrator:
    """Starts and tracks one supervisor per node."""

    def __init__(
        self,
        client: GatewayClient,
        identity_store: IdentityStore,
        registry_loader: RegistryLoader,
        strategy: IdentityStrategy = IdentityStrategy.NONE,
        policy: BackoffPolicy | None = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        restart_delay: float = 30.0,
        stop_sessions_on_exit: bool = False,
    ) -> None:
        self.client = client
        self.identity_store = identity_store
        self.registry_loader = registry_loader
        self.strategy = strategy
        self.policy = policy or BackoffPolicy()
        self.heartbeat_interval = heartbeat_interval
        self.failure_threshold = failure_threshold
        self.restart_delay = restart_delay
        self.stop_sessions_on_exit = stop_sessions_on_exit

        self.active = ActiveRegistry()
        self._fingerprints: dict[str, HardwareFingerprint] = {}
        self._supervisors: dict[str, NodeSupervisor] = {}
        self._pending: dict[str, asyncio.Task] = {}
        self._skipped: set[str] = set()
        self._stop_event = asyncio.Event()
        self._shutdown_lock = asyncio.Lock()
        self._stopping = False
        self._closed = False
        self._owns_resources = False

    @classmethod
    def from_config(cls, config: FleetConfig) -> FleetOrchestrator:
        """Wire the client, identity store and registry loader from *config*."""
        config.validate()
        client = GatewayClient(
            api_base_url=config.api_base_url,
            ip_service_url=config.ip_service_url,
            health_url=config.health_url,
            timeout=config.request_timeout,
            extension_version=config.extension_version,
        )
        orchestrator = cls(
            client=client,
            identity_store=IdentityStore(config.identity_db_path),
            registry_loader=config_registry_loader(config),
            strategy=config.identity_strategy,
            policy=BackoffPolicy(
                short_min=config.short_backoff_min,
                short_max=config.short_backoff_max,
                long_delay=config.long_backoff,
            ),
            heartbeat_interval=config.heartbeat_interval,
            failure_threshold=config.failure_threshold,
            restart_delay=config.restart_delay,
            stop_sessions_on_exit=config.stop_sessions_on_exit,
        )
        orchestrator._owns_resources = True
        return orchestrator

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def run(self, initial: bool = True) -> FleetReport:
        """Load the registry and launch every node not already handled.

        Returns once each node has either been started, deferred or skipped;
        supervisors keep running in the background.
        """
        if initial:
            logger.info("Starting fleet (strategy=%s)", self.strategy.value)
        else:
            logger.info("Re-running fleet startup")

        registry = self.registry_loader()
        report = FleetReport()
        launch: list[NodeDescriptor] = []
        for node in registry:
            node_id = node.node_id
            if self.is_running(node_id):
                report.already_running.append(node_id)
            elif node_id in self._pending:
                report.deferred.append(node_id)
            elif node_id in self._skipped:
                report.skipped.append(node_id)
            elif self.strategy is IdentityStrategy.PROXY and node.proxy is None:
                logger.error("[%s] No proxy bound, node skipped this run", node.label)
                report.skipped.append(node_id)
            else:
                launch.append(node)

        # Every node gets its fingerprint before any supervisor starts.
        for node in launch:
            self._fingerprint(node.node_id)

        outcomes = await asyncio.gather(*(self._launch(node) for node in launch))
        for node, started in zip(launch, outcomes):
            (report.started if started else report.deferred).append(node.node_id)

        logger.info(
            "Fleet startup: %d started, %d deferred, %d skipped, %d already running",
            len(report.started), len(report.deferred),
            len(report.skipped), len(report.already_running),
        )
        return report

    async def run_forever(self) -> None:
        """Run the fleet until :meth:`shutdown`.

        A crash anywhere on the startup path is logged and followed by a
        non-initial re-run instead of exiting.
        """
        initial = True
        while not self._stopping:
            try:
                await self.run(initial=initial)
            except Exception:
                logger.exception("Fleet startup failed, re-running in %.0fs", self.restart_delay)
                initial = False
                await self._sleep_unless_stopped(self.restart_delay)
                continue
            await self._stop_event.wait()

    async def shutdown(self) -> None:
        """Stop every supervisor and pending start, then release resources."""
        self._stopping = True
        self._stop_event.set()
        async with self._shutdown_lock:
            if self._closed:
                return
            await self._stop_all()
            self._closed = True

    async def _stop_all(self) -> None:
        pending = list(self._pending.values())
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()

        supervisors = list(self._supervisors.values())
        await asyncio.gather(*(s.stop() for s in supervisors), return_exceptions=True)
        self._supervisors.clear()
        logger.info("Fleet stopped (%d supervisors)", len(supervisors))

        if self._owns_resources:
            await self.client.aclose()
            self.identity_store.close()

    def is_running(self, node_id: str) -> bool:
        sup = self._supervisors.get(node_id)
        return sup is not None and sup.running

    @property
    def skipped(self) -> set[str]:
        return set(self._skipped)

    def supervisor(self, node_id: str) -> NodeSupervisor | None:
        return self._supervisors.get(node_id)

    def status(self) -> dict[str, dict]:
        return self.active.snapshot()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _fingerprint(self, node_id: str) -> HardwareFingerprint:
        fp = self._fingerprints.get(node_id)
        if fp is None:
            fp = self.identity_store.get_or_create_fingerprint(node_id)
            self._fingerprints[node_id] = fp
        return fp

    async def _resolve(self, node: NodeDescriptor) -> NodeDescriptor:
        """Return *node* bound to its outbound identity and effective IP."""
        if self.strategy is IdentityStrategy.SYNTHETIC:
            return replace(node, proxy=None, ip=synthetic_ip(node.node_id))
        proxy = node.proxy if self.strategy is IdentityStrategy.PROXY else None
        ip = await self.client.resolve_ip(proxy)
        logger.info("[%s] Resolved IP %s%s", node.label, ip, " via proxy" if proxy else "")
        return replace(node, proxy=proxy, ip=ip)

    async def _launch(self, node: NodeDescriptor) -> bool:
        """Start *node* now, or defer it once. Returns True if started."""
        try:
            bound = await self._resolve(node)
        except Exception as exc:
            logger.warning(
                "[%s] IP resolution failed (kind=%s): %s, retrying once in %.0fs",
                node.label, classify(exc).value, exc, self.policy.long_delay,
            )
            self._pending[node.node_id] = asyncio.create_task(
                self._deferred_launch(node), name=f"deferred-{node.node_id}"
            )
            return False
        self._spawn(bound)
        return True

    async def _deferred_launch(self, node: NodeDescriptor) -> None:
        try:
            await asyncio.sleep(self.policy.long_delay)
            try:
                bound = await self._resolve(node)
            except Exception as exc:
                logger.error(
                    "[%s] IP resolution failed again (kind=%s): %s, node skipped for this run",
                    node.label, classify(exc).value, exc,
                )
                self._skipped.add(node.node_id)
                return
            self._spawn(bound)
        finally:
            self._pending.pop(node.node_id, None)

    def _spawn(self, node: NodeDescriptor) -> None:
        if self._stopping or self.is_running(node.node_id):
            return
        sup = NodeSupervisor(
            node,
            self._fingerprint(node.node_id),
            self.client,
            self.active,
            policy=self.policy,
            heartbeat_interval=self.heartbeat_interval,
            failure_threshold=self.failure_threshold,
            stop_session_on_exit=self.stop_sessions_on_exit,
        )
        self._supervisors[node.node_id] = sup
        task = sup.start()
        task.add_done_callback(lambda t, s=sup: self._on_supervisor_done(s, t))

    def _on_supervisor_done(self, sup: NodeSupervisor, task: asyncio.Task) -> None:
        if self._supervisors.get(sup.node_id) is sup:
            del self._supervisors[sup.node_id]
        if task.cancelled() or self._stopping:
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error(
            "[%s] Supervisor crashed: %r, restarting in %.0fs",
            sup.node.label, exc, self.restart_delay,
        )
        self._pending[sup.node_id] = asyncio.create_task(
            self._respawn(sup.node), name=f"respawn-{sup.node_id}"
        )

    async def _respawn(self, node: NodeDescriptor) -> None:
        try:
            await asyncio.sleep(self.restart_delay)
            self._spawn(node)
        finally:
            self._pending.pop(node.node_id, None)

    async def _sleep_unless_stopped(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
