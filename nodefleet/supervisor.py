"""Per-node lifecycle supervisor.

States: IDLE → REGISTERING → SESSION_STARTING → HEARTBEATING
                    ↑                                  │
                    └── RESTARTING ← FAULT_HANDLING ←──┘ (any failure)

Each node is driven by one long-lived task running :meth:`NodeSupervisor.run`.
Recovery is an iteration of that loop; the heartbeat timer is a child task
registered with the shared :class:`~nodefleet.active.ActiveRegistry` and is
cancelled before the node is released, so no heartbeat from an old cycle can
run once a restart has begun.
"""

from __future__ import annotations

import asyncio
import logging

from nodefleet.active import ActiveRegistry
from nodefleet.client import GatewayClient
from nodefleet.faults import BackoffPolicy, classify
from nodefleet.models import (
    FailureKind,
    HardwareFingerprint,
    NodeDescriptor,
    Phase,
)

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 120.0
DEFAULT_FAILURE_THRESHOLD = 3


class RestartRequired(Exception):
    """Raised when consecutive heartbeat failures reach the threshold."""

    def __init__(self, cause: BaseException | None, failures: int) -> None:
        super().__init__(f"{failures} consecutive heartbeat failures")
        self.cause = cause
        self.failures = failures


class NodeSupervisor:
    """Drives one node through registration, session start and heartbeats."""

    def __init__(
        self,
        node: NodeDescriptor,
        fingerprint: HardwareFingerprint,
        client: GatewayClient,
        registry: ActiveRegistry,
        policy: BackoffPolicy | None = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        stop_session_on_exit: bool = False,
    ) -> None:
        if heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.node = node
        self.fingerprint = fingerprint
        self.client = client
        self.registry = registry
        self.policy = policy or BackoffPolicy()
        self.heartbeat_interval = heartbeat_interval
        self.failure_threshold = failure_threshold
        self.stop_session_on_exit = stop_session_on_exit

        self._token: int | None = None
        self._session_started = False
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def node_id(self) -> str:
        return self.node.node_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self) -> asyncio.Task:
        """Run the supervisor in a background task."""
        if self.running:
            logger.warning("[%s] Supervisor already running", self.node.label)
            return self._task
        self._task = asyncio.create_task(self.run(), name=f"supervisor-{self.node_id}")
        return self._task

    async def stop(self) -> None:
        """Cancel the supervisor task and optionally close the session."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.stop_session_on_exit and self._session_started:
            try:
                await self.client.stop_session(self.node)
                logger.info("[%s] Session stopped", self.node.label)
            except Exception as exc:
                logger.warning(
                    "[%s] Stop session failed (kind=%s): %s",
                    self.node.label, classify(exc).value, exc,
                )
            self._session_started = False

    async def run(self) -> None:
        """Supervise the node until cancelled.

        Returns immediately, without any network call, if another path
        already owns the node.
        """
        if not await self._claim():
            logger.info("[%s] Node already active, not starting a second supervisor",
                        self.node.label)
            return
        try:
            while True:
                error = await self._run_cycle()
                await self._handle_fault(error)
                if not await self._claim():
                    logger.info("[%s] Node claimed elsewhere during backoff, supervisor exiting",
                                self.node.label)
                    return
        finally:
            if self._token is not None:
                self.registry.discard(self.node_id, self._token)
                self._token = None
            logger.info("[%s] Supervisor stopped", self.node.label)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def _claim(self) -> bool:
        self._token = await self.registry.acquire(self.node_id)
        return self._token is not None

    def _holds_node(self) -> bool:
        return self.registry.owns(self.node_id, self._token)

    async def _run_cycle(self) -> Exception:
        """Register, start a session and heartbeat until something fails."""
        try:
            self._set_phase(Phase.REGISTERING)
            await self._check_health()
            await self.client.register(self.node, self.fingerprint)
            logger.info("[%s] Registered with IP %s", self.node.label, self.node.ip)

            self._set_phase(Phase.SESSION_STARTING)
            session = await self.client.start_session(self.node)
            self._session_started = True
            logger.info("[%s] Session started (%s)", self.node.label, session.session_id or "no id")

            self._set_phase(Phase.HEARTBEATING)
            await self._heartbeat()
        except Exception as exc:
            return exc
        # _heartbeat only ever leaves by raising.
        return RuntimeError("heartbeat ended without a fault")

    async def _heartbeat(self) -> None:
        node_id = self.node_id
        async with self.registry.lock(node_id):
            if not self._holds_node():
                raise RestartRequired(None, 0)
            self.registry.reset_failures_locked(node_id)
            tripped = await self._beat_locked()
        if tripped is not None:
            raise tripped

        timer = asyncio.create_task(self._heartbeat_loop(), name=f"heartbeat-{node_id}")
        try:
            self.registry.arm_timer(node_id, timer)
        except RuntimeError:
            timer.cancel()
            raise
        logger.debug("[%s] Heartbeat armed every %.0fs", self.node.label, self.heartbeat_interval)

        await asyncio.wait({timer})
        if timer.cancelled():
            raise RestartRequired(None, self.registry.failures(node_id))
        tripped = timer.result()
        if tripped is None:
            raise RestartRequired(None, self.registry.failures(node_id))
        raise tripped

    async def _heartbeat_loop(self) -> RestartRequired | None:
        """Recurring heartbeat. Returns the restart signal once tripped."""
        node_id = self.node_id
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            async with self.registry.lock(node_id):
                if not self._holds_node():
                    logger.debug("[%s] Node no longer held, scheduled heartbeat dropped",
                                 self.node.label)
                    return None
                tripped = await self._beat_locked()
            if tripped is not None:
                return tripped

    async def _beat_locked(self) -> RestartRequired | None:
        """Send one ping. Caller holds the node lock."""
        node_id = self.node_id
        try:
            result = await self.client.ping(self.node)
        except Exception as exc:
            kind = classify(exc)
            failures = self.registry.record_failure_locked(node_id, kind)
            logger.warning(
                "[%s] Heartbeat failed (%d/%d, kind=%s): %s",
                self.node.label, failures, self.failure_threshold, kind.value, exc,
            )
            if failures >= self.failure_threshold:
                return RestartRequired(exc, failures)
            return None

        self.registry.record_success_locked(node_id)
        logger.info(
            "[%s] Heartbeat ok (status=%s, last ping=%s)",
            self.node.label, result.status or "-", result.last_ping or "-",
        )
        return None

    async def _handle_fault(self, error: Exception) -> None:
        node_id = self.node_id
        failed_phase = self.registry.phase(node_id)
        self._set_phase(Phase.FAULT_HANDLING)

        if isinstance(error, RestartRequired):
            cause = error.cause
            kind = classify(cause) if cause is not None else FailureKind.UNKNOWN
            logger.error(
                "[%s] %d consecutive heartbeat failures, restart required (kind=%s)",
                self.node.label, error.failures, kind.value,
            )
        else:
            kind = classify(error)
            if kind is FailureKind.MALFORMED_RESPONSE:
                logger.error("[%s] Malformed response while %s: %s",
                             self.node.label, failed_phase.value, error)
            else:
                logger.error("[%s] Failed while %s (kind=%s): %s",
                             self.node.label, failed_phase.value, kind.value, error)

        async with self.registry.lock(node_id):
            if self._holds_node():
                state = self.registry.state(node_id)
                state.restarts += 1
                state.last_error = kind
                self.registry.release_locked(node_id, self._token)
            else:
                logger.info("[%s] Node already released elsewhere, leaving its state alone",
                            self.node.label)
            self._token = None
        self._session_started = False

        delay = self.policy.delay_for(kind)
        self._set_phase(Phase.RESTARTING)
        logger.info(
            "[%s] Restarting in %.1fs (%s backoff)",
            self.node.label, delay,
            "long" if self.policy.is_identity_fault(kind) else "short",
        )
        await asyncio.sleep(delay)

    async def _check_health(self) -> None:
        """Advisory gateway health check; failures are only logged."""
        try:
            health = await self.client.check_health(self.node.proxy)
        except Exception as exc:
            logger.warning("[%s] Health check failed (kind=%s): %s",
                           self.node.label, classify(exc).value, exc)
            return
        logger.info("[%s] Gateway health: %s", self.node.label, health.status)

    def _set_phase(self, phase: Phase) -> None:
        if self.registry.owner(self.node_id) not in (None, self._token):
            return  # another supervisor holds the node
        previous = self.registry.phase(self.node_id)
        self.registry.set_phase(self.node_id, phase)
        if previous is not phase:
            logger.info("[%s] %s -> %s", self.node.label, previous.value, phase.value)
