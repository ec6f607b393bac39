"""Shared supervision registry: active set, failure counters, timer handles.

One :class:`ActiveRegistry` is owned by the fleet orchestrator and handed to
every :class:`~nodefleet.supervisor.NodeSupervisor`. Each node has its own
``asyncio.Lock``; a restart and a scheduled heartbeat for the same node both
take it, so they cannot interleave.

Claiming a node never waits on that lock. Each claim gets a token, and a
release that carries a stale token is ignored, so a supervisor that lost the
node cannot evict the one that holds it now.

Methods suffixed ``_locked`` expect the caller to hold the node's lock.
"""

from __future__ import annotations

import asyncio
import itertools
import logging

from nodefleet.models import FailureKind, Phase, SupervisionState

logger = logging.getLogger(__name__)


class ActiveRegistry:
    """Which nodes are owned by a running supervisor, and their state."""

    def __init__(self) -> None:
        self._active: set[str] = set()
        self._states: dict[str, SupervisionState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._claims = itertools.count(1)

    def lock(self, node_id: str) -> asyncio.Lock:
        lock = self._locks.get(node_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[node_id] = lock
        return lock

    def state(self, node_id: str) -> SupervisionState:
        st = self._states.get(node_id)
        if st is None:
            st = SupervisionState(node_id=node_id)
            self._states[node_id] = st
        return st

    def has_state(self, node_id: str) -> bool:
        return node_id in self._states

    # ── Active set ─────────────────────────────────────────────────

    def is_active(self, node_id: str) -> bool:
        return node_id in self._active

    def active_nodes(self) -> list[str]:
        return sorted(self._active)

    def owner(self, node_id: str) -> int | None:
        st = self._states.get(node_id)
        return st.owner if st is not None else None

    def owns(self, node_id: str, token: int | None) -> bool:
        """True if *token* is the live claim on *node_id*."""
        return token is not None and node_id in self._active and self.owner(node_id) == token

    async def acquire(self, node_id: str) -> int | None:
        """Claim *node_id* and return the claim token.

        Returns None at once if another path already owns the node; this
        never waits behind a heartbeat holding the node lock.
        """
        if node_id in self._active:
            return None
        token = next(self._claims)
        self._active.add(node_id)
        self.state(node_id).owner = token
        return token

    async def release(self, node_id: str, token: int | None = None) -> bool:
        """Cancel the node's heartbeat timer, then give up ownership."""
        async with self.lock(node_id):
            return self.release_locked(node_id, token)

    def release_locked(self, node_id: str, token: int | None = None) -> bool:
        """Release *node_id*. With a *token*, only the matching claim is released.

        Returns False when *token* is stale and nothing was changed.
        """
        st = self._states.get(node_id)
        if token is not None and (st is None or st.owner != token):
            return False
        if st is not None:
            st.owner = None
            if st.timer is not None:
                timer, st.timer = st.timer, None
                if not timer.done():
                    timer.cancel()
        self._active.discard(node_id)
        return True

    def discard(self, node_id: str, token: int | None = None) -> bool:
        """Destroy the node's supervision state on permanent exit."""
        if not self.release_locked(node_id, token):
            return False
        self._states.pop(node_id, None)
        return True

    # ── Heartbeat timer ────────────────────────────────────────────

    def arm_timer(self, node_id: str, task: asyncio.Task) -> None:
        """Register *task* as the node's heartbeat timer.

        Raises ``RuntimeError`` if a live timer is already registered.
        """
        st = self.state(node_id)
        if st.timer is not None and not st.timer.done():
            raise RuntimeError(f"Heartbeat timer already armed for node {node_id}")
        st.timer = task

    def timer(self, node_id: str) -> asyncio.Task | None:
        st = self._states.get(node_id)
        return st.timer if st is not None else None

    # ── Counters & phase ───────────────────────────────────────────

    def reset_failures_locked(self, node_id: str) -> None:
        self.state(node_id).failures = 0

    def record_success_locked(self, node_id: str) -> int:
        st = self.state(node_id)
        st.failures = 0
        st.last_error = None
        return 0

    def record_failure_locked(self, node_id: str, kind: FailureKind) -> int:
        st = self.state(node_id)
        st.failures += 1
        st.last_error = kind
        return st.failures

    def failures(self, node_id: str) -> int:
        st = self._states.get(node_id)
        return st.failures if st is not None else 0

    def set_phase(self, node_id: str, phase: Phase) -> None:
        self.state(node_id).phase = phase

    def phase(self, node_id: str) -> Phase:
        st = self._states.get(node_id)
        return st.phase if st is not None else Phase.IDLE

    def snapshot(self) -> dict[str, dict]:
        """Plain-dict view of every tracked node, for status logging."""
        return {
            node_id: {
                "phase": st.phase.value,
                "active": node_id in self._active,
                "failures": st.failures,
                "restarts": st.restarts,
                "last_error": st.last_error.value if st.last_error else None,
            }
            for node_id, st in sorted(self._states.items())
        }
