"""pytest configuration and shared fakes for nodefleet tests."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from nodefleet.active import ActiveRegistry
from nodefleet.faults import BackoffPolicy
from nodefleet.models import (
    HardwareFingerprint,
    HealthResult,
    NodeDescriptor,
    PingResult,
    RegistrationResult,
    SessionResult,
)

ANY = "*"


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeGatewayClient:
    """Scriptable stand-in for :class:`nodefleet.client.GatewayClient`.

    ``script(method, *outcomes)`` queues results for the next calls (an
    exception instance is raised, anything else returned). ``fail(method,
    exc, key=ANY)`` makes every call for *key* (node id, or proxy for
    ``check_health``/``resolve_ip``) raise. Unscripted calls succeed.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.default_ip = "203.0.113.7"
        self._scripts: dict[str, list] = {}
        self._failures: dict[tuple[str, Any], BaseException] = {}

    def script(self, method: str, *outcomes: Any) -> None:
        self._scripts.setdefault(method, []).extend(outcomes)

    def fail(self, method: str, exc: BaseException, key: Any = ANY) -> None:
        self._failures[(method, key)] = exc

    def clear_failures(self) -> None:
        self._failures.clear()

    def count(self, method: str, key: Any = ANY) -> int:
        return sum(1 for m, k in self.calls if m == method and (key == ANY or k == key))

    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]

    async def _next(self, method: str, key: Any, default: Any) -> Any:
        self.calls.append((method, key))
        exc = self._failures.get((method, key)) or self._failures.get((method, ANY))
        if exc is not None:
            raise exc
        queue = self._scripts.get(method)
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return default

    async def register(self, node: NodeDescriptor, fingerprint: HardwareFingerprint):
        return await self._next(
            "register", node.node_id, RegistrationResult(node.node_id, {"_id": node.node_id})
        )

    async def start_session(self, node: NodeDescriptor):
        return await self._next(
            "start_session", node.node_id, SessionResult(node.node_id, "session-1", {})
        )

    async def stop_session(self, node: NodeDescriptor):
        return await self._next("stop_session", node.node_id, {})

    async def ping(self, node: NodeDescriptor):
        return await self._next("ping", node.node_id, PingResult(node.node_id, "OK"))

    async def check_health(self, proxy: str | None = None):
        return await self._next("check_health", proxy, HealthResult("ok"))

    async def resolve_ip(self, proxy: str | None = None):
        return await self._next("resolve_ip", proxy, self.default_ip)

    async def aclose(self) -> None:
        pass


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds, failing the test after *timeout*."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def fake_client():
    return FakeGatewayClient()


@pytest.fixture
def active():
    return ActiveRegistry()


@pytest.fixture
def fingerprint():
    return HardwareFingerprint("x64", "Fake CPU Model 42", 4, 8 * 1024 ** 3)


@pytest.fixture
def node():
    return NodeDescriptor(node_id="12D3KooWNODEX", hardware_id="hw-x", auth_token="tok", ip="198.51.100.1")


@pytest.fixture
def fast_policy():
    """Short window well under a second, long delay far beyond test runtime."""
    return BackoffPolicy(short_min=0.01, short_max=0.02, long_delay=30.0)
