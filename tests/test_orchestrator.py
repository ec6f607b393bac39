"""Tests for FleetOrchestrator: fan-out, identity strategies, deferred starts, re-runs."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from nodefleet.client import NodeNetworkError, NodeProxyError
from nodefleet.config import FleetConfig
from nodefleet.faults import BackoffPolicy
from nodefleet.identity import IdentityStore
from nodefleet.models import IdentityStrategy, NodeDescriptor, Phase
from nodefleet.orchestrator import (
    FleetOrchestrator,
    config_registry_loader,
    synthetic_ip,
)
from nodefleet.registry import NodeRegistry, RegistryError


def _nodes(*ids: str, proxy: bool = False) -> NodeRegistry:
    return NodeRegistry(
        NodeDescriptor(
            node_id=i,
            hardware_id=f"hw-{i}",
            auth_token="tok",
            proxy=f"http://{i}.proxy:8080" if proxy else None,
        )
        for i in ids
    )


@pytest.fixture
def store(tmp_path):
    s = IdentityStore(tmp_path / "identity.db")
    yield s
    s.close()


@pytest.fixture
def make_orchestrator(fake_client, store):
    def factory(registry, strategy=IdentityStrategy.NONE, long_delay=30.0, **kwargs):
        loader = registry if callable(registry) else (lambda: registry)
        orch = FleetOrchestrator(
            client=fake_client,
            identity_store=store,
            registry_loader=loader,
            strategy=strategy,
            policy=BackoffPolicy(short_min=0.01, short_max=0.02, long_delay=long_delay),
            heartbeat_interval=kwargs.pop("heartbeat_interval", 10.0),
            restart_delay=kwargs.pop("restart_delay", 0.01),
            **kwargs,
        )
        return orch

    return factory


class TestSyntheticIp:
    def test_stable(self):
        assert synthetic_ip("node-a") == synthetic_ip("node-a")

    def test_differs_per_node(self):
        assert synthetic_ip("node-a") != synthetic_ip("node-b")

    def test_public_looking(self):
        for i in range(200):
            octets = [int(o) for o in synthetic_ip(f"node-{i}").split(".")]
            assert len(octets) == 4
            assert octets[0] not in (0, 10, 127, 172, 192)
            assert 11 <= octets[0] <= 223
            assert all(0 <= o <= 255 for o in octets)
            assert octets[3] != 0


class TestStartup:
    async def test_starts_every_node(self, make_orchestrator, fake_client, wait_until):
        orch = make_orchestrator(_nodes("a", "b", "c"))
        report = await orch.run()
        assert sorted(report.started) == ["a", "b", "c"]
        assert report.deferred == [] and report.skipped == []

        await wait_until(lambda: fake_client.count("ping") == 3)
        for node_id in ("a", "b", "c"):
            assert orch.is_running(node_id)
            assert orch.active.phase(node_id) is Phase.HEARTBEATING
        await orch.shutdown()

    async def test_direct_strategy_resolves_ip_without_proxy(self, make_orchestrator, fake_client, wait_until):
        orch = make_orchestrator(_nodes("a", "b", proxy=True))
        await orch.run()
        assert fake_client.count("resolve_ip", None) == 2
        sup = orch.supervisor("a")
        assert sup.node.proxy is None
        assert sup.node.ip == fake_client.default_ip
        await orch.shutdown()

    async def test_proxy_strategy_resolves_through_proxy(self, make_orchestrator, fake_client):
        orch = make_orchestrator(_nodes("a", proxy=True), strategy=IdentityStrategy.PROXY)
        await orch.run()
        assert fake_client.count("resolve_ip", "http://a.proxy:8080") == 1
        assert orch.supervisor("a").node.proxy == "http://a.proxy:8080"
        await orch.shutdown()

    async def test_proxy_strategy_skips_node_without_proxy(self, make_orchestrator, fake_client):
        orch = make_orchestrator(_nodes("a"), strategy=IdentityStrategy.PROXY)
        report = await orch.run()
        assert report.skipped == ["a"]
        assert fake_client.calls == []
        await orch.shutdown()

    async def test_node_without_proxy_reconsidered_next_run(self, make_orchestrator, fake_client):
        registries = iter([_nodes("a"), _nodes("a", proxy=True)])
        orch = make_orchestrator(lambda: next(registries), strategy=IdentityStrategy.PROXY)
        first = await orch.run()
        assert first.skipped == ["a"]
        assert "a" not in orch.skipped

        second = await orch.run(initial=False)
        assert second.started == ["a"]
        assert fake_client.count("resolve_ip", "http://a.proxy:8080") == 1
        await orch.shutdown()

    async def test_synthetic_strategy_skips_lookup(self, make_orchestrator, fake_client):
        orch = make_orchestrator(_nodes("a", "b"), strategy=IdentityStrategy.SYNTHETIC)
        report = await orch.run()
        assert sorted(report.started) == ["a", "b"]
        assert fake_client.count("resolve_ip") == 0
        assert orch.supervisor("a").node.ip == synthetic_ip("a")
        await orch.shutdown()

    async def test_fingerprint_once_per_node(self, make_orchestrator, store):
        spy = MagicMock(wraps=store)
        orch = make_orchestrator(_nodes("a", "b"))
        orch.identity_store = spy
        await orch.run()
        await orch.run(initial=False)
        assert spy.get_or_create_fingerprint.call_count == 2
        assert sorted(store.known_nodes()) == ["a", "b"]
        await orch.shutdown()

    async def test_fingerprints_ready_before_supervisors(self, make_orchestrator, store, fake_client):
        seen = []

        original = fake_client.resolve_ip

        async def resolve(proxy=None):
            seen.append(sorted(store.known_nodes()))
            return await original(proxy)

        fake_client.resolve_ip = resolve
        orch = make_orchestrator(_nodes("a", "b", "c"))
        await orch.run()
        assert seen and all(s == ["a", "b", "c"] for s in seen)
        await orch.shutdown()

    async def test_rerun_does_not_duplicate_supervisors(self, make_orchestrator, fake_client, wait_until):
        orch = make_orchestrator(_nodes("a", "b"))
        await orch.run()
        await wait_until(lambda: fake_client.count("ping") == 2)

        report = await orch.run(initial=False)
        assert sorted(report.already_running) == ["a", "b"]
        assert report.started == []
        await asyncio.sleep(0.05)
        assert fake_client.count("register") == 2
        await orch.shutdown()

    async def test_slow_node_does_not_block_others(self, make_orchestrator, fake_client, wait_until):
        gate = asyncio.Event()
        original = fake_client.resolve_ip

        async def resolve(proxy=None):
            if proxy == "http://slow.proxy:8080":
                await gate.wait()
            return await original(proxy)

        fake_client.resolve_ip = resolve
        orch = make_orchestrator(_nodes("fast", "slow", proxy=True), strategy=IdentityStrategy.PROXY)
        run = asyncio.create_task(orch.run())

        await wait_until(lambda: fake_client.count("ping", "fast") == 1)
        assert not run.done()
        assert not orch.is_running("slow")

        gate.set()
        report = await run
        assert sorted(report.started) == ["fast", "slow"]
        await orch.shutdown()


class TestDeferredStart:
    async def test_resolve_failure_retried_once_then_skipped(self, make_orchestrator, fake_client, wait_until):
        """Y fails IP lookup twice: exactly one deferred retry, then never again."""
        bad = "http://y.proxy:8080"
        fake_client.fail("resolve_ip", NodeProxyError("tunnel failed"), key=bad)
        orch = make_orchestrator(_nodes("x", "y", proxy=True), strategy=IdentityStrategy.PROXY, long_delay=0.05)

        report = await orch.run()
        assert report.started == ["x"]
        assert report.deferred == ["y"]
        assert not orch.is_running("y")
        assert fake_client.count("resolve_ip", bad) == 1

        await wait_until(lambda: "y" in orch.skipped)
        assert fake_client.count("resolve_ip", bad) == 2

        await asyncio.sleep(0.2)
        assert fake_client.count("resolve_ip", bad) == 2
        assert fake_client.count("register", "y") == 0
        assert orch.is_running("x")

        report = await orch.run(initial=False)
        assert report.skipped == ["y"]
        assert fake_client.count("resolve_ip", bad) == 2
        await orch.shutdown()

    async def test_deferred_node_waits_long_delay(self, make_orchestrator, fake_client):
        fake_client.script("resolve_ip", NodeNetworkError("timeout"))
        orch = make_orchestrator(_nodes("y"), long_delay=5.0)
        report = await orch.run()
        assert report.deferred == ["y"]
        await asyncio.sleep(0.1)
        assert fake_client.count("resolve_ip") == 1
        await orch.shutdown()

    async def test_deferred_retry_success_starts_supervisor(self, make_orchestrator, fake_client, wait_until):
        fake_client.script("resolve_ip", NodeNetworkError("timeout"))
        orch = make_orchestrator(_nodes("y"), long_delay=0.05)
        report = await orch.run()
        assert report.deferred == ["y"]

        await wait_until(lambda: fake_client.count("ping", "y") == 1)
        assert orch.is_running("y")
        assert "y" not in orch.skipped
        await orch.shutdown()

    async def test_pending_node_reported_deferred_on_rerun(self, make_orchestrator, fake_client):
        fake_client.script("resolve_ip", NodeNetworkError("timeout"))
        orch = make_orchestrator(_nodes("y"), long_delay=5.0)
        await orch.run()
        report = await orch.run(initial=False)
        assert report.deferred == ["y"]
        assert fake_client.count("resolve_ip") == 1
        await orch.shutdown()


class TestRunForever:
    async def test_startup_crash_triggers_rerun(self, make_orchestrator, fake_client, wait_until):
        calls = []

        def loader():
            calls.append(1)
            if len(calls) == 1:
                raise OSError("id.txt unreadable")
            return _nodes("a")

        orch = make_orchestrator(loader)
        task = asyncio.create_task(orch.run_forever())
        await wait_until(lambda: fake_client.count("ping") == 1)
        assert len(calls) == 2
        assert not task.done()

        await orch.shutdown()
        await asyncio.wait_for(task, timeout=1.0)

    async def test_shutdown_stops_everything(self, make_orchestrator, fake_client, wait_until):
        orch = make_orchestrator(_nodes("a", "b"))
        task = asyncio.create_task(orch.run_forever())
        await wait_until(lambda: fake_client.count("ping") == 2)

        await orch.shutdown()
        await asyncio.wait_for(task, timeout=1.0)
        assert orch.active.active_nodes() == []
        assert not orch.is_running("a")

    async def test_shutdown_is_idempotent(self, make_orchestrator):
        orch = make_orchestrator(_nodes("a"))
        await orch.run()
        await asyncio.gather(orch.shutdown(), orch.shutdown())
        await orch.shutdown()

    async def test_shutdown_stops_sessions_when_configured(self, make_orchestrator, fake_client, wait_until):
        orch = make_orchestrator(_nodes("a"), stop_sessions_on_exit=True)
        await orch.run()
        await wait_until(lambda: fake_client.count("ping") == 1)
        await orch.shutdown()
        assert fake_client.count("stop_session", "a") == 1


class TestConfigWiring:
    @pytest.mark.parametrize("use_accounts", [False, True])
    def test_proxy_strategy_requires_proxy_file(self, tmp_path, use_accounts):
        (tmp_path / "id.txt").write_text("node-a:hw-a\n")
        (tmp_path / "user.txt").write_text("token-1\n")
        accounts = [{"token": "t", "nodes": [{"node_id": "n1", "hardware_id": "h1"}]}]
        config = FleetConfig(
            strategy="proxy",
            ids_file=str(tmp_path / "id.txt"),
            token_file=str(tmp_path / "user.txt"),
            proxy_file=str(tmp_path / "proxy.txt"),
            accounts=accounts if use_accounts else [],
        )
        with pytest.raises(RegistryError, match="proxy.txt"):
            config_registry_loader(config)()

    def test_loader_reads_files(self, tmp_path):
        (tmp_path / "id.txt").write_text("node-a:hw-a\nnode-b:hw-b\n")
        (tmp_path / "user.txt").write_text("token-1\n")
        config = FleetConfig(ids_file=str(tmp_path / "id.txt"), token_file=str(tmp_path / "user.txt"))
        registry = config_registry_loader(config)()
        assert registry.node_ids == ["node-a", "node-b"]
        assert all(n.proxy is None for n in registry)

    def test_loader_binds_proxies_for_proxy_strategy(self, tmp_path):
        (tmp_path / "id.txt").write_text("node-a:hw-a\n")
        (tmp_path / "user.txt").write_text("token-1\n")
        (tmp_path / "proxy.txt").write_text("10.0.0.1:3128\n")
        config = FleetConfig(
            strategy="proxy",
            ids_file=str(tmp_path / "id.txt"),
            token_file=str(tmp_path / "user.txt"),
            proxy_file=str(tmp_path / "proxy.txt"),
        )
        registry = config_registry_loader(config)()
        assert registry.get("node-a").proxy == "http://10.0.0.1:3128"

    def test_loader_prefers_accounts(self, tmp_path):
        (tmp_path / "proxy.txt").write_text("socks5://10.0.0.2:1080\n")
        config = FleetConfig(
            strategy="proxy",
            proxy_file=str(tmp_path / "proxy.txt"),
            accounts=[{"token": "t", "nodes": [{"node_id": "n1", "hardware_id": "h1"}]}],
        )
        registry = config_registry_loader(config)()
        assert registry.get("n1").proxy == "socks5://10.0.0.2:1080"

    async def test_from_config(self, tmp_path):
        config = FleetConfig(data_dir=str(tmp_path), strategy="synthetic", heartbeat_interval=60)
        orch = FleetOrchestrator.from_config(config)
        assert orch.strategy is IdentityStrategy.SYNTHETIC
        assert orch.heartbeat_interval == 60
        assert orch.policy.long_delay == 900.0
        await orch.shutdown()

    def test_from_config_rejects_bad_strategy(self, tmp_path):
        with pytest.raises(ValueError):
            FleetOrchestrator.from_config(FleetConfig(data_dir=str(tmp_path), strategy="vpn"))
