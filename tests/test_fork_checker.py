from __future__ import annotations

import pytest

from fork_checks.alert_manager import AlertManager
from fork_checks.config import AlertConfig, Config
from fork_checks.main import ForkChecker
from fork_checks.node_pool import HashesAreNotTheSameError, NoConnectedPeersError
from fork_checks.nodes import NodeInfo


NODES = [
    NodeInfo(identity_key=f"{i + 1:064X}", endpoint=f"peer{i + 1}.example.io:7900", friendly_name=f"Peer-{i + 1}")
    for i in range(3)
]


class FakeNotifier:
    enabled = True

    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send(self, text: str) -> bool:
        self.messages.append(text)
        return True


class FakePool:
    def __init__(self) -> None:
        self.failed: dict[str, NodeInfo] = {}
        self.heights: dict[NodeInfo, int] = {n: 1000 for n in NODES}
        self.hashes: dict[str, str] = {n.endpoint: "AA" for n in NODES}
        self.wait_error: Exception | None = None
        self.calls: list[str] = []

    async def connect_to_nodes(self, nodes: list[NodeInfo], discover: bool) -> dict[str, NodeInfo]:
        self.calls.append("connect")
        return dict(self.failed)

    async def wait_height(self, height: int) -> tuple[dict[NodeInfo, int], dict[NodeInfo, int]]:
        self.calls.append(f"wait:{height}")
        if self.wait_error is not None:
            raise self.wait_error
        not_reached = {n: h for n, h in self.heights.items() if h < height}
        reached = {n: h for n, h in self.heights.items() if h >= height}
        return not_reached, reached

    async def compare_hashes(self, height: int) -> dict[str, str]:
        self.calls.append(f"hashes:{height}")
        if len(set(self.hashes.values())) > 1:
            raise HashesAreNotTheSameError(height, self.hashes)
        return dict(self.hashes)


class FakeChain:
    async def get_blockchain_height(self) -> int:
        return 4242


def _checker(**config_values) -> tuple[ForkChecker, FakePool, FakeNotifier]:
    config = Config(checkpoint=1000, height_check_interval=2, cycle_interval_seconds=0, notify=True, **config_values)
    notifier = FakeNotifier()
    alert_config = AlertConfig(offline_consecutive_blocks_threshold=0, out_of_sync_critical_nodes_threshold=1)
    manager = AlertManager(alert_config, NODES, notifier)
    pool = FakePool()
    return ForkChecker(config, alert_manager=manager, node_pool=pool, chain_client=FakeChain()), pool, notifier


@pytest.mark.asyncio
async def test_init_checkpoint_from_config_or_chain() -> None:
    checker, _, _ = _checker()
    assert await checker.init_checkpoint() == 1000

    checker.config = Config(checkpoint=0)
    assert await checker.init_checkpoint() == 4242


@pytest.mark.asyncio
async def test_healthy_cycle_advances_checkpoint_without_alerts() -> None:
    checker, pool, notifier = _checker()
    await checker.init_checkpoint()

    assert await checker.run_cycle() is True
    assert checker.checkpoint == 1002
    assert pool.calls == ["connect", "wait:1000", "hashes:1000"]
    assert notifier.messages == []


@pytest.mark.asyncio
async def test_stuck_cycle_keeps_checkpoint_and_skips_hash_compare() -> None:
    checker, pool, _ = _checker()
    await checker.init_checkpoint()
    pool.heights = {n: 990 for n in NODES}

    assert await checker.run_cycle() is False
    assert checker.checkpoint == 1000
    assert "hashes:1000" not in pool.calls
    assert checker.alert_manager.last_stuck_height == 1000


@pytest.mark.asyncio
async def test_fork_triggers_hash_alert_and_still_advances() -> None:
    checker, pool, notifier = _checker()
    await checker.init_checkpoint()
    pool.hashes = {NODES[0].endpoint: "AA", NODES[1].endpoint: "BB", NODES[2].endpoint: "AA"}

    assert await checker.run_cycle() is True
    assert checker.checkpoint == 1002
    assert len(notifier.messages) == 1
    assert "Fork Alert" in notifier.messages[0]


@pytest.mark.asyncio
async def test_offline_nodes_are_reported_before_height_checks() -> None:
    checker, pool, notifier = _checker()
    await checker.init_checkpoint()
    pool.failed = {NODES[2].identity_key: NODES[2]}
    pool.heights = {NODES[0]: 1000, NODES[1]: 1000}

    await checker.run_cycle()
    assert len(notifier.messages) == 1
    assert "Offline nodes" in notifier.messages[0]


@pytest.mark.asyncio
async def test_start_once_survives_pool_errors() -> None:
    checker, pool, notifier = _checker()
    await checker.init_checkpoint()
    pool.wait_error = NoConnectedPeersError()

    await checker.start(once=True)
    assert checker.checkpoint == 1000

    pool.wait_error = RuntimeError("pool exploded")
    await checker.start(once=True)
    assert checker.checkpoint == 1000
    assert notifier.messages == []
