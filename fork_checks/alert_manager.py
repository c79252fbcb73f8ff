"""Alert decision engine.

`AlertManager` owns every piece of dedup/threshold state and decides, once per
monitoring cycle and per observation kind, whether an alert goes out:

- offline: per-node consecutive offline counters, a per-node repeat interval,
  one aggregated message listing every failed node;
- sync: "stuck" (nobody reached the checkpoint for long enough) or
  "out-of-sync" (enough configured nodes lag far enough), with a global
  repeat interval;
- hash: sent every time the caller reports divergent block hashes.

A stuck height alerts at most once: after a delivered stuck alert the manager
stays quiet until a different stuck height is recorded.

Timestamps come from an injectable clock (seconds, `time.time` by default);
0.0 means "never".
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

import structlog

from fork_checks.alerts import Alert, AlertKind, HashAlert, OfflineAlert, SyncAlert
from fork_checks.config import AlertConfig
from fork_checks.nodes import NodeInfo


logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    enabled: bool

    async def send(self, text: str) -> bool:
        ...


@dataclass
class NodeStatus:
    consecutive_offline_count: int = 0
    last_offline_alert_time: float = 0.0


def _interval_elapsed(now: float, last: float, interval: float) -> bool:
    if not last:
        return True
    return (now - last) >= float(interval)


class AlertManager:
    def __init__(
        self,
        config: AlertConfig,
        node_infos: list[NodeInfo],
        notifier: Notifier,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.node_infos = list(node_infos)
        self.notifier = notifier
        self.clock = clock

        self.last_alert_times: dict[AlertKind, float] = {}
        self.offline_node_stats: dict[str, NodeStatus] = {}
        self.last_stuck_height: int | None = None
        self.last_stuck_time: float = 0.0
        self.stuck_alerted = False

        self._configured_keys = {n.identity_key for n in self.node_infos}

    # --- offline ---------------------------------------------------------

    async def handle_offline_alert(self, failed_connections: Mapping[str, NodeInfo]) -> bool:
        failed = self._clean_failed_connections(failed_connections)
        if not self.should_send_offline_alert(failed):
            return False
        return await self._send(OfflineAlert(not_connected=failed))

    def should_send_offline_alert(self, failed_connections: Mapping[str, NodeInfo]) -> bool:
        """
        Update the per-node offline counters from this cycle's failed set and
        report whether at least one node crossed its threshold and repeat interval.
        """
        now = self.clock()
        threshold = self.config.offline_consecutive_threshold
        repeat_interval = self.config.offline_alert_repeat_interval
        should_alert = False

        for info in self.node_infos:
            key = info.identity_key
            if key not in failed_connections:
                self.offline_node_stats.pop(key, None)
                continue

            status = self.offline_node_stats.get(key)
            if status is None:
                status = NodeStatus(consecutive_offline_count=1)
                self.offline_node_stats[key] = status
            else:
                status.consecutive_offline_count += 1

            if status.consecutive_offline_count > threshold and _interval_elapsed(
                now, status.last_offline_alert_time, repeat_interval
            ):
                should_alert = True

        return should_alert

    def _clean_failed_connections(self, failed_connections: Mapping[Any, Any]) -> dict[str, NodeInfo]:
        out: dict[str, NodeInfo] = {}
        unknown: list[str] = []
        for key, info in (failed_connections or {}).items():
            if not isinstance(key, str) or not key or not isinstance(info, NodeInfo):
                logger.warning("Skipping malformed failed-connection entry", key=repr(key), value=repr(info))
                continue
            key = key.upper()
            if key not in self._configured_keys:
                unknown.append(key)
            out[key] = info
        if unknown:
            logger.warning("Failed connections include unconfigured nodes", identity_keys=unknown[:5])
        return out

    def update_node_status_last_offline_alert_time(self, alert: OfflineAlert) -> None:
        now = self.clock()
        for key in alert.not_connected:
            status = self.offline_node_stats.get(key)
            if status is not None:
                status.last_offline_alert_time = now

    # --- sync ------------------------------------------------------------

    async def handle_sync_alert(
        self,
        checkpoint: int,
        not_reached: Mapping[NodeInfo, int],
        reached: Mapping[NodeInfo, int],
    ) -> bool:
        not_reached = self._clean_heights(not_reached, "not_reached")
        reached = self._clean_heights(reached, "reached")

        if not self.should_send_sync_alert(checkpoint, not_reached, reached):
            return False
        if not _interval_elapsed(
            self.clock(), self.last_alert_times.get(AlertKind.SYNC, 0.0), self.config.sync_alert_repeat_interval
        ):
            logger.info("Sync alert suppressed by repeat interval", checkpoint=checkpoint)
            return False

        return await self._send(SyncAlert(height=int(checkpoint), not_reached=not_reached, reached=reached))

    def should_send_sync_alert(
        self,
        checkpoint: int,
        not_reached: Mapping[NodeInfo, int],
        reached: Mapping[NodeInfo, int],
    ) -> bool:
        if not not_reached:
            return False

        if not reached:
            return self.is_stuck_duration_reached(checkpoint)

        heights_by_key = {node.identity_key: int(h) for node, h in not_reached.items()}
        critical_nodes = 0
        for info in self.node_infos:
            height = heights_by_key.get(info.identity_key)
            if height is None:
                continue
            if int(checkpoint) - height >= self.config.out_of_sync_blocks_threshold:
                critical_nodes += 1
        return critical_nodes >= self.config.out_of_sync_critical_nodes_threshold

    def is_stuck_duration_reached(self, checkpoint: int) -> bool:
        checkpoint = int(checkpoint)
        if self.last_stuck_height != checkpoint:
            self.last_stuck_height = checkpoint
            self.last_stuck_time = self.clock()
            self.stuck_alerted = False
            logger.info("Chain stuck at new height", checkpoint=checkpoint)
            return False

        if self.stuck_alerted:
            return False
        return (self.clock() - self.last_stuck_time) >= self.config.stuck_duration_threshold

    def _clean_heights(self, heights: Mapping[Any, Any], name: str) -> dict[NodeInfo, int]:
        out: dict[NodeInfo, int] = {}
        for node, height in (heights or {}).items():
            if not isinstance(node, NodeInfo) or isinstance(height, bool) or not isinstance(height, int):
                logger.warning("Skipping malformed height entry", observation=name, node=repr(node), height=repr(height))
                continue
            out[node] = height
        return out

    # --- hash ------------------------------------------------------------

    async def handle_hash_alert(self, checkpoint: int, hashes: Mapping[str, str]) -> bool:
        cleaned = {
            str(endpoint): str(h)
            for endpoint, h in (hashes or {}).items()
            if isinstance(endpoint, str) and endpoint and isinstance(h, str) and h
        }
        if len(cleaned) != len(hashes or {}):
            logger.warning("Skipped malformed hash entries", checkpoint=checkpoint)
        if not cleaned:
            logger.warning("Hash alert requested without any hashes", checkpoint=checkpoint)
            return False
        return await self._send(HashAlert(height=int(checkpoint), hashes=cleaned))

    # --- sending ---------------------------------------------------------

    async def _send(self, alert: Alert) -> bool:
        if not self.notifier.enabled:
            logger.info("Notifications disabled; not sending alert", kind=alert.kind.value)
            return False

        message = alert.create_message()
        try:
            ok = await self.notifier.send(message)
        except Exception:
            logger.exception("Alert send crashed", kind=alert.kind.value)
            return False

        if not ok:
            logger.warning("Alert not delivered; state not advanced", kind=alert.kind.value)
            return False

        self.last_alert_times[alert.kind] = self.clock()
        if isinstance(alert, OfflineAlert):
            self.update_node_status_last_offline_alert_time(alert)
        elif isinstance(alert, SyncAlert) and alert.is_stuck and alert.height == self.last_stuck_height:
            self.stuck_alerted = True

        logger.info("Alert sent", kind=alert.kind.value)
        return True
