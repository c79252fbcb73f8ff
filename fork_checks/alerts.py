from __future__ import annotations

import enum
import html
from dataclasses import dataclass, field
from typing import Mapping

from fork_checks.nodes import NodeInfo, display_label, insert_space_if_exceeds_length


class AlertKind(enum.Enum):
    OFFLINE = "offline"
    SYNC = "sync"
    HASH = "hash"


# Out-of-sync table: label column width depends on how many rows are shown.
OUT_OF_SYNC_COMPACT_ROWS = 5
OUT_OF_SYNC_MIN_WIDTH = 23
OUT_OF_SYNC_MAX_WIDTH = 28


def _esc(text: str) -> str:
    return html.escape(str(text), quote=False)


def _pre(lines: list[str]) -> str:
    return "<pre>" + "\n".join(_esc(line) for line in lines) + "</pre>"


def _labels(nodes: Mapping[NodeInfo, int]) -> list[str]:
    return sorted(node.label for node in nodes)


@dataclass(frozen=True)
class OfflineAlert:
    not_connected: Mapping[str, NodeInfo]
    kind: AlertKind = field(default=AlertKind.OFFLINE, init=False)

    def create_message(self) -> str:
        labels = sorted(display_label(n.endpoint, n.friendly_name) for n in self.not_connected.values())
        parts = [
            "<b>⚠️ Warning - Offline nodes </b>",
            f"\n\nFailed connection  ({len(labels)}):",
        ]
        if labels:
            parts.append(_pre(labels))
        return "".join(parts)


@dataclass(frozen=True)
class SyncAlert:
    height: int
    not_reached: Mapping[NodeInfo, int]
    reached: Mapping[NodeInfo, int]
    kind: AlertKind = field(default=AlertKind.SYNC, init=False)

    @property
    def is_stuck(self) -> bool:
        return not self.reached

    def _synced_section(self) -> str:
        out = f"\n\nSynced at <b>{int(self.height)}</b> ({len(self.reached)}):"
        if not self.reached:
            return out
        return out + _pre(_labels(self.reached))

    def _out_of_sync_section(self) -> str:
        out = f"\n\nOut-of-sync ({len(self.not_reached)}):"
        if not self.not_reached:
            return out

        width = OUT_OF_SYNC_MIN_WIDTH if len(self.not_reached) <= OUT_OF_SYNC_COMPACT_ROWS else OUT_OF_SYNC_MAX_WIDTH
        rows: list[tuple[str, int]] = []
        for node, observed in self.not_reached.items():
            label = node.label
            if node.friendly_name:
                label = insert_space_if_exceeds_length(label, width)
            rows.append((label, int(observed)))
        rows.sort(key=lambda r: (r[0], r[1]))

        label_col = max(len(label) for label, _ in rows)
        lines = []
        for label, observed in rows:
            lag = int(self.height) - observed
            lines.append(f"{label.ljust(label_col)} {observed:>8} (-{lag})")
        return out + _pre(lines)

    def create_message(self) -> str:
        header = "<b>❗ Stuck Alert </b>" if self.is_stuck else "<b>⚠️ Warning </b>"
        return header + self._synced_section() + self._out_of_sync_section()


@dataclass(frozen=True)
class HashAlert:
    height: int
    hashes: Mapping[str, str]
    kind: AlertKind = field(default=AlertKind.HASH, init=False)

    def groups(self) -> list[tuple[str, list[str]]]:
        by_hash: dict[str, list[str]] = {}
        for endpoint, block_hash in self.hashes.items():
            by_hash.setdefault(str(block_hash).upper(), []).append(str(endpoint))
        return [(h, sorted(endpoints)) for h, endpoints in sorted(by_hash.items())]

    def create_message(self) -> str:
        lines: list[str] = []
        for block_hash, endpoints in self.groups():
            lines.append(f"{block_hash}:")
            lines.append("")
            lines.extend(endpoints)
            lines.append("")
        return (
            "<b>❗Fork Alert </b>\n\n"
            f"Inconsistent block hash at:  <b>{int(self.height)}</b>\n"
            + _pre(lines)
        )


Alert = OfflineAlert | SyncAlert | HashAlert
