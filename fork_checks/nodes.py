from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Any, Iterable


IDENTITY_KEY_RE = re.compile(r"^[0-9A-Fa-f]{64}$")
DEFAULT_REST_PORT = 3000


class InvalidNodeError(ValueError):
    pass


@dataclass(frozen=True)
class NodeInfo:
    identity_key: str
    endpoint: str
    friendly_name: str = ""
    rest_url: str | None = None

    @property
    def label(self) -> str:
        return display_label(self.endpoint, self.friendly_name)


def split_host_port(address: str) -> tuple[str, str]:
    """
    Split "host:port" / "[v6]:port" into (host, port).
    Returns an empty port when the address carries none (bare host, bare IPv6).
    """
    s = str(address or "").strip()
    if s.startswith("["):
        end = s.find("]")
        if end != -1:
            host = s[1:end]
            rest = s[end + 1 :]
            return host, rest[1:] if rest.startswith(":") else ""
    if s.count(":") == 1:
        host, port = s.split(":", 1)
        return host, port
    return s, ""


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def abbreviate_if_dns_name(address: str) -> str:
    host, port = split_host_port(address)
    if _is_ip(host):
        return str(address or "").strip()

    short = host.split(".")[0] if host else host
    if not short:
        return str(address or "").strip()
    return f"{short}:{port}" if port else short


def display_label(endpoint: str, friendly_name: str | None) -> str:
    host = abbreviate_if_dns_name(endpoint)
    name = (friendly_name or "").strip()
    if name and name.lower() != host.strip().lower():
        return f"{name}({host})"
    return host


def insert_space_if_exceeds_length(text: str, max_length: int) -> str:
    # Lets Telegram wrap long labels inside <pre> blocks.
    if len(text) > max_length:
        return text[:max_length] + " " + text[max_length:]
    return text


def default_rest_url(endpoint: str) -> str:
    host, _ = split_host_port(endpoint)
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{DEFAULT_REST_PORT}"


def parse_node(entry: Any) -> NodeInfo:
    if isinstance(entry, NodeInfo):
        return entry

    if isinstance(entry, dict):
        raw_key = entry.get("identity_key") or entry.get("IdentityKey") or entry.get("identityKey")
        endpoint = entry.get("endpoint")
        friendly_name = entry.get("friendly_name") or entry.get("friendlyName")
        rest_url = entry.get("rest_url") or entry.get("restUrl")
    else:
        raw_key = getattr(entry, "identity_key", None)
        endpoint = getattr(entry, "endpoint", None)
        friendly_name = getattr(entry, "friendly_name", None)
        rest_url = getattr(entry, "rest_url", None)

    key = str(raw_key or "").strip()
    if not IDENTITY_KEY_RE.match(key):
        raise InvalidNodeError(f"Invalid identity key {raw_key!r}; expected 64 hex characters")

    ep = str(endpoint or "").strip()
    host, _ = split_host_port(ep)
    if not host:
        raise InvalidNodeError(f"Node {key} has an empty endpoint")

    rest = str(rest_url or "").strip().rstrip("/") or None
    return NodeInfo(
        identity_key=key.upper(),
        endpoint=ep,
        friendly_name=str(friendly_name or "").strip(),
        rest_url=rest,
    )


def parse_nodes(entries: Iterable[Any]) -> list[NodeInfo]:
    nodes: list[NodeInfo] = []
    seen: set[str] = set()
    for idx, entry in enumerate(entries):
        try:
            node = parse_node(entry)
        except InvalidNodeError as exc:
            raise InvalidNodeError(f"nodes[{idx}]: {exc}") from exc
        if node.identity_key in seen:
            raise InvalidNodeError(f"nodes[{idx}]: duplicate identity key {node.identity_key}")
        seen.add(node.identity_key)
        nodes.append(node)
    return nodes
