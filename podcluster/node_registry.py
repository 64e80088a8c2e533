"""The master's table of worker nodes and the services that keep it current."""

from __future__ import annotations

import json
import logging
import re
import socket
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path

import zmq

log = logging.getLogger(__name__)

MAX_NODES = 100
REGISTRATION_ENDPOINT = "tcp://*:5555"
HEARTBEAT_ENDPOINT = "tcp://*:5557"
SOCKET_PATH = "/tmp/node_registry.sock"
MONITOR_INTERVAL = 5
HEARTBEAT_TIMEOUT = 8
GET_NODES = b"GET_NODES"

_REGISTRATION_RE = re.compile(
    r'\{"node_ip":"([^"]{1,15})","cpus":\s*([+-]?\d+),"memory":\s*([+-]?\d+)'
)
_HEARTBEAT_RE = re.compile(r"\s*([+-]?\d+)(?!\d)\s*([+-]?\d+)")


class RegistryFull(Exception):
    """Raised when a node registers after the table has reached its limit."""


@dataclass
class NodeInfo:
    """One registered worker node."""

    node_id: int
    node_ip: str
    cpus: int
    memory: int
    last_heartbeat: float
    active: bool = True
    pods: list[int] = field(default_factory=list)
    pod_count: int = 0

    def to_dict(self) -> dict:
        """The node as reported to clients of the registry socket."""
        return {
            "node_id": self.node_id,
            "node_ip": self.node_ip,
            "cpus": self.cpus,
            "memory": self.memory,
            "pod_count": self.pod_count,
            "active": self.active,
        }


class NodeRegistry:
    """A thread-safe table of nodes, indexed by the id it hands out."""

    def __init__(self, max_nodes: int = MAX_NODES) -> None:
        self.max_nodes = max_nodes
        self._nodes: list[NodeInfo] = []
        self._lock = threading.RLock()

    def register(
        self, node_ip: str, cpus: int, memory: int, now: float | None = None
    ) -> NodeInfo:
        """Add a node, giving it the next free id, and return a copy of its entry."""
        stamp = time.time() if now is None else now
        with self._lock:
            if len(self._nodes) >= self.max_nodes:
                raise RegistryFull(f"node table is full ({self.max_nodes} nodes)")
            node = NodeInfo(
                node_id=len(self._nodes),
                node_ip=node_ip,
                cpus=cpus,
                memory=memory,
                last_heartbeat=stamp,
            )
            self._nodes.append(node)
            log.debug(
                "Node %d: ip=%s cpus=%d memory=%dMB pods=%d",
                node.node_id, node.node_ip, node.cpus, node.memory, node.pod_count,
            )
            return _copy(node)

    def record_heartbeat(self, node_id: int, timestamp: float) -> bool:
        """Store a heartbeat time; return False when the id is unknown."""
        with self._lock:
            if not 0 <= node_id < len(self._nodes):
                return False
            self._nodes[node_id].last_heartbeat = timestamp
        log.debug("Heartbeat received: Node %d at %s", node_id, timestamp)
        return True

    def check_liveness(
        self, now: float | None = None, timeout: float = HEARTBEAT_TIMEOUT
    ) -> dict[int, bool]:
        """Mark nodes silent for more than ``timeout`` seconds inactive.

        Returns each node's id mapped to whether it is now active.
        """
        stamp = time.time() if now is None else now
        states: dict[int, bool] = {}
        with self._lock:
            for node in self._nodes:
                node.active = stamp - node.last_heartbeat <= timeout
                states[node.node_id] = node.active
                log.debug(
                    "Node %d is %s", node.node_id, "ACTIVE" if node.active else "INACTIVE"
                )
        return states

    def nodes(self) -> list[NodeInfo]:
        """Copies of every entry, in id order."""
        with self._lock:
            return [_copy(node) for node in self._nodes]

    def to_json(self) -> str:
        """The node table as a JSON array."""
        with self._lock:
            return json.dumps([node.to_dict() for node in self._nodes])

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)


def _copy(node: NodeInfo) -> NodeInfo:
    return replace(node, pods=list(node.pods))


def _text(message: str | bytes) -> str:
    if isinstance(message, bytes):
        return message.decode("utf-8", errors="replace")
    return message


def parse_registration(message: str | bytes) -> tuple[str, int, int]:
    """Return ``(node_ip, cpus, memory)`` from a node's registration request."""
    text = _text(message)
    match = _REGISTRATION_RE.match(text)
    if not match:
        raise ValueError(f"malformed registration request: {text!r}")
    return match.group(1), int(match.group(2)), int(match.group(3))


def registration_reply(node_ip: str, node_id: int) -> str:
    """The reply that tells a node which id it was given."""
    return f'{{"node_ip":"{node_ip}","node_id":{node_id}}}'


def parse_heartbeat(message: str | bytes) -> tuple[int, int]:
    """Return ``(node_id, timestamp)`` from a heartbeat message."""
    text = _text(message)
    match = _HEARTBEAT_RE.match(text)
    if not match:
        raise ValueError(f"malformed heartbeat: {text!r}")
    return int(match.group(1)), int(match.group(2))


def _answer_registration(registry: NodeRegistry, message: bytes) -> str:
    try:
        node_ip, cpus, memory = parse_registration(message)
    except ValueError as exc:
        log.error("%s", exc)
        return json.dumps({"error": "malformed registration"})
    try:
        node = registry.register(node_ip, cpus, memory)
    except RegistryFull as exc:
        log.error("%s", exc)
        return json.dumps({"error": "node table full"})
    log.info(
        "Assigned Node ID %d to %s (CPUs: %d, Memory: %dMB)",
        node.node_id, node_ip, cpus, memory,
    )
    return registration_reply(node_ip, node.node_id)


def registration_server(
    registry: NodeRegistry,
    endpoint: str = REGISTRATION_ENDPOINT,
    stop_event: threading.Event | None = None,
) -> None:
    """Answer node registrations on a REP socket until ``stop_event`` is set."""
    stop = stop_event or threading.Event()
    context = zmq.Context()
    try:
        with context.socket(zmq.REP) as sock:
            sock.setsockopt(zmq.LINGER, 0)
            sock.bind(endpoint)
            log.info("Listening for node registrations on %s", endpoint)
            poller = zmq.Poller()
            poller.register(sock, zmq.POLLIN)
            while not stop.is_set():
                if not dict(poller.poll(200)):
                    continue
                message = sock.recv()
                sock.send_string(_answer_registration(registry, message))
    finally:
        context.term()


def heartbeat_receiver(
    registry: NodeRegistry,
    endpoint: str = HEARTBEAT_ENDPOINT,
    stop_event: threading.Event | None = None,
) -> None:
    """Record heartbeats published by nodes until ``stop_event`` is set."""
    stop = stop_event or threading.Event()
    context = zmq.Context()
    try:
        with context.socket(zmq.SUB) as sock:
            sock.setsockopt(zmq.LINGER, 0)
            sock.bind(endpoint)
            sock.setsockopt(zmq.SUBSCRIBE, b"")
            log.info("Listening for heartbeats on %s", endpoint)
            poller = zmq.Poller()
            poller.register(sock, zmq.POLLIN)
            while not stop.is_set():
                if not dict(poller.poll(200)):
                    continue
                message = sock.recv()
                try:
                    node_id, timestamp = parse_heartbeat(message)
                except ValueError as exc:
                    log.warning("%s", exc)
                    continue
                registry.record_heartbeat(node_id, timestamp)
    finally:
        context.term()


def node_monitor(
    registry: NodeRegistry,
    interval: float = MONITOR_INTERVAL,
    stop_event: threading.Event | None = None,
) -> None:
    """Re-check every node's liveness each ``interval`` seconds until stopped."""
    stop = stop_event or threading.Event()
    while not stop.wait(interval):
        registry.check_liveness()


def socket_server(
    registry: NodeRegistry,
    path: str | Path = SOCKET_PATH,
    stop_event: threading.Event | None = None,
) -> None:
    """Serve the node table as JSON to ``GET_NODES`` requests on a Unix socket."""
    stop = stop_event or threading.Event()
    sock_path = Path(path)
    sock_path.unlink(missing_ok=True)
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as server:
        server.bind(str(sock_path))
        server.listen(5)
        server.settimeout(0.2)
        log.info("Unix socket server running at %s", sock_path)
        try:
            while not stop.is_set():
                try:
                    conn, _ = server.accept()
                except TimeoutError:
                    continue
                except OSError as exc:
                    log.error("Accept failed: %s", exc)
                    continue
                with conn:
                    conn.settimeout(5)
                    try:
                        request = conn.recv(255)
                        if request == GET_NODES:
                            conn.sendall(registry.to_json().encode())
                    except OSError as exc:
                        log.error("Client connection failed: %s", exc)
        finally:
            sock_path.unlink(missing_ok=True)