"""Listener that boots new worker virtual machines on request."""

from __future__ import annotations

import logging
import re
import socket
import subprocess
import threading
from collections.abc import Callable, Sequence
from pathlib import Path

from podcluster.node_registry import NodeRegistry

log = logging.getLogger(__name__)

SOCKET_PATH = "/tmp/node_creation.sock"
BUFFER_SIZE = 1024
IMAGE_DIR = "/var/lib/libvirt/images"
BASE_IMAGE = f"{IMAGE_DIR}/linux2022.qcow2"
CREATION_REPLY = "Node creation request received. Booting soon..."

Runner = Callable[[Sequence[str], bool], object]

_REQUEST_RE = re.compile(
    r'\{"cpus":\s*"\s*([+-]?\d+)",\s*"memory":\s*"\s*([+-]?\d+)"'
)


def parse_node_request(request: str | bytes) -> tuple[int, int]:
    """Return ``(cpus, memory)`` from a node creation request."""
    if isinstance(request, bytes):
        request = request.decode("utf-8", errors="replace")
    match = _REQUEST_RE.match(request)
    if not match:
        raise ValueError(f"malformed node creation request: {request!r}")
    return int(match.group(1)), int(match.group(2))


def _overlay_path(index: int) -> str:
    return f"{IMAGE_DIR}/overlay_{index}.qcow2"


def overlay_command(index: int) -> list[str]:
    """The command that makes a copy-on-write disk for node ``index``."""
    return [
        "sudo", "qemu-img", "create",
        "-f", "qcow2",
        "-b", BASE_IMAGE,
        "-F", "qcow2",
        _overlay_path(index),
    ]


def vm_install_command(index: int, memory: int, cpus: int) -> list[str]:
    """The command that boots node ``index`` from its overlay disk."""
    return [
        "sudo", "virt-install",
        "--name", f"my-vm{index}",
        "--memory", str(memory),
        "--vcpus", str(cpus),
        "--disk", f"path={_overlay_path(index)},format=qcow2",
        "--os-variant", "ubuntu20.04",
        "--network", "network=default,model=virtio",
        "--graphics", "none",
        "--noautoconsole",
        "--import",
    ]


def _run(argv: Sequence[str], background: bool) -> object:
    try:
        if background:
            return subprocess.Popen(list(argv))
        return subprocess.run(list(argv), check=False)
    except OSError as exc:
        log.error("Failed to run %s: %s", argv[0], exc)
        return None


def handle_client(
    conn: socket.socket,
    registry: NodeRegistry,
    runner: Runner | None = None,
) -> bool:
    """Serve one creation request on ``conn`` and close it.

    Returns True when a virtual machine was started.
    """
    run = runner or _run
    with conn:
        try:
            data = conn.recv(BUFFER_SIZE)
        except OSError as exc:
            log.error("Failed to read request: %s", exc)
            return False
        if not data:
            return False
        log.info("Received node creation request: %s", data.decode("utf-8", "replace"))
        try:
            cpus, memory = parse_node_request(data)
        except ValueError as exc:
            log.error("%s", exc)
            return False
        log.debug("CPUs requested: %d, memory requested: %dMB", cpus, memory)

        index = len(registry)
        run(overlay_command(index), False)
        run(vm_install_command(index, memory, cpus), True)
        try:
            conn.sendall(CREATION_REPLY.encode())
        except OSError as exc:
            log.error("Failed to send reply: %s", exc)
    return True


def start_node_creation_listener(
    registry: NodeRegistry,
    path: str | Path = SOCKET_PATH,
    stop_event: threading.Event | None = None,
) -> None:
    """Accept creation requests on a Unix socket until ``stop_event`` is set.

    Each client is served on its own thread.
    """
    stop = stop_event or threading.Event()
    sock_path = Path(path)
    sock_path.unlink(missing_ok=True)
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as server:
        server.bind(str(sock_path))
        server.listen(5)
        server.settimeout(0.2)
        log.info("Node creation listener started on %s", sock_path)
        try:
            while not stop.is_set():
                try:
                    conn, _ = server.accept()
                except TimeoutError:
                    continue
                except OSError as exc:
                    log.error("Accept failed: %s", exc)
                    continue
                conn.settimeout(5)
                threading.Thread(
                    target=handle_client, args=(conn, registry), daemon=True
                ).start()
        finally:
            sock_path.unlink(missing_ok=True)