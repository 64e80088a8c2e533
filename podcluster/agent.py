"""Worker node agent: finds the master, registers, and sends heartbeats."""

from __future__ import annotations

import argparse
import logging
import os
import re
import signal
import socket
import subprocess
import threading
import time
from collections.abc import Sequence
from pathlib import Path

import psutil
import zmq

log = logging.getLogger(__name__)

HEARTBEAT_PORT = 5557
HEARTBEAT_INTERVAL = 3
BROADCAST_PORT = 5000
MASTER_PORT = 5555
MEMINFO_PATH = "/proc/meminfo"
SETUP_SCRIPT = "/root/testing/new_ip.sh"
SHELL_COMMAND = ["ttyd", "-p", "7681", "--writable", "/bin/sh"]
UNKNOWN_IP = "UNKNOWN"

_IP_MARKER = '"ip":"'
_MEMTOTAL_RE = re.compile(r"MemTotal:\s*([+-]?\d+)")
_REPLY_RE = re.compile(r'\{"node_ip":"[^"]{1,15}","node_id":\s*([+-]?\d+)')


def parse_master_announcement(message: str | bytes) -> str | None:
    """Return the master's IP from a broadcast announcement, or None if it has none."""
    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="replace")
    start = message.find(_IP_MARKER)
    if start < 0:
        return None
    start += len(_IP_MARKER)
    end = message.find('"', start)
    if end < 0:
        return None
    return message[start:end]


def get_own_ip() -> str:
    """The first non-loopback IPv4 address of this host, or ``UNKNOWN``."""
    ip = UNKNOWN_IP
    try:
        interfaces = psutil.net_if_addrs()
    except OSError as exc:
        log.error("Cannot list interfaces: %s", exc)
        return ip
    for addresses in interfaces.values():
        candidate = next(
            (
                addr.address
                for addr in addresses
                if addr.family == socket.AF_INET and addr.address != "127.0.0.1"
            ),
            None,
        )
        if candidate is not None:
            ip = candidate
            break
    log.info("The ip address is: %s", ip)
    return ip


def get_cpu_count() -> int:
    """Number of CPUs usable by this process, or -1 if unknown."""
    if hasattr(os, "sched_getaffinity"):
        return len(os.sched_getaffinity(0))
    return os.cpu_count() or -1


def get_memory_size(meminfo_path: str | os.PathLike = MEMINFO_PATH) -> int:
    """Total memory in MB read from a meminfo file.

    Returns -1 when the file cannot be read and 0 when it has no MemTotal line.
    """
    try:
        with open(meminfo_path, encoding="utf-8", errors="replace") as handle:
            for line in handle:
                match = _MEMTOTAL_RE.match(line)
                if match:
                    return int(match.group(1)) // 1024
    except OSError:
        return -1
    return 0


def registration_request(own_ip: str, cpus: int, memory: int) -> str:
    """The message a node sends to register with the master."""
    return (
        f'{{"node_ip":"{own_ip}","cpus":{cpus},"memory":{memory},'
        f'"message_type":"registration"}}'
    )


def parse_registration_reply(reply: str | bytes) -> int:
    """Return the node id the master assigned; raise ``ValueError`` if malformed."""
    if isinstance(reply, bytes):
        reply = reply.decode("utf-8", errors="replace")
    match = _REPLY_RE.match(reply)
    if not match:
        raise ValueError(f"malformed registration reply: {reply!r}")
    return int(match.group(1))


def heartbeat_message(node_id: int, now: float, cpus: int, memory: int) -> str:
    """The heartbeat line ``"<id> <time> <cpus> <memory>"``."""
    return f"{node_id} {int(now)} {cpus} {memory}"


def discover_master(port: int = BROADCAST_PORT) -> str:
    """Wait for a master announcement on the broadcast port and return its IP."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.bind(("", port))
        log.info("Listening for master broadcast...")
        while True:
            data, _ = sock.recvfrom(1023)
            if not data:
                continue
            log.debug("Received: %s", data.decode("utf-8", errors="replace"))
            ip = parse_master_announcement(data)
            if ip is not None:
                return ip


def request_node_id(master_ip: str | None, port: int = MASTER_PORT) -> int:
    """Register this node with the master and return the id it was given, or -1."""
    if not master_ip:
        log.error("No master IP found, cannot request node ID")
        return -1
    address = f"tcp://{master_ip}:{port}"
    context = zmq.Context()
    try:
        with context.socket(zmq.REQ) as requester:
            requester.setsockopt(zmq.LINGER, 0)
            try:
                requester.connect(address)
            except zmq.ZMQError as exc:
                log.error("Connect to %s failed: %s", address, exc)
                return -1
            request = registration_request(get_own_ip(), get_cpu_count(), get_memory_size())
            log.info("Sending registration request to %s: %s", master_ip, request)
            requester.send_string(request)
            reply = requester.recv()[:255]
    finally:
        context.term()
    try:
        node_id = parse_registration_reply(reply)
    except ValueError as exc:
        log.error("%s", exc)
        return -1
    log.info("Registered with Node ID: %d", node_id)
    return node_id


def send_heartbeats(
    master_ip: str | None,
    node_id: int,
    stop_event: threading.Event | None = None,
    port: int = HEARTBEAT_PORT,
    interval: float = HEARTBEAT_INTERVAL,
) -> None:
    """Publish a heartbeat to the master every ``interval`` seconds until stopped."""
    if not master_ip:
        log.error("No master IP, not sending heartbeats")
        return
    stop = stop_event or threading.Event()
    endpoint = f"tcp://{master_ip}:{port}"
    context = zmq.Context()
    try:
        with context.socket(zmq.PUB) as publisher:
            publisher.setsockopt(zmq.LINGER, 0)
            if stop.wait(1):
                return
            try:
                publisher.connect(endpoint)
            except zmq.ZMQError as exc:
                log.error("Failed to connect heartbeat socket to %s: %s", endpoint, exc)
                return
            while not stop.wait(interval):
                message = heartbeat_message(
                    node_id, time.time(), get_cpu_count(), get_memory_size()
                )
                publisher.send_string(message)
                log.debug("Sent heartbeat: %s", message)
    finally:
        context.term()


def start_shell() -> subprocess.Popen | None:
    """Start the web terminal; return its process, or None if it could not start."""
    try:
        process = subprocess.Popen(SHELL_COMMAND)
    except OSError as exc:
        log.error("Failed to start shell: %s", exc)
        return None
    log.info("Started shell with PID: %d", process.pid)
    return process


def _run_setup_script(path: str) -> None:
    if not Path(path).exists():
        log.warning("Setup script %s not found", path)
        return
    try:
        subprocess.run([path], check=False)
    except OSError as exc:
        log.error("Failed to run %s: %s", path, exc)
        return
    log.info("Shell script executed successfully")


def main(argv: Sequence[str] | None = None) -> int:
    """Run the node agent until SIGINT."""
    parser = argparse.ArgumentParser(prog="podcluster-agent", description=__doc__)
    parser.add_argument("--setup-script", default=SETUP_SCRIPT)
    parser.add_argument("--broadcast-port", type=int, default=BROADCAST_PORT)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="[%(name)s] %(message)s")
    _run_setup_script(args.setup_script)

    master_ip = discover_master(args.broadcast_port)
    log.info("The master IP address is: %s", master_ip)
    node_id = request_node_id(master_ip)
    log.info("Node ID: %d", node_id)

    stop = threading.Event()
    shell: subprocess.Popen | None = None

    def _on_sigint(signum: int, frame: object) -> None:
        print("\nSIGINT received. Stopping heartbeat thread and shell process...")
        stop.set()
        if shell is not None and shell.poll() is None:
            shell.terminate()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        heartbeat = threading.Thread(
            target=send_heartbeats,
            args=(master_ip, node_id, stop),
            name="heartbeat",
            daemon=True,
        )
        heartbeat.start()
        shell = start_shell()
        if shell is not None:
            shell.wait()
        while heartbeat.is_alive():
            heartbeat.join(0.5)
    finally:
        signal.signal(signal.SIGINT, previous)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())