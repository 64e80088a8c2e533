"""Announcing the master's address to every local IPv4 subnet."""

from __future__ import annotations

import ipaddress
import json
import logging
import socket
import threading
from dataclasses import dataclass

import psutil

log = logging.getLogger(__name__)

BROADCAST_PORT = 5000
BROADCAST_INTERVAL = 5
REGISTRATION_PORT = 5555
MAX_INTERFACES = 10


@dataclass(frozen=True)
class Interface:
    """A local IPv4 address together with its subnet broadcast address."""

    name: str
    ip: str
    broadcast: str


def broadcast_address(ip: str, netmask: str) -> str:
    """Return the broadcast address of the subnet ``ip``/``netmask``."""
    host = int(ipaddress.IPv4Address(ip))
    mask = int(ipaddress.IPv4Address(netmask))
    return str(ipaddress.IPv4Address(host | (~mask & 0xFFFFFFFF)))


def get_local_ips(limit: int = MAX_INTERFACES) -> list[Interface]:
    """List up to ``limit`` non-loopback IPv4 interfaces that have a netmask."""
    found: list[Interface] = []
    for name, addresses in psutil.net_if_addrs().items():
        for addr in addresses:
            if len(found) >= limit:
                return found
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            if addr.address.split(".", 1)[0] == "127":
                continue
            iface = Interface(name, addr.address, broadcast_address(addr.address, addr.netmask))
            log.info("Interface: %s, IP: %s, Broadcast: %s", name, iface.ip, iface.broadcast)
            found.append(iface)
    return found


def master_message(ip: str) -> str:
    """The announcement that tells nodes where the master is."""
    return f'{{"type":"master", "ip":{json.dumps(ip)}}}'


def broadcast(
    stop_event: threading.Event | None = None,
    port: int = BROADCAST_PORT,
    interval: float = BROADCAST_INTERVAL,
) -> None:
    """Send the master announcement to every subnet every ``interval`` seconds.

    Runs until ``stop_event`` is set; returns at once if no interface is usable.
    """
    interfaces = get_local_ips()
    if not interfaces:
        log.error("No suitable network interfaces found")
        return

    master_ip = interfaces[0].ip
    payload = master_message(master_ip).encode()
    stop = stop_event or threading.Event()

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.bind(("", 0))
        log.info("Starting broadcast service using IP: %s", master_ip)
        while True:
            for iface in interfaces:
                try:
                    sent = sock.sendto(payload, (iface.broadcast, port))
                except OSError as exc:
                    log.error("Failed to send broadcast to subnet %s: %s", iface.broadcast, exc)
                else:
                    log.debug("Sent %d bytes to %s", sent, iface.broadcast)
            if stop.wait(interval):
                break