import socket
import threading
import time
from types import SimpleNamespace
from unittest import mock

import pytest

from podcluster.agent import (
    get_cpu_count,
    get_memory_size,
    get_own_ip,
    heartbeat_message,
    parse_master_announcement,
    parse_registration_reply,
    registration_request,
    request_node_id,
    send_heartbeats,
)
from podcluster.broadcast import master_message
from podcluster.node_registry import (
    NodeRegistry,
    heartbeat_receiver,
    parse_heartbeat,
    parse_registration,
    registration_reply,
    registration_server,
)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_announcement_round_trip():
    assert parse_master_announcement(master_message("10.1.2.3")) == "10.1.2.3"
    assert parse_master_announcement(master_message("10.1.2.3").encode()) == "10.1.2.3"


@pytest.mark.parametrize("message", ['{"type":"master"}', '{"ip":"10.0.0.1', ""])
def test_announcement_without_ip(message):
    assert parse_master_announcement(message) is None


def test_memory_size_from_meminfo(tmp_path):
    meminfo = tmp_path / "meminfo"
    meminfo.write_text("MemTotal:        2048 kB\nMemFree:   1024 kB\n")
    assert get_memory_size(meminfo) == 2


def test_memory_size_missing_line(tmp_path):
    meminfo = tmp_path / "meminfo"
    meminfo.write_text("MemFree:   1024 kB\n")
    assert get_memory_size(meminfo) == 0


def test_memory_size_missing_file(tmp_path):
    assert get_memory_size(tmp_path / "absent") == -1


def test_cpu_count_positive():
    assert get_cpu_count() >= 1


def test_own_ip_skips_loopback():
    addrs = {
        "lo": [SimpleNamespace(family=socket.AF_INET, address="127.0.0.1")],
        "eth0": [
            SimpleNamespace(family=socket.AF_INET6, address="fe80::1"),
            SimpleNamespace(family=socket.AF_INET, address="192.168.1.20"),
        ],
    }
    with mock.patch("podcluster.agent.psutil.net_if_addrs", return_value=addrs):
        assert get_own_ip() == "192.168.1.20"


def test_own_ip_unknown_without_interfaces():
    addrs = {"lo": [SimpleNamespace(family=socket.AF_INET, address="127.0.0.1")]}
    with mock.patch("podcluster.agent.psutil.net_if_addrs", return_value=addrs):
        assert get_own_ip() == "UNKNOWN"


def test_registration_request_round_trip():
    request = registration_request("10.0.0.5", 4, 2048)
    assert parse_registration(request) == ("10.0.0.5", 4, 2048)
    assert request.endswith('"message_type":"registration"}')


def test_registration_reply_round_trip():
    assert parse_registration_reply(registration_reply("10.0.0.5", 7)) == 7
    assert parse_registration_reply(registration_reply("10.0.0.5", 0).encode()) == 0


def test_registration_reply_malformed():
    with pytest.raises(ValueError):
        parse_registration_reply('{"error":"node table full"}')


def test_heartbeat_round_trip():
    message = heartbeat_message(3, 1700000000.7, 8, 4096)
    assert message.split()[2:] == ["8", "4096"]
    assert parse_heartbeat(message) == (3, 1700000000)


def test_request_node_id_without_master():
    assert request_node_id(None) == -1


def test_request_node_id_against_registration_server():
    registry = NodeRegistry()
    port = _free_port()
    stop = threading.Event()
    server = threading.Thread(
        target=registration_server,
        args=(registry, f"tcp://127.0.0.1:{port}", stop),
        daemon=True,
    )
    server.start()
    try:
        assert request_node_id("127.0.0.1", port) == 0
        assert request_node_id("127.0.0.1", port) == 1
    finally:
        stop.set()
        server.join(5)
    assert len(registry) == 2


def test_heartbeats_reach_receiver():
    registry = NodeRegistry()
    registry.register("10.0.0.9", 1, 1, now=0)
    port = _free_port()
    stop = threading.Event()
    receiver = threading.Thread(
        target=heartbeat_receiver,
        args=(registry, f"tcp://127.0.0.1:{port}", stop),
        daemon=True,
    )
    sender = threading.Thread(
        target=send_heartbeats,
        kwargs={
            "master_ip": "127.0.0.1",
            "node_id": 0,
            "stop_event": stop,
            "port": port,
            "interval": 0.1,
        },
        daemon=True,
    )
    receiver.start()
    sender.start()
    try:
        deadline = time.time() + 10
        while time.time() < deadline and registry.nodes()[0].last_heartbeat == 0:
            time.sleep(0.05)
    finally:
        stop.set()
        sender.join(5)
        receiver.join(5)
    assert registry.nodes()[0].last_heartbeat > 0


def test_send_heartbeats_without_master_returns():
    stop = threading.Event()
    send_heartbeats(None, 0, stop)
    assert not stop.is_set()