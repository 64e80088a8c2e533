import socket
import threading
import time

import pytest

from podcluster.node_creation import (
    CREATION_REPLY,
    handle_client,
    overlay_command,
    parse_node_request,
    start_node_creation_listener,
    vm_install_command,
)
from podcluster.node_registry import NodeRegistry


class _Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, argv, background):
        self.calls.append((list(argv), background))


def _value_after(argv, flag):
    return argv[argv.index(flag) + 1]


def test_parse_node_request():
    assert parse_node_request('{"cpus": "2", "memory": "2048"}') == (2, 2048)
    assert parse_node_request(b'{"cpus":"4","memory":"512"}') == (4, 512)


@pytest.mark.parametrize(
    "request_text",
    ["", "cpus=2", '{"cpus": 2, "memory": 2048}', '{"memory": "2048", "cpus": "2"}'],
)
def test_parse_node_request_rejects_malformed(request_text):
    with pytest.raises(ValueError):
        parse_node_request(request_text)


def test_overlay_command_uses_base_image_and_index():
    argv = overlay_command(3)
    assert argv[:3] == ["sudo", "qemu-img", "create"]
    assert _value_after(argv, "-b") == "/var/lib/libvirt/images/linux2022.qcow2"
    assert argv[-1] == "/var/lib/libvirt/images/overlay_3.qcow2"


def test_vm_install_command_carries_resources():
    argv = vm_install_command(5, 2048, 4)
    assert argv[:2] == ["sudo", "virt-install"]
    assert _value_after(argv, "--name") == "my-vm5"
    assert _value_after(argv, "--memory") == "2048"
    assert _value_after(argv, "--vcpus") == "4"
    assert overlay_command(5)[-1] in _value_after(argv, "--disk")


def test_handle_client_starts_vm_for_next_node():
    registry = NodeRegistry()
    registry.register("10.0.0.1", 2, 1024)
    recorder = _Recorder()
    server_end, client_end = socket.socketpair()
    with client_end:
        client_end.sendall(b'{"cpus": "2", "memory": "4096"}')
        started = handle_client(server_end, registry, recorder)
        reply = client_end.recv(1024)
    assert started is True
    assert reply.decode() == CREATION_REPLY
    assert recorder.calls == [
        (overlay_command(1), False),
        (vm_install_command(1, 4096, 2), True),
    ]


def test_handle_client_ignores_malformed_request():
    recorder = _Recorder()
    server_end, client_end = socket.socketpair()
    with client_end:
        client_end.sendall(b"not a request")
        started = handle_client(server_end, NodeRegistry(), recorder)
        reply = client_end.recv(1024)
    assert started is False
    assert reply == b""
    assert recorder.calls == []


def test_handle_client_with_closed_peer():
    recorder = _Recorder()
    server_end, client_end = socket.socketpair()
    client_end.close()
    assert handle_client(server_end, NodeRegistry(), recorder) is False
    assert recorder.calls == []


def test_listener_closes_malformed_requests(tmp_path):
    path = tmp_path / "create.sock"
    stop = threading.Event()
    thread = threading.Thread(
        target=start_node_creation_listener,
        args=(NodeRegistry(), path, stop),
        daemon=True,
    )
    thread.start()
    try:
        deadline = time.monotonic() + 5
        while not path.exists() and time.monotonic() < deadline:
            time.sleep(0.02)
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.settimeout(5)
            client.connect(str(path))
            client.sendall(b"garbage")
            reply = client.recv(1024)
    finally:
        stop.set()
        thread.join(5)
    assert reply == b""
    assert not path.exists()
    assert not thread.is_alive()