"""Entry point of the master: starts every cluster service and checks a sample pod."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from collections.abc import Callable, Sequence

from podcluster.broadcast import broadcast
from podcluster.node_creation import start_node_creation_listener
from podcluster.node_registry import (
    NodeRegistry,
    heartbeat_receiver,
    node_monitor,
    registration_server,
    socket_server,
)
from podcluster.pod_parser import (
    PodDispatcher,
    PodError,
    PodSpec,
    parse_pod_file,
    validate_zip_contents,
)

log = logging.getLogger(__name__)

DEFAULT_POD_FILE = "testing.pod"
DEFAULT_ZIP_FILE = "testing.zip"


def describe_pod(spec: PodSpec) -> str:
    """A readable summary of a pod specification."""
    return "\n".join(
        [
            f"Pod Name: {spec.name}",
            f"CPU: {spec.cpu}",
            f"Memory: {spec.memory} MB",
            f"Main: {spec.main_script}",
            f"Logging: {spec.logging_script}",
        ]
    )


def _services(
    registry: NodeRegistry, dispatcher: PodDispatcher, stop: threading.Event
) -> list[tuple[str, Callable[[], None]]]:
    return [
        ("HB receiver", lambda: heartbeat_receiver(registry, stop_event=stop)),
        ("node creation", lambda: start_node_creation_listener(registry, stop_event=stop)),
        ("broadcast", lambda: broadcast(stop_event=stop)),
        ("registration", lambda: registration_server(registry, stop_event=stop)),
        ("server", lambda: socket_server(registry, stop_event=stop)),
        ("node monitoring", lambda: node_monitor(registry, stop_event=stop)),
        ("pod listener", lambda: dispatcher.serve(stop_event=stop)),
    ]


def _check_sample_pod(pod_path: str, zip_path: str) -> None:
    try:
        spec = parse_pod_file(pod_path)
    except OSError as exc:
        log.error("Failed to open .pod file %s: %s", pod_path, exc)
        return
    print(describe_pod(spec))
    try:
        validate_zip_contents(zip_path, spec)
    except PodError as exc:
        log.error("%s", exc)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the master until SIGINT."""
    parser = argparse.ArgumentParser(prog="podcluster-master", description=__doc__)
    parser.add_argument("--pod", default=DEFAULT_POD_FILE, help="pod file to check at start-up")
    parser.add_argument("--zip", default=DEFAULT_ZIP_FILE, help="archive to check at start-up")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="[%(name)s] %(message)s")
    print("Starting Master broadcast...")

    registry = NodeRegistry()
    dispatcher = PodDispatcher()
    stop = threading.Event()

    def _on_sigint(signum: int, frame: object) -> None:
        print("\nSIGINT received. Stopping services...")
        stop.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    threads: list[threading.Thread] = []
    try:
        for name, target in _services(registry, dispatcher, stop):
            thread = threading.Thread(target=target, name=name, daemon=True)
            try:
                thread.start()
            except RuntimeError as exc:
                log.error("Failed to start %s thread: %s", name, exc)
                stop.set()
                return 1
            threads.append(thread)

        _check_sample_pod(args.pod, args.zip)

        while any(thread.is_alive() for thread in threads):
            for thread in threads:
                thread.join(0.5)
    finally:
        signal.signal(signal.SIGINT, previous)

    print("All threads stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())