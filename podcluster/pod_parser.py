"""Pod specification parsing, archive validation and the pod upload listener."""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
import zipfile
from dataclasses import dataclass
from pathlib import Path

import zmq

log = logging.getLogger(__name__)

MAX_LINE_LENGTH = 256
MAX_PATH_LENGTH = 128
TMP_DIR = "./tmp_extract"
DISPATCHER_ENDPOINT = "ipc:///tmp/pod_dispatcher.sock"

DEFAULT_POD_FILENAME = "uploaded.pod"
DEFAULT_ZIP_FILENAME = "uploaded.zip"

UPLOAD_OK = "Upload & parsing successful"
UPLOAD_FAILED = "Upload failed: empty file(s)"

_TOKEN_LIMIT = MAX_PATH_LENGTH - 1
_INT_RE = re.compile(r"\s*([+-]?\d+)")
_META_POD_RE = re.compile(r'\{"pod_filename":"([^"]{1,127})')
_META_ZIP_RE = re.compile(r'","zip_filename":"([^"]{1,127})')


class PodError(Exception):
    """Raised when a pod archive cannot be opened or unpacked."""


@dataclass
class PodSpec:
    """What a ``.pod`` file asks for."""

    name: str = ""
    cpu: int = 0
    memory: int = 0  # in MB
    main_script: str = ""
    logging_script: str = ""


def _first_token(text: str, limit: int = _TOKEN_LIMIT) -> str | None:
    parts = text.split()
    return parts[0][:limit] if parts else None


def _leading_int(text: str) -> int | None:
    match = _INT_RE.match(text)
    return int(match.group(1)) if match else None


def _parse_memory(text: str) -> int | None:
    token = _first_token(text, 31)
    if token is None:
        return None
    if "MB" in token:
        return _leading_int(token) or 0
    if "GB" in token:
        return (_leading_int(token) or 0) * 1024
    return None


def parse_pod_file(filepath: str | os.PathLike) -> PodSpec:
    """Read a ``.pod`` file into a :class:`PodSpec`.

    Raises ``OSError`` when the file cannot be opened.
    """
    spec = PodSpec()
    in_sidecars = False
    with open(filepath, encoding="utf-8", errors="replace") as handle:
        for line in handle:
            if not line or line.startswith("#"):
                continue
            if line.startswith("sidecars:"):
                in_sidecars = True
                continue
            if in_sidecars and line.startswith("  - logging:"):
                token = _first_token(line[12:])
                if token is not None:
                    spec.logging_script = token
                continue

            if line.startswith("name:"):
                token = _first_token(line[5:])
                if token is not None:
                    spec.name = token
            elif line.startswith("cpu:"):
                value = _leading_int(line[4:])
                if value is not None:
                    spec.cpu = value
            elif line.startswith("memory:"):
                value = _parse_memory(line[7:])
                if value is not None:
                    spec.memory = value
            elif line.startswith("main:"):
                token = _first_token(line[5:])
                if token is not None:
                    spec.main_script = token
    return spec


def _is_safe_member(name: str) -> bool:
    path = Path(name)
    return not path.is_absolute() and ".." not in path.parts


def _extract(archive: zipfile.ZipFile, target: Path) -> None:
    entries = archive.infolist()
    log.info("Found %d entries in ZIP", len(entries))
    for info in entries:
        name = info.filename
        log.debug("Processing entry: %s (size: %d)", name, info.file_size)
        if name.endswith("/"):
            log.debug("Skipping directory: %s", name)
            continue
        if not _is_safe_member(name):
            log.warning("Skipping entry outside the extraction directory: %s", name)
            continue
        outpath = target / name
        try:
            outpath.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(info) as source, open(outpath, "wb") as sink:
                shutil.copyfileobj(source, sink)
        except (OSError, zipfile.BadZipFile) as exc:
            log.error("Failed to extract %s: %s", name, exc)
            continue
        log.debug("Extracted: %s", outpath)


def validate_zip_contents(
    zip_path: str | os.PathLike, spec: PodSpec, tmp_dir: str | os.PathLike = TMP_DIR
) -> bool:
    """Check that the archive holds the pod's main and logging scripts under ``testing/``.

    The archive is unpacked into ``tmp_dir``, which is removed afterwards.
    Raises :class:`PodError` when the archive cannot be opened.
    """
    try:
        archive = zipfile.ZipFile(zip_path)
    except (OSError, zipfile.BadZipFile) as exc:
        raise PodError(f"Failed to open ZIP: {zip_path}: {exc}") from exc

    target = Path(tmp_dir)
    with archive:
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PodError(f"Failed to create temp directory {target}: {exc}") from exc
        try:
            _extract(archive, target)
            main_path = target / "testing" / spec.main_script
            log_path = target / "testing" / spec.logging_script
            main_found = main_path.exists()
            log_found = log_path.exists()
        finally:
            shutil.rmtree(target, ignore_errors=True)

    if main_found and log_found:
        log.info("Found both %s and %s in ZIP.", spec.main_script, spec.logging_script)
    else:
        if not main_found:
            log.warning("Missing main script: %s", main_path)
        if not log_found:
            log.warning("Missing logging script: %s", log_path)
    return main_found and log_found


def parse_upload_metadata(meta_json: str | bytes) -> tuple[str, str]:
    """Return ``(pod_filename, zip_filename)`` named by an upload's metadata.

    Names that are absent fall back to ``uploaded.pod`` and ``uploaded.zip``.
    """
    if isinstance(meta_json, bytes):
        meta_json = meta_json.decode("utf-8", errors="replace")
    pod_filename, zip_filename = DEFAULT_POD_FILENAME, DEFAULT_ZIP_FILENAME
    first = _META_POD_RE.match(meta_json)
    if first:
        pod_filename = first.group(1)
        second = _META_ZIP_RE.match(meta_json, first.end())
        if second:
            zip_filename = second.group(1)
    return pod_filename, zip_filename


class PodDispatcher:
    """Stores uploaded pods in numbered folders and checks them."""

    def __init__(self, pods_root: str | os.PathLike = "pods") -> None:
        self.pods_root = Path(pods_root)
        self.tmp_dir: str | os.PathLike = TMP_DIR
        self._counter = 0
        self._lock = threading.Lock()

    def _next_folder(self) -> Path:
        with self._lock:
            pod_id = self._counter
            self._counter += 1
        folder = self.pods_root / f"pod_{pod_id}"
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    def store_upload(
        self, meta_json: str | bytes, pod_data: bytes, zip_data: bytes
    ) -> str:
        """Save one upload, verify it, and return the reply for the uploader."""
        folder = self._next_folder()
        pod_filename, zip_filename = parse_upload_metadata(meta_json)
        pod_path = folder / pod_filename
        zip_path = folder / zip_filename
        for path, data in ((pod_path, pod_data), (zip_path, zip_data)):
            try:
                path.write_bytes(data)
            except OSError as exc:
                log.error("Failed to write %s: %s", path, exc)

        try:
            spec = parse_pod_file(pod_path)
        except OSError as exc:
            log.error("Failed to open .pod file %s: %s", pod_path, exc)
            return UPLOAD_FAILED
        try:
            valid = validate_zip_contents(zip_path, spec, self.tmp_dir)
        except PodError as exc:
            log.error("%s", exc)
            return UPLOAD_FAILED
        return UPLOAD_OK if valid else UPLOAD_FAILED

    def serve(
        self,
        endpoint: str = DISPATCHER_ENDPOINT,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Answer uploads of ``[metadata, pod, zip]`` frames until ``stop_event`` is set."""
        context = zmq.Context()
        try:
            with context.socket(zmq.REP) as sock:
                sock.setsockopt(zmq.LINGER, 0)
                sock.bind(endpoint)
                log.debug("Started pod listener on %s", endpoint)
                poller = zmq.Poller()
                poller.register(sock, zmq.POLLIN)
                while stop_event is None or not stop_event.is_set():
                    if not dict(poller.poll(200)):
                        continue
                    frames = sock.recv_multipart()
                    frames += [b""] * (3 - len(frames))
                    meta, pod_data, zip_data = frames[:3]
                    sock.send_string(self.store_upload(meta, pod_data, zip_data))
        finally:
            context.term()