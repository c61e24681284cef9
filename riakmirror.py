#!/usr/bin/env python3
"""
Riak Bucket Mirror Script
Bucket-type aware copy, backup and restore for Riak KV over its HTTP API.

Features:
- Live sync of bucket properties and keys between two clusters
- Backup to a directory tree or to a JSON-lines stream on stdout
- Restore from a backup tree or from a JSON-lines stream on stdin
- Bounded parallel transfers with periodic progress reporting
- Config file support (YAML/JSON) with command-line overrides
- Multiple output modes (silent/normal/debug) and file logging
- Fail-fast: the first failed key stops the run with a non-zero exit
"""

import argparse
import base64
import copy
import enum
import json
import logging
import queue
import re
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import (
    Any,
    BinaryIO,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
)
from urllib.parse import quote, unquote, urlparse

import urllib3
import yaml

__version__ = "1.0.0"

# ==========================================
# DEFAULT CONFIGURATION
# ==========================================

DEFAULT_CONFIG = {
    "source": {
        "url": "http://riak-0.riak:8098",
        "verify_ssl": False,
    },
    "destination": {
        "url": "http://riak-0.riak:8098",
        "verify_ssl": False,
    },
    "performance": {
        "parallel": 10,
        "timeout": 300.0,  # 5m
        "progress_interval": 5.0,
    },
    "sync": {
        "mode": "sync",
        "bucket_types": ["default", "sets", "maps"],
        "backup_dir": "./backup",
        "skip_existing": False,
        "verify_connections": True,
    },
}

JSON_HEADERS = {"Content-Type": "application/json"}
PUT_OK = (200, 201, 204)
PROPS_PUT_OK = (204, 400)


class MirrorError(Exception):
    """Base class for errors that abort a run."""


class DiscoveryError(MirrorError):
    """Bucket or key listing failed or could not be decoded."""


class PropertiesError(MirrorError):
    """Bucket properties could not be fetched or stored."""


class TransferError(MirrorError):
    """A key could not be fetched from the source or written to the destination."""


class BackupError(MirrorError):
    """Local file or stream I/O failed during backup or restore."""


class Mode(enum.Enum):
    SYNC = "sync"
    BACKUP = "backup"
    BACKUP_STREAM = "backup-stdout"
    RESTORE_BACKUP = "restore-backup"
    RESTORE_STREAM = "restore-stdin"

    @property
    def reads_source(self) -> bool:
        """Whether this mode lists and fetches from the source cluster."""
        return self in (Mode.SYNC, Mode.BACKUP, Mode.BACKUP_STREAM)

    @property
    def writes_destination(self) -> bool:
        """Whether this mode writes to the destination cluster."""
        return self in (Mode.SYNC, Mode.RESTORE_BACKUP, Mode.RESTORE_STREAM)


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """Convert a Go-style duration ("5m", "1m30s", "250ms") or seconds to seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or not text:
        raise ValueError(f"invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class EndpointConfig:
    url: str
    verify_ssl: bool = False


@dataclass(frozen=True)
class MirrorConfig:  # pylint: disable=too-many-instance-attributes
    """Immutable run configuration, built once from the merged config dict."""

    source: EndpointConfig
    destination: EndpointConfig
    bucket_types: Tuple[str, ...]
    mode: Mode = Mode.SYNC
    parallel: int = 10
    timeout: float = 300.0
    progress_interval: float = 5.0
    backup_dir: Path = Path("./backup")
    skip_existing: bool = False
    verify_connections: bool = True

    def __post_init__(self):
        endpoints = (("source", self.source), ("destination", self.destination))
        for label, endpoint in endpoints:
            if urlparse(endpoint.url).scheme not in ("http", "https"):
                raise ValueError(f"{label} url must be http(s): {endpoint.url!r}")
        if not self.bucket_types or not all(self.bucket_types):
            raise ValueError("bucket_types must be a non-empty list of names")
        if self.parallel < 1:
            raise ValueError("parallel must be positive")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.progress_interval <= 0:
            raise ValueError("progress_interval must be positive")

    @classmethod
    def from_dict(cls, config: dict) -> "MirrorConfig":
        """Build a validated config from the nested config dict."""
        perf = config["performance"]
        sync = config["sync"]
        bucket_types = sync["bucket_types"]
        if isinstance(bucket_types, str):
            bucket_types = bucket_types.split(",")
        return cls(
            source=EndpointConfig(
                url=config["source"]["url"],
                verify_ssl=bool(config["source"].get("verify_ssl", False)),
            ),
            destination=EndpointConfig(
                url=config["destination"]["url"],
                verify_ssl=bool(config["destination"].get("verify_ssl", False)),
            ),
            bucket_types=tuple(b.strip() for b in bucket_types),
            mode=Mode(sync["mode"]),
            parallel=int(perf["parallel"]),
            timeout=parse_duration(perf["timeout"]),
            progress_interval=parse_duration(perf["progress_interval"]),
            backup_dir=Path(sync["backup_dir"]),
            skip_existing=bool(sync["skip_existing"]),
            verify_connections=bool(sync.get("verify_connections", True)),
        )


@dataclass(frozen=True)
class Record:
    """One key's payload together with its full identity."""

    bucket_type: str
    bucket: str
    key: str
    value: bytes

    def __str__(self):
        return f"{self.bucket_type}/{self.bucket}/{self.key}"

    def to_line(self) -> bytes:
        """Serialize as one compact JSON object; the value is base64 encoded."""
        return json.dumps(
            {
                "bucket_type": self.bucket_type,
                "bucket": self.bucket,
                "key": self.key,
                "value": base64.b64encode(self.value).decode("ascii"),
            },
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def from_line(cls, line: bytes) -> "Record":
        """Decode one JSON stream line."""
        data = json.loads(line)
        if not isinstance(data, dict):
            raise ValueError("record line is not a JSON object")
        try:
            fields = [data["bucket_type"], data["bucket"], data["key"]]
            value = data.get("value") or ""
        except KeyError as err:
            raise ValueError(f"record line is missing {err}") from err
        if not all(isinstance(f, str) for f in fields) or not isinstance(value, str):
            raise ValueError("record fields must be strings")
        return cls(*fields, base64.b64decode(value, validate=True))


def _segment(name: str) -> str:
    """Percent-encode a name as one path segment; "." and ".." are escaped too."""
    if name in (".", ".."):
        return "%2E" * len(name)
    return quote(name, safe="")


def bucket_path(bucket_type: str, bucket: str) -> str:
    """HTTP path of a bucket within its type."""
    return f"/types/{_segment(bucket_type)}/buckets/{_segment(bucket)}"


def key_path(bucket_type: str, bucket: str, key: str) -> str:
    """HTTP path of one key."""
    return f"{bucket_path(bucket_type, bucket)}/keys/{_segment(key)}"


def props_path(bucket_type: str, bucket: str) -> str:
    """HTTP path of a bucket's properties."""
    return f"{bucket_path(bucket_type, bucket)}/props"


class RiakEndpoint:
    """One Riak HTTP endpoint: base URL plus a pooled urllib3 client."""

    def __init__(
        self,
        config: EndpointConfig,
        timeout: float,
        maxsize: int = 10,
        http: Optional[Any] = None,
    ):
        self.url = config.url.rstrip("/")
        if http is None:
            http = urllib3.PoolManager(
                maxsize=maxsize,
                timeout=urllib3.Timeout(total=timeout),
                retries=False,
                cert_reqs="CERT_REQUIRED" if config.verify_ssl else "CERT_NONE",
            )
        self.http = http

    def request(
        self,
        method: str,
        path: str,
        body: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """Issue one request and return the fully read response."""
        return self.http.request(
            method,
            self.url + path,
            body=body,
            headers=headers,
            preload_content=True,
        )

    def get(self, path: str):
        """GET a path on this endpoint."""
        return self.request("GET", path)

    def put(self, path: str, body: bytes):
        """PUT a JSON-typed body to a path on this endpoint."""
        return self.request("PUT", path, body=body, headers=JSON_HEADERS)


def _body_text(response) -> str:
    return (response.data or b"").decode("utf-8", errors="replace").strip()


class CatalogDiscovery:
    """Enumerates buckets and keys from the source listing endpoints.

    Listings are loaded fully into memory before any transfer starts, so the
    largest bucket must fit in memory as a list of key names.
    """

    def __init__(self, source: RiakEndpoint, logger: logging.Logger):
        self.source = source
        self.logger = logger

    def _list(
        self, path: str, field: str, what: str, missing_ok: bool = False
    ) -> Optional[List[str]]:
        try:
            response = self.source.get(path)
        except urllib3.exceptions.HTTPError as err:
            raise DiscoveryError(f"list {what}: {err}") from err
        if response.status == 404 and missing_ok:
            return None
        if response.status != 200:
            raise DiscoveryError(
                f"list {what}: status code is {response.status}, {_body_text(response)}"
            )
        try:
            names = json.loads(response.data)[field]
        except (ValueError, KeyError, TypeError) as err:
            raise DiscoveryError(f"decode {what} list err: {err}") from err
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise DiscoveryError(
                f"decode {what} list err: '{field}' is not a list of names"
            )
        return names

    def list_buckets(self, bucket_type: str) -> List[str]:
        """Return every bucket name of one bucket type."""
        path = f"/types/{_segment(bucket_type)}/buckets?buckets=true"
        buckets = self._list(path, "buckets", f"buckets of type '{bucket_type}'")
        self.logger.debug(
            "  Found %d bucket(s) in type '%s'", len(buckets), bucket_type
        )
        return buckets

    def list_keys(self, bucket_type: str, bucket: str) -> List[str]:
        """Return every key of one bucket; a missing listing means no keys."""
        path = f"{bucket_path(bucket_type, bucket)}/keys?keys=true"
        keys = self._list(path, "keys", f"keys of bucket '{bucket}'", missing_ok=True)
        if keys is None:
            self.logger.warning("  Bucket '%s' has no keys", bucket)
            return []
        self.logger.debug("  Found %d key(s) in bucket '%s'", len(keys), bucket)
        return keys


class PropertiesSynchronizer:
    """Copies a bucket's properties document verbatim from source to destination."""

    def __init__(
        self,
        source: RiakEndpoint,
        destination: RiakEndpoint,
        logger: logging.Logger,
    ):
        self.source = source
        self.destination = destination
        self.logger = logger

    def sync(self, bucket_type: str, bucket: str) -> bool:
        """Return True when properties were written, False when the source has none."""
        path = props_path(bucket_type, bucket)
        try:
            response = self.source.get(path)
        except urllib3.exceptions.HTTPError as err:
            raise PropertiesError(f"get properties: {err}") from err

        if response.status == 404:
            self.logger.warning("  Bucket '%s' has no properties", bucket)
            return False
        if response.status != 200:
            raise PropertiesError(f"get properties: status code is {response.status}")

        try:
            result = self.destination.put(path, response.data)
        except urllib3.exceptions.HTTPError as err:
            raise PropertiesError(f"put properties: {err}") from err
        if result.status not in PROPS_PUT_OK:
            raise PropertiesError(
                "put properties: got unexpected status: "
                f"{result.status}, {_body_text(result)}"
            )
        if result.status == 400:
            self.logger.debug(
                "  Destination rejected properties for '%s' (400), keeping its own",
                bucket,
            )
        else:
            self.logger.debug("  ✓ Properties copied for '%s'", bucket)
        return True


class ProgressMonitor:
    """Periodic progress reporter driven by the pipeline's control loop."""

    def __init__(self, interval: float, logger: logging.Logger):
        self.interval = interval
        self.logger = logger
        self._deadline = time.monotonic() + interval
        self.last_report: Optional[Tuple[str, int, Optional[int]]] = None

    def start(self) -> None:
        """Reset the deadline at the start of a run."""
        self._deadline = time.monotonic() + self.interval

    def remaining(self) -> float:
        """Seconds until the next report is due."""
        return max(0.0, self._deadline - time.monotonic())

    def due(self) -> bool:
        """Whether a report is due now."""
        return time.monotonic() >= self._deadline

    def report(self, label: str, offered: int, total: Optional[int]) -> None:
        """Log progress and push the deadline forward."""
        self.last_report = (label, offered, total)
        if total is None:
            self.logger.info("  '%s' progress: %d", label, offered)
        else:
            self.logger.info("  '%s' progress: %d/%d", label, offered, total)
        self._deadline = time.monotonic() + self.interval


_CLOSED = object()


class TransferPipeline:
    """Drains one backlog through a fixed pool of worker threads.

    Workers announce readiness on a semaphore; the control loop hands over the
    next item only after taking a readiness token, so at most ``parallelism``
    items are in flight. While waiting for a token the loop wakes up on the
    monitor's deadline to report progress. The first handler failure stops
    the feed; workers finish their current item and the error is re-raised
    from ``run``.
    """

    def __init__(
        self, parallelism: int, monitor: ProgressMonitor, logger: logging.Logger
    ):
        self.parallelism = parallelism
        self.monitor = monitor
        self.logger = logger

    def run(
        self,
        label: str,
        items: Iterable[Any],
        handler: Callable[[Any], None],
        total: Optional[int] = None,
    ) -> int:
        """Feed every item to ``handler`` and return how many were offered."""
        ready = threading.Semaphore(0)
        backlog: "queue.SimpleQueue[Any]" = queue.SimpleQueue()
        stop = threading.Event()
        failures: List[BaseException] = []
        failures_lock = threading.Lock()

        def worker():
            while True:
                ready.release()
                item = backlog.get()
                if item is _CLOSED:
                    return
                try:
                    handler(item)
                except Exception as err:  # pylint: disable=broad-except
                    self.logger.error("    ✗ '%s' failed on %s: %s", label, item, err)
                    with failures_lock:
                        failures.append(err)
                    stop.set()
                    ready.release()
                    return

        self.logger.debug("  Starting transfer (%d workers)...", self.parallelism)
        self.monitor.start()
        offered = 0
        with ThreadPoolExecutor(
            max_workers=self.parallelism, thread_name_prefix="riakmirror"
        ) as executor:
            for _ in range(self.parallelism):
                executor.submit(worker)
            try:
                for item in items:
                    self._wait_for_worker(ready, label, offered, total)
                    if stop.is_set():
                        break
                    backlog.put(item)
                    offered += 1
            finally:
                for _ in range(self.parallelism):
                    backlog.put(_CLOSED)

        if failures:
            raise failures[0]
        return offered

    def _wait_for_worker(self, ready, label, offered, total) -> None:
        while True:
            if self.monitor.due():
                self.monitor.report(label, offered, total)
            if ready.acquire(timeout=self.monitor.remaining()):
                return


class DestinationPolicy:
    """What happens to each Record once it has been fetched or reconstructed."""

    def prepare_bucket_type(self, bucket_type: str) -> None:
        """Called once before the buckets of a type are processed."""

    def prepare_bucket(self, bucket_type: str, bucket: str) -> None:
        """Called once before the keys of a bucket are processed."""

    def accept(self, record: Record) -> None:
        """Deliver one Record."""
        raise NotImplementedError


class LiveSync(DestinationPolicy):
    """Upserts each Record into the destination cluster."""

    def __init__(self, destination: RiakEndpoint):
        self.destination = destination

    def accept(self, record: Record) -> None:
        """PUT the value at its key; an existing value is overwritten."""
        path = key_path(record.bucket_type, record.bucket, record.key)
        try:
            response = self.destination.put(path, record.value)
        except urllib3.exceptions.HTTPError as err:
            raise TransferError(
                f"put key '{record.key}' in '{record.bucket}': {err}"
            ) from err
        if response.status not in PUT_OK:
            raise TransferError(
                f"put key '{record.key}' in '{record.bucket}': "
                f"got unexpected status: {response.status}, {_body_text(response)}"
            )


class BackupToFile(DestinationPolicy):
    """Writes each value to ``<root>/<type>/<bucket>/<key>``.

    Every path segment is percent-encoded, so names containing ``/`` map to a
    single file name and decode back exactly on restore. The names ``.`` and
    ``..`` are written as ``%2E`` and ``%2E%2E``.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def bucket_dir(self, bucket_type: str, bucket: str) -> Path:
        """Directory holding one bucket's key files."""
        return self.root / _segment(bucket_type) / _segment(bucket)

    def record_path(self, record: Record) -> Path:
        """File holding one key's value."""
        bucket_dir = self.bucket_dir(record.bucket_type, record.bucket)
        return bucket_dir / _segment(record.key)

    def prepare_bucket_type(self, bucket_type: str) -> None:
        """Create the type directory, reusing it if present."""
        try:
            type_dir = self.root / _segment(bucket_type)
            type_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise BackupError(
                f"create backup dir for type '{bucket_type}': {err}"
            ) from err

    def prepare_bucket(self, bucket_type: str, bucket: str) -> None:
        """Create the bucket directory, reusing it if present."""
        try:
            self.bucket_dir(bucket_type, bucket).mkdir(exist_ok=True)
        except OSError as err:
            raise BackupError(
                f"create backup dir for bucket '{bucket}': {err}"
            ) from err

    def accept(self, record: Record) -> None:
        """Write the value to its key file."""
        try:
            self.record_path(record).write_bytes(record.value)
        except OSError as err:
            raise BackupError(f"write backup of {record}: {err}") from err


class BackupToStream(DestinationPolicy):
    """Appends each Record as one JSON line to a binary stream."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self._lock = threading.Lock()

    def accept(self, record: Record) -> None:
        """Append the Record as one line and flush."""
        line = record.to_line() + b"\n"
        try:
            with self._lock:
                self.stream.write(line)
                self.stream.flush()
        except (OSError, ValueError) as err:
            raise BackupError(f"write backup of {record} to stream: {err}") from err


class RestoreFromBackup(LiveSync):
    """Reads Records back from a backup tree and writes them to the destination."""

    def __init__(self, destination: RiakEndpoint, root: Path):
        super().__init__(destination)
        self.root = Path(root)

    def files(self) -> List[Path]:
        """List every backup file under the root, sorted."""
        if not self.root.is_dir():
            raise BackupError(f"backup dir not found: {self.root}")
        try:
            return sorted(p for p in self.root.rglob("*") if p.is_file())
        except OSError as err:
            raise BackupError(f"walk backup dir {self.root}: {err}") from err

    def load(self, path: Path) -> Record:
        """Rebuild a Record from the last three segments of a backup file path."""
        parts = path.relative_to(self.root).parts
        if len(parts) < 3:
            raise BackupError(
                f"backup file outside <type>/<bucket>/<key> layout: {path}"
            )
        bucket_type, bucket, key = (unquote(p) for p in parts[-3:])
        try:
            value = path.read_bytes()
        except OSError as err:
            raise BackupError(f"read backup file {path}: {err}") from err
        return Record(bucket_type, bucket, key, value)

    def records(self, files: Optional[List[Path]] = None) -> Iterator[Record]:
        """Yield one Record per backup file."""
        for path in self.files() if files is None else files:
            yield self.load(path)


class RestoreFromStream(LiveSync):
    """Decodes one JSON Record per line and writes it to the destination."""

    def __init__(self, destination: RiakEndpoint, stream: BinaryIO):
        super().__init__(destination)
        self.stream = stream

    def records(self) -> Iterator[Record]:
        """Yield one Record per non-blank line until end of stream."""
        lineno = 0
        while True:
            try:
                line = self.stream.readline()
            except OSError as err:
                raise BackupError(f"read stream after line {lineno}: {err}") from err
            if not line:
                return
            lineno += 1
            if not line.strip():
                continue
            try:
                yield Record.from_line(line)
            except ValueError as err:
                raise BackupError(f"decode stream line {lineno}: {err}") from err


class RiakMirror:  # pylint: disable=too-many-instance-attributes
    """Runs one sync, backup or restore over the configured bucket types."""

    def __init__(
        self,
        config: MirrorConfig,
        logger: logging.Logger,
        source_http: Optional[Any] = None,
        dest_http: Optional[Any] = None,
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
    ):
        self.config = config
        self.logger = logger

        self.logger.debug("=" * 70)
        self.logger.debug("INITIALIZATION")
        self.logger.debug("=" * 70)
        self.logger.debug("Mode: %s", config.mode.value)
        self.logger.debug("Source endpoint: %s", config.source.url)
        self.logger.debug("Destination endpoint: %s", config.destination.url)
        self.logger.debug("Bucket types: %s", ", ".join(config.bucket_types))
        self.logger.debug("Parallel workers: %d", config.parallel)
        self.logger.debug("Request timeout: %s", self._format_duration(config.timeout))
        self.logger.debug("Progress interval: %.1fs", config.progress_interval)
        if config.mode in (Mode.BACKUP, Mode.RESTORE_BACKUP):
            self.logger.debug("Backup dir: %s", config.backup_dir)
            self.logger.debug("Skip existing: %s", config.skip_existing)
        self.logger.debug("")

        self.source = self._create_endpoint(config.source, "SOURCE", source_http)
        self.destination = self._create_endpoint(
            config.destination, "DESTINATION", dest_http
        )

        self.discovery = CatalogDiscovery(self.source, logger)
        self.properties = PropertiesSynchronizer(self.source, self.destination, logger)
        self.monitor = ProgressMonitor(config.progress_interval, logger)
        self.pipeline = TransferPipeline(config.parallel, self.monitor, logger)
        self.policy = self._create_policy(
            stdin if stdin is not None else sys.stdin.buffer,
            stdout if stdout is not None else sys.stdout.buffer,
        )

        self._stats_lock = threading.Lock()
        self.stats = {
            "bucket_types_processed": 0,
            "buckets_processed": 0,
            "buckets_skipped": 0,
            "buckets_empty": 0,
            "properties_synced": 0,
            "keys_transferred": 0,
            "bytes_transferred": 0,
            "start_time": time.time(),
        }

    def _create_endpoint(
        self, endpoint_config: EndpointConfig, label: str, http
    ) -> RiakEndpoint:
        self.logger.debug("Creating %s client...", label)
        return RiakEndpoint(
            endpoint_config,
            timeout=self.config.timeout,
            maxsize=self.config.parallel,
            http=http,
        )

    def _create_policy(self, stdin: BinaryIO, stdout: BinaryIO) -> DestinationPolicy:
        mode = self.config.mode
        if mode is Mode.BACKUP:
            return BackupToFile(self.config.backup_dir)
        if mode is Mode.BACKUP_STREAM:
            return BackupToStream(stdout)
        if mode is Mode.RESTORE_BACKUP:
            return RestoreFromBackup(self.destination, self.config.backup_dir)
        if mode is Mode.RESTORE_STREAM:
            return RestoreFromStream(self.destination, stdin)
        return LiveSync(self.destination)

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            self.stats[name] += amount

    def _ping(self, endpoint: RiakEndpoint, label: str) -> bool:
        self.logger.debug("Testing %s: %s", label, endpoint.url)
        try:
            response = endpoint.get("/ping")
        except urllib3.exceptions.HTTPError as err:
            self.logger.error("✗ %s connection error: %s", label.capitalize(), err)
            return False
        if response.status != 200:
            self.logger.error("✗ %s connection FAILED", label.capitalize())
            self.logger.error("  HTTP status: %s", response.status)
            self.logger.error("  Body: %s", _body_text(response))
            return False
        self.logger.info("✓ %s connected successfully", label.capitalize())
        return True

    def verify_connections(self) -> bool:
        """Ping every endpoint the current mode talks to."""
        self.logger.debug("=" * 70)
        self.logger.debug("CONNECTION VERIFICATION")
        self.logger.debug("=" * 70)

        if self.config.mode.reads_source and not self._ping(self.source, "SOURCE"):
            return False
        if self.config.mode.writes_destination and not self._ping(
            self.destination, "DESTINATION"
        ):
            return False

        self.logger.debug("")
        return True

    def transfer_one(self, bucket_type: str, bucket: str, key: str) -> None:
        """Fetch one key from the source and hand it to the destination policy."""
        try:
            response = self.source.get(key_path(bucket_type, bucket, key))
        except urllib3.exceptions.HTTPError as err:
            raise TransferError(f"get key '{key}' in '{bucket}': {err}") from err
        if response.status != 200:
            raise TransferError(
                f"get key '{key}' in '{bucket}': status code is {response.status}"
            )
        record = Record(bucket_type, bucket, key, response.data)
        self.policy.accept(record)
        self._record_done(record)

    def _record_done(self, record: Record) -> None:
        with self._stats_lock:
            self.stats["keys_transferred"] += 1
            self.stats["bytes_transferred"] += len(record.value)
        self.logger.debug(
            "    ✓ %s [%s]", record, self._format_bytes(len(record.value))
        )

    def _restore_one(self, record: Record) -> None:
        self.policy.accept(record)
        self._record_done(record)

    def sync_bucket(
        self, bucket_type: str, bucket: str, bucket_num: int, total_buckets: int
    ) -> None:
        """Move every key of one bucket through the destination policy."""
        self.logger.info("")
        self.logger.info(
            "[%d/%d]: %s/%s", bucket_num, total_buckets, bucket_type, bucket
        )

        bucket_start = time.time()

        if self.config.mode is Mode.SYNC:
            if self.properties.sync(bucket_type, bucket):
                self._count("properties_synced")
        self.policy.prepare_bucket(bucket_type, bucket)

        keys = self.discovery.list_keys(bucket_type, bucket)
        if not keys:
            self._count("buckets_empty")
            self._count("buckets_processed")
            return

        self.logger.info("  Keys: %d", len(keys))
        self.pipeline.run(
            bucket,
            keys,
            lambda key: self.transfer_one(bucket_type, bucket, key),
            total=len(keys),
        )

        bucket_duration = time.time() - bucket_start
        self.logger.info(
            "  ✓ Bucket '%s' completed: %d keys in %.1fs",
            bucket,
            len(keys),
            bucket_duration,
        )
        self._count("buckets_processed")

    def _skip_bucket(self, bucket_type: str, bucket: str) -> bool:
        if not (self.config.skip_existing and isinstance(self.policy, BackupToFile)):
            return False
        return self.policy.bucket_dir(bucket_type, bucket).exists()

    def sync_bucket_type(self, bucket_type: str) -> None:
        """Discover the buckets of one type and process them in order."""
        self.logger.info("")
        self.logger.info("=" * 70)
        self.logger.info("BUCKET TYPE: %s", bucket_type)
        self.logger.info("=" * 70)

        buckets = self.discovery.list_buckets(bucket_type)
        self.policy.prepare_bucket_type(bucket_type)

        if not buckets:
            self.logger.warning("No buckets found in type '%s'", bucket_type)

        for idx, bucket in enumerate(buckets, 1):
            if self._skip_bucket(bucket_type, bucket):
                self.logger.info(
                    "  Skipping '%s/%s' (backup exists)", bucket_type, bucket
                )
                self._count("buckets_skipped")
                continue
            self.sync_bucket(bucket_type, bucket, idx, len(buckets))

        self._count("bucket_types_processed")

    def mirror_all(self) -> None:
        """Process every configured bucket type, one bucket at a time."""
        self.logger.info("")
        self.logger.info(
            "Starting %s of %d bucket type(s) with %d workers",
            self.config.mode.value,
            len(self.config.bucket_types),
            self.config.parallel,
        )
        for bucket_type in self.config.bucket_types:
            self.sync_bucket_type(bucket_type)

    def restore(self) -> None:
        """Replay a backup tree or stream into the destination."""
        if isinstance(self.policy, RestoreFromBackup):
            files = self.policy.files()
            root = self.policy.root
            self.logger.info("Restoring %d key(s) from %s", len(files), root)
            self.pipeline.run(
                str(root),
                self.policy.records(files),
                self._restore_one,
                total=len(files),
            )
        elif isinstance(self.policy, RestoreFromStream):
            self.logger.info("Restoring keys from stdin")
            self.pipeline.run("stdin", self.policy.records(), self._restore_one)
        else:
            raise ValueError(f"mode {self.config.mode.value} is not a restore mode")

    def run(self) -> None:
        """Execute the configured mode."""
        if self.config.mode in (Mode.RESTORE_BACKUP, Mode.RESTORE_STREAM):
            self.restore()
        else:
            self.mirror_all()

    @staticmethod
    def _format_bytes(num_bytes: int) -> str:
        """Convert bytes to human-readable format."""
        value = float(num_bytes)
        for unit in ["B", "KB", "MB", "GB", "TB"]:
            if value < 1024.0:
                return f"{value:.1f}{unit}"
            value /= 1024.0
        return f"{value:.1f}PB"

    @staticmethod
    def _format_duration(seconds: float) -> str:
        """Convert seconds to readable duration."""
        if seconds < 60:
            return f"{seconds:.0f}s"
        if seconds < 3600:
            return f"{seconds/60:.1f}m"
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"

    def print_summary(self, failed: bool = False) -> None:
        """Generate and log final summary report."""
        duration = time.time() - self.stats["start_time"]

        self.logger.info("")
        self.logger.info("=" * 70)
        self.logger.info("FINAL SUMMARY")
        self.logger.info("=" * 70)
        self.logger.info(
            "Started:  %s",
            datetime.fromtimestamp(self.stats["start_time"]).strftime(
                "%Y-%m-%d %H:%M:%S"
            ),
        )
        self.logger.info("Finished: %s", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        self.logger.info(
            "Duration: %.1fs (%s)", duration, self._format_duration(duration)
        )
        self.logger.info("")
        if self.config.mode not in (Mode.RESTORE_BACKUP, Mode.RESTORE_STREAM):
            self.logger.info("Bucket types: %d", self.stats["bucket_types_processed"])
            self.logger.info("Buckets:")
            self.logger.info("  - Processed: %d", self.stats["buckets_processed"])
            if self.stats["buckets_empty"] > 0:
                self.logger.info("  - Empty:     %d", self.stats["buckets_empty"])
            if self.stats["buckets_skipped"] > 0:
                self.logger.info("  - Skipped:   %d", self.stats["buckets_skipped"])
            if self.config.mode is Mode.SYNC:
                self.logger.info("  - Props:     %d", self.stats["properties_synced"])
            self.logger.info("")
        self.logger.info("Keys transferred: %d", self.stats["keys_transferred"])
        self.logger.info(
            "Data transferred: %s", self._format_bytes(self.stats["bytes_transferred"])
        )

        if duration > 0 and self.stats["bytes_transferred"] > 0:
            throughput = self.stats["bytes_transferred"] / duration
            self.logger.info(
                "Average throughput: %s/s",
                self._format_bytes(int(throughput)),
            )

        self.logger.info("")
        if failed:
            self.logger.info("✗ Status: FAILED")
        else:
            self.logger.info("✓ Status: COMPLETED SUCCESSFULLY")

        self.logger.info("=" * 70)


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, fmt=None, datefmt=None, stream=None):
        super().__init__(fmt, datefmt)
        self.stream = stream if stream is not None else sys.stdout

    def format(self, record):
        if hasattr(self.stream, "isatty") and self.stream.isatty():
            levelname = record.levelname
            if levelname in self.COLORS:
                record = logging.makeLogRecord(record.__dict__)
                record.levelname = (
                    f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"
                )
        return super().format(record)


def setup_logging(args: argparse.Namespace, config: MirrorConfig) -> logging.Logger:
    """Configure logging with appropriate handlers and formatters."""
    logger = logging.getLogger("riakmirror")
    logger.setLevel(logging.DEBUG)

    logger.handlers.clear()

    if args.log_file and not args.debug:
        console_level = logging.ERROR
    elif args.quiet:
        console_level = logging.ERROR
    elif args.debug:
        console_level = logging.DEBUG
    else:
        console_level = logging.INFO

    # stdout carries the backup records in stream mode
    stream = sys.stderr if config.mode is Mode.BACKUP_STREAM else sys.stdout

    console_handler = logging.StreamHandler(stream)
    console_handler.setLevel(console_level)

    if args.debug:
        console_format = ColoredFormatter("[%(levelname)s] %(message)s", stream=stream)
    else:
        console_format = logging.Formatter("%(message)s")

    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    if args.log_file:
        file_handler = logging.FileHandler(args.log_file, mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_format = logging.Formatter(
            "%(asctime)s [%(levelname)-8s] %(threadName)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        file_handler.setFormatter(file_format)
        logger.addHandler(file_handler)

        logger.info("")
        logger.info("#" * 70)
        logger.info("# NEW SESSION: %s", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        logger.info("#" * 70)

    return logger


def load_config(config_path: Optional[str]) -> dict:
    """Load configuration from file or use defaults."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    if not config_path:
        return config

    config_file = Path(config_path)

    if not config_file.exists():
        print(f"Error: Config file not found: {config_path}", file=sys.stderr)
        sys.exit(1)

    try:
        with open(config_file, "r", encoding="utf-8") as file:
            if config_path.endswith(".json"):
                user_config = json.load(file)
            elif config_path.endswith(".yaml") or config_path.endswith(".yml"):
                user_config = yaml.safe_load(file) or {}
            else:
                print(
                    "Error: Unsupported config format. Use .json or .yaml",
                    file=sys.stderr,
                )
                sys.exit(1)
    except (OSError, ValueError, yaml.YAMLError) as err:
        print(f"Error loading config file: {err}", file=sys.stderr)
        sys.exit(1)

    if not isinstance(user_config, dict):
        print("Error loading config file: top level must be a mapping", file=sys.stderr)
        sys.exit(1)

    for key, value in user_config.items():
        if isinstance(value, dict) and isinstance(config.get(key), dict):
            config[key].update(value)
        else:
            config[key] = value

    return config


def apply_arguments(config: dict, args: argparse.Namespace) -> dict:
    """Overlay command-line flags on a loaded config dict."""
    if args.source is not None:
        config["source"]["url"] = args.source
    if args.destination is not None:
        config["destination"]["url"] = args.destination
    if args.bucket_types is not None:
        config["sync"]["bucket_types"] = args.bucket_types.split(",")
    if args.workers is not None:
        config["performance"]["parallel"] = args.workers
    if args.timeout is not None:
        config["performance"]["timeout"] = args.timeout
    if args.progress_interval is not None:
        config["performance"]["progress_interval"] = args.progress_interval
    if args.backup_dir is not None:
        config["sync"]["backup_dir"] = args.backup_dir
    if args.skip_existing:
        config["sync"]["skip_existing"] = True
    if args.no_verify:
        config["sync"]["verify_connections"] = False

    if args.restore_stdin:
        config["sync"]["mode"] = Mode.RESTORE_STREAM.value
    elif args.restore_backup:
        config["sync"]["mode"] = Mode.RESTORE_BACKUP.value
    elif args.backup and args.backup_stdout:
        config["sync"]["mode"] = Mode.BACKUP_STREAM.value
    elif args.backup:
        config["sync"]["mode"] = Mode.BACKUP.value

    return config


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Riak Mirror - bucket type aware sync, backup and restore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Copy all buckets of the default types between clusters
  %(prog)s --source http://old:8098 --destination http://new:8098

  # Backup to a directory tree, skipping buckets already backed up
  %(prog)s --backup --backup-dir /srv/riak-backup --skip-existing

  # Backup to stdout and restore from stdin
  %(prog)s --backup --backup-stdout > dump.jsonl
  %(prog)s --restore-stdin --destination http://new:8098 < dump.jsonl

  # Use custom config file, log to file
  %(prog)s --config /etc/riakmirror.yaml --log-file /var/log/riakmirror.log
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="Configuration file path (.json or .yaml)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Quiet mode - only errors (for cron)",
    )
    parser.add_argument(
        "-d", "--debug", action="store_true", help="Debug mode - verbose output"
    )
    parser.add_argument(
        "-l",
        "--log-file",
        metavar="FILE",
        help="Log to file (console quiet unless --debug specified)",
    )
    parser.add_argument("--source", metavar="URL", help="Source Riak HTTP endpoint")
    parser.add_argument(
        "--destination", metavar="URL", help="Destination Riak HTTP endpoint"
    )
    parser.add_argument(
        "--bucket-types",
        metavar="LIST",
        help="Comma separated bucket types (default: default,sets,maps)",
    )
    parser.add_argument(
        "-w",
        "--workers",
        "--parallel",
        type=int,
        metavar="N",
        help="Number of parallel workers per bucket (default: 10)",
    )
    parser.add_argument(
        "--timeout",
        type=parse_duration,
        metavar="DURATION",
        help="Per-request timeout, e.g. 5m or 30s (default: 5m)",
    )
    parser.add_argument(
        "--progress-interval",
        type=parse_duration,
        metavar="DURATION",
        help="Progress report interval (default: 5s)",
    )
    parser.add_argument("--backup", action="store_true", help="Backup mode")
    parser.add_argument(
        "--backup-stdout",
        action="store_true",
        help="With --backup, write to stdout instead of files",
    )
    parser.add_argument(
        "--backup-dir", metavar="DIR", help="Dir for backups (default: ./backup)"
    )
    parser.add_argument(
        "--skip-existing",
        action="store_true",
        help="Skip buckets whose backup dir already exists",
    )
    parser.add_argument(
        "--restore-backup", action="store_true", help="Restore from backup dir"
    )
    parser.add_argument(
        "--restore-stdin", action="store_true", help="Restore from stdin"
    )
    parser.add_argument(
        "--no-verify", action="store_true", help="Skip the /ping connection check"
    )
    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Display configuration and exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"Riak Mirror v{__version__}",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None, source_http=None, dest_http=None) -> int:
    """Main application entry point."""
    args = parse_arguments(argv)

    config_dict = apply_arguments(load_config(args.config), args)

    if args.show_config:
        print(json.dumps(config_dict, indent=2))
        return 0

    try:
        config = MirrorConfig.from_dict(config_dict)
    except (ValueError, KeyError, TypeError) as err:
        print(f"Error: invalid configuration: {err}", file=sys.stderr)
        return 1

    logger = setup_logging(args, config)

    if not (config.source.verify_ssl and config.destination.verify_ssl):
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    logger.info("=" * 70)
    logger.info("RIAK MIRROR v%s", __version__)
    logger.info("Session started: %s", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
    logger.info("=" * 70)

    mirror = None
    try:
        mirror = RiakMirror(
            config, logger, source_http=source_http, dest_http=dest_http
        )

        if config.verify_connections and not mirror.verify_connections():
            logger.error("Connection verification failed - aborting")
            return 1

        mirror.run()
        mirror.print_summary()
        return 0

    except MirrorError as err:
        logger.error("ERR: %s", err)
        if mirror is not None:
            mirror.print_summary(failed=True)
        return 1
    except KeyboardInterrupt:
        logger.warning("\n\nOperation cancelled by user (Ctrl+C)")
        return 130
    except Exception as err:  # pylint: disable=broad-except
        logger.exception("FATAL ERROR: %s", err)
        return 1


if __name__ == "__main__":
    sys.exit(main())
