"""Shared fixtures: an in-memory Riak HTTP API in place of urllib3.PoolManager."""

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlsplit

import pytest

from riakmirror import EndpointConfig, MirrorConfig, Mode, RiakEndpoint, RiakMirror


@dataclass
class FakeResponse:
    status: int
    data: bytes = b""


class FakeRiak:
    """Serves the subset of the Riak HTTP API the mirror talks to."""

    def __init__(self):
        self.store = {}
        self.props = {}
        self.overrides = {}
        self.errors = {}
        self.calls = []
        self._lock = threading.Lock()

    def add(self, bucket_type, bucket, keys=None, props=None):
        self.store.setdefault(bucket_type, {}).setdefault(bucket, {}).update(
            keys or {}
        )
        if props is not None:
            self.props[(bucket_type, bucket)] = props

    def fail(self, method, path, status, body=b""):
        self.overrides[(method, path)] = FakeResponse(status, body)

    def raise_on(self, method, path, error):
        self.errors[(method, path)] = error

    def calls_to(self, method, prefix=""):
        return [
            path
            for m, path, _ in self.calls
            if m == method and path.startswith(prefix)
        ]

    def request(self, method, url, body=None, headers=None, **kwargs):
        path = urlsplit(url).path
        with self._lock:
            self.calls.append((method, path, body))
        if (method, path) in self.errors:
            raise self.errors[(method, path)]
        if (method, path) in self.overrides:
            return self.overrides[(method, path)]
        if path == "/ping":
            return FakeResponse(200, b"OK")

        parts = [unquote(p) for p in path.strip("/").split("/")]
        if len(parts) == 3 and parts[0] == "types" and parts[2] == "buckets":
            buckets = list(self.store.get(parts[1], {}))
            return FakeResponse(200, json.dumps({"buckets": buckets}).encode())
        if len(parts) < 4 or parts[0] != "types" or parts[2] != "buckets":
            return FakeResponse(400, b"bad path")

        bucket_type, bucket = parts[1], parts[3]
        keys = self.store.get(bucket_type, {}).get(bucket, {})
        if parts[4:] == ["keys"]:
            return FakeResponse(200, json.dumps({"keys": list(keys)}).encode())
        if parts[4:] == ["props"]:
            if method == "PUT":
                with self._lock:
                    self.props[(bucket_type, bucket)] = body
                return FakeResponse(204)
            props = self.props.get((bucket_type, bucket))
            if props is None:
                return FakeResponse(404, b"not found")
            return FakeResponse(200, props)
        if len(parts) == 6 and parts[4] == "keys":
            key = parts[5]
            if method == "PUT":
                assert headers == {"Content-Type": "application/json"}
                with self._lock:
                    stored = self.store.setdefault(bucket_type, {})
                    stored.setdefault(bucket, {})[key] = body
                return FakeResponse(204)
            if key not in keys:
                return FakeResponse(404, b"not found")
            return FakeResponse(200, keys[key])
        return FakeResponse(400, b"bad path")


@pytest.fixture
def source():
    return FakeRiak()


@pytest.fixture
def destination():
    return FakeRiak()


@pytest.fixture
def logger():
    log = logging.getLogger("riakmirror")
    yield log
    log.handlers.clear()


@pytest.fixture
def make_config(tmp_path):
    def _create(**overrides):
        values = dict(
            source=EndpointConfig("http://source:8098"),
            destination=EndpointConfig("http://destination:8098"),
            bucket_types=("default",),
            parallel=4,
            timeout=5.0,
            progress_interval=5.0,
            backup_dir=Path(tmp_path) / "backup",
        )
        values.update(overrides)
        return MirrorConfig(**values)

    return _create


@pytest.fixture
def make_mirror(make_config, source, destination, logger):
    def _create(mode=Mode.SYNC, stdin=None, stdout=None, **overrides):
        return RiakMirror(
            make_config(mode=mode, **overrides),
            logger,
            source_http=source,
            dest_http=destination,
            stdin=stdin,
            stdout=stdout,
        )

    return _create


@pytest.fixture
def dest_endpoint(destination):
    return RiakEndpoint(
        EndpointConfig("http://destination:8098"), timeout=5.0, http=destination
    )
