"""Shared test fixtures for the devserve test suite."""

from __future__ import annotations

import json

import pytest

from devserve.server import DevelopmentServer

HELLO_MODULE = b"Hello World"


def manifest_bytes(version: str | None = None) -> bytes:
    """A small manifest referencing one module, as the build tool writes it."""
    manifest = {
        "unsigned": {"baseUrl": "http://localhost:8080/manifest.zipline.json"},
        "modules": {"hello": {"url": "hello.zipline", "dependsOnIds": []}},
        "mainFunction": "zipline.ziplineMain",
    }
    if version is not None:
        manifest["version"] = version
    return json.dumps(manifest).encode()


@pytest.fixture
def artifact_dir(tmp_path):
    """Directory holding a manifest and one module."""
    directory = tmp_path / "artifacts"
    directory.mkdir()
    (directory / "manifest.zipline.json").write_bytes(manifest_bytes())
    (directory / "hello.zipline").write_bytes(HELLO_MODULE)
    return directory


@pytest.fixture
def live_server(artifact_dir):
    """A running server on an ephemeral loopback port with a fast heartbeat."""
    server = DevelopmentServer(
        artifact_dir,
        port=0,
        host="127.0.0.1",
        heartbeat_interval=0.2,
    )
    server.start()
    yield server
    server.stop()


@pytest.fixture
def hello_module():
    return HELLO_MODULE


@pytest.fixture
def make_manifest():
    return manifest_bytes
