# tests/cli/conftest.py
"""Shared fixtures for CLI tests."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from tests.conftest import ENV_FIELD, TIER_FIELD, FakeDirectory, RecordingClient, tagged
from vmsync.contracts import FieldDefinition

SETTINGS_YAML = """
vcenter:
  url: "https://vcenter.example.com/sdk"
  username: "svc-sync"
  password: "vc-pass"
  datacenter: "dc1"
ingest:
  url: "https://ingest.example.com"
  api_key: "key-1"
  api_secret: "s3cret"
"""


class CliDirectory(FakeDirectory):
    """FakeDirectory that also resolves tags and can be closed."""

    closed = False

    def list_field_definitions(self) -> list[FieldDefinition]:
        return [FieldDefinition(ENV_FIELD, "env"), FieldDefinition(TIER_FIELD, "tier")]

    def close(self) -> None:
        self.closed = True


class CliClient(RecordingClient):
    closed = False

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    """The CLI rebinds root handlers to the runner's streams; undo that afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(SETTINGS_YAML)
    return path


@pytest.fixture
def cli_directory() -> CliDirectory:
    return CliDirectory(
        [
            tagged("vm-2", "B", "10.0.0.2", tier="db"),
            tagged("vm-1", "A", "10.0.0.1", env="prod"),
            tagged("vm-3", "C", ""),
        ]
    )


@pytest.fixture
def cli_client() -> CliClient:
    return CliClient()


@pytest.fixture
def patched_backends(
    monkeypatch: pytest.MonkeyPatch, cli_directory: CliDirectory, cli_client: CliClient
) -> tuple[CliDirectory, CliClient]:
    """Route the run command to in-memory directory and client."""
    from vmsync.clients.ingest import IngestClient
    from vmsync.clients.vsphere import VSphereDirectory

    monkeypatch.setattr(VSphereDirectory, "connect", classmethod(lambda cls, *args, **kwargs: cli_directory))
    monkeypatch.setattr(IngestClient, "from_settings", classmethod(lambda cls, *args, **kwargs: cli_client))
    return cli_directory, cli_client
