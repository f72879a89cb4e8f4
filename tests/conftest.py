"""Shared fixtures: keep tests away from the real home directory and env."""

import socket

import pytest

from gcal_auth.credentials import ENV_PAIRS


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Redirect the audit log and clear client-identity env vars."""
    monkeypatch.setattr("gcal_auth.audit.LOG_DIR", tmp_path / "audit")
    for id_var, secret_var in ENV_PAIRS:
        monkeypatch.delenv(id_var, raising=False)
        monkeypatch.delenv(secret_var, raising=False)
    monkeypatch.setenv("USER", "test-user")


@pytest.fixture
def free_port() -> int:
    """A loopback port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
