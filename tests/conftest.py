"""Shared fixtures for session manager tests."""

import pytest

from fakes import FakeLauncher, make_catalog
from llm_sessions.session import reset_registry


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point settings and the user catalog at a temp directory."""
    monkeypatch.setenv("LLMS_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("LLMS_CATALOG", raising=False)
    monkeypatch.delenv("LLMS_THREADS", raising=False)
    return tmp_path / "data"


@pytest.fixture(autouse=True)
def fresh_registry():
    reset_registry()
    yield
    reset_registry()
