"""Unit test environment helpers."""

import os

import pytest


@pytest.fixture(autouse=True)
def _minimal_env(monkeypatch):
    """Clear adapter settings so each test starts from defaults."""
    for name in list(os.environ):
        if name.startswith("DAL_"):
            monkeypatch.delenv(name, raising=False)
    yield
