"""Shared fixtures for the evidence engine tests."""

from __future__ import annotations

import pytest

from evidence_engine.events import reset_event_system


@pytest.fixture(autouse=True)
def _clean_event_system():
    """Every test starts with no subscribers or channels."""
    reset_event_system()
    yield
    reset_event_system()
