"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from pathlib import Path

import pytest

from handoff.jobs.store import JobStore

ECHO_DROID_BIN = f"{shlex.quote(sys.executable)} -m handoff.clients.echo_agent"


@pytest.fixture()
def store(tmp_path: Path) -> JobStore:
    job_store = JobStore(
        tmp_path / "jobs.db",
        retry_base_seconds=0.01,
        retry_max_seconds=0.05,
    )
    job_store.init_schema()
    yield job_store
    job_store.close()


@pytest.fixture()
def clean_env(monkeypatch):
    """Drop handoff and droid variables that could leak in from the shell."""

    for name in list(os.environ):
        if name.startswith(("HANDOFF_", "DROID_")):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def echo_droid_bin() -> str:
    """Command line that stands in for the droid CLI."""

    return ECHO_DROID_BIN
