"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
import os
import stat
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent

SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_AUGGIE_PATH = FIXTURES_DIR / "fake_auggie.py"

IS_WINDOWS = sys.platform == "win32"

FAKE_ENV_VARS = (
    "FAKE_AUGGIE_LINES",
    "FAKE_AUGGIE_INTERVAL",
    "FAKE_AUGGIE_SLEEP",
    "FAKE_AUGGIE_EXIT",
    "FAKE_AUGGIE_STDERR",
    "FAKE_AUGGIE_IGNORE_SIGINT",
    "FAKE_AUGGIE_TOKEN",
    "FAKE_AUGGIE_PID_FILE",
)


def read_entries(log_file: Path) -> list[dict]:
    """Parse a session JSONL log."""
    with open(log_file, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


@pytest.fixture(autouse=True)
def clean_fake_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Every test starts without fake tool overrides."""
    for name in FAKE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Temporary project directory."""
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def fake_auggie(tmp_path: Path) -> str:
    """Executable wrapper that runs the fake tool with this interpreter."""
    if IS_WINDOWS:
        pytest.skip("fake auggie wrapper is a POSIX shell script")

    wrapper = tmp_path / "bin" / "fake-auggie"
    wrapper.parent.mkdir()
    wrapper.write_text(
        f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_AUGGIE_PATH}" "$@"\n',
        encoding="utf-8",
    )
    os.chmod(wrapper, wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(wrapper)


@pytest.fixture
def debug_root(tmp_path: Path) -> Path:
    """Audit root for recorder tests."""
    return tmp_path / "debug"
