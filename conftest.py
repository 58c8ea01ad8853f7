"""Pytest configuration and shared fixtures."""
import os
import sys

import pytest

# Ensure project root (for ``tests.helpers``) and src/ on sys.path for absolute imports
ROOT = os.path.dirname(os.path.abspath(__file__))
for p in (ROOT, os.path.join(ROOT, "src")):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture(autouse=True)
def telemetry_dir(tmp_path, monkeypatch):
    """Every test writes telemetry into its own tmp dir, never into the repo."""
    import toolexec_common.telemetry as telemetry

    d = tmp_path / "telemetry"
    monkeypatch.setattr(telemetry, "_TELEMETRY_DIR", d)
    monkeypatch.setattr(telemetry, "_DISABLE_TELEMETRY", False)
    return d
