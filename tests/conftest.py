"""Shared fixtures for rulegate tests."""

import sys
from pathlib import Path

import pytest

from rulegate.models import Artifact, Behavior


@pytest.fixture
def fake_engine(tmp_path):
    """Factory writing an executable shell script that stands in for the engine.

    The script receives the same arguments the real engine would:
    ``-config <token>``.
    """
    if sys.platform == "win32":
        pytest.skip("fake engine scripts require a POSIX shell")

    def make(body: str, name: str = "fake-engine") -> str:
        script = tmp_path / name
        script.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
        script.chmod(0o755)
        return str(script)

    return make


@pytest.fixture
def rule_tree(tmp_path):
    """Minimal meta-rules-dat style layout with geosite and geoip artifacts."""
    geosite = tmp_path / "meta-rules-dat-meta" / "geo" / "geosite"
    geoip = tmp_path / "meta-rules-dat-meta" / "geo" / "geoip"
    (geosite / "nested").mkdir(parents=True)
    geoip.mkdir(parents=True)

    (geosite / "google.mrs").write_bytes(b"\x00mrs")
    (geosite / "nested" / "cn.mrs").write_bytes(b"\x00mrs")
    (geosite / "README.md").write_text("not an artifact")
    (geoip / "private.mrs").write_bytes(b"\x00mrs")

    return tmp_path


@pytest.fixture
def make_artifacts():
    """Factory for in-memory artifacts that need not exist on disk."""
    def make(count: int, behavior: Behavior = Behavior.DOMAIN) -> list[Artifact]:
        return [Artifact(path=Path(f"/rules/geosite/rule-{i}.mrs"), behavior=behavior) for i in range(count)]

    return make
