from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from ccrelay.config import Settings, StreamingSettings


@pytest.fixture
def make_settings(tmp_path: Path):
    def _make(**overrides: Any) -> Settings:
        streaming = overrides.pop("streaming", None) or StreamingSettings(interval_ms=10)
        return Settings(_env_file=None, workspace_path=tmp_path, streaming=streaming, **overrides)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()
