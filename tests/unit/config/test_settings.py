"""Tests for QC settings loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from trialrules.config import QCSettings, load_settings


class TestLoadSettings:
    def test_defaults_without_path(self) -> None:
        settings = load_settings()
        assert settings == QCSettings()
        assert settings.auto_resolve is False
        assert settings.rule_timeout_seconds == 30.0

    def test_reads_json(self, tmp_path: Path) -> None:
        path = tmp_path / "qc.json"
        path.write_text(json.dumps({"auto_resolve": True, "max_workers": 2}))

        settings = load_settings(path)

        assert settings.auto_resolve is True
        assert settings.max_workers == 2
        assert settings.tick_seconds == 60.0

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="Settings file not found"):
            load_settings(tmp_path / "absent.json")

    @pytest.mark.parametrize(
        "override",
        [{"rule_timeout_seconds": 0}, {"max_workers": 0}, {"source_retry_attempts": 0}],
    )
    def test_out_of_range_rejected(self, override: dict[str, object]) -> None:
        with pytest.raises(ValidationError):
            QCSettings(**override)
