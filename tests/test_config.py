from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
from helpers import write_test_config

from uatcms.config.load_config import REPO_ROOT, ConfigError, load_app_config


def test_default_config_loads(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("UATCMS_MAX_CONCURRENT", "UATCMS_REPORTS_DIR", "UATCMS_API_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    cfg = load_app_config(REPO_ROOT / "config" / "default.toml")
    assert cfg.execution.max_concurrent == 7
    assert cfg.execution.queue_settle_delay_s == pytest.approx(0.1)
    assert cfg.worker.command[0] == "npx"
    assert Path(cfg.reports.reports_dir).is_absolute()
    assert cfg.api.runs_list_max_limit == 200


def test_relative_paths_resolve_against_repo_root_of_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("UATCMS_REPORTS_DIR", raising=False)
    monkeypatch.delenv("UATCMS_MAX_CONCURRENT", raising=False)
    with tempfile.TemporaryDirectory() as td:
        cfg = load_app_config(write_test_config(td, max_concurrent=3))
        assert cfg.reports.reports_dir == str((Path(td) / "reports").resolve())
        assert cfg.worker.cwd == str(Path(td).resolve())
        assert cfg.execution.max_concurrent == 3


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        monkeypatch.setenv("UATCMS_MAX_CONCURRENT", "2")
        monkeypatch.setenv("UATCMS_REPORTS_DIR", str(Path(td) / "elsewhere"))
        monkeypatch.setenv("UATCMS_API_BASE_URL", "http://override.test")
        cfg = load_app_config(write_test_config(td))
        assert cfg.execution.max_concurrent == 2
        assert cfg.reports.reports_dir == str((Path(td) / "elsewhere").resolve())
        assert cfg.worker.api_base_url == "http://override.test"


def test_invalid_values_raise_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        monkeypatch.setenv("UATCMS_MAX_CONCURRENT", "0")
        with pytest.raises(ConfigError):
            load_app_config(write_test_config(td))

        monkeypatch.setenv("UATCMS_MAX_CONCURRENT", "many")
        with pytest.raises(ConfigError):
            load_app_config(write_test_config(td))

        with pytest.raises(ConfigError):
            load_app_config(Path(td) / "missing.toml")
