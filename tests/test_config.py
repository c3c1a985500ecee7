from pathlib import Path

import pytest

from quotabar.cli import parse_args
from quotabar.config import Config


class TestConfigFromEnv:
    def test_defaults(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        for name in (
            "QUOTABAR_CACHE_DIR",
            "QUOTABAR_AUTH_FILE",
            "QUOTABAR_OPENCODE_BIN",
            "QUOTABAR_MONTHLY_LIMIT",
        ):
            monkeypatch.delenv(name, raising=False)
        config = Config.from_env()
        assert config.monthly_limit == 1000.0
        assert config.opencode_bin.name == "opencode"
        assert config.refresh_interval == 1800

    def test_reads_env_vars(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        monkeypatch.setenv("QUOTABAR_CACHE_DIR", "/tmp/qb-cache")
        monkeypatch.setenv("QUOTABAR_AUTH_FILE", "/tmp/auth.json")
        monkeypatch.setenv("QUOTABAR_OPENCODE_BIN", "/opt/opencode")
        monkeypatch.setenv("QUOTABAR_MONTHLY_LIMIT", "250")
        config = Config.from_env()
        assert config.cache_dir == Path("/tmp/qb-cache")
        assert config.auth_file == Path("/tmp/auth.json")
        assert config.opencode_bin == Path("/opt/opencode")
        assert config.monthly_limit == 250.0

    def test_invalid_monthly_limit(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        monkeypatch.setenv("QUOTABAR_MONTHLY_LIMIT", "lots")
        with pytest.raises(ValueError, match="QUOTABAR_MONTHLY_LIMIT"):
            Config.from_env()


class TestParseArgs:
    def test_defaults(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        monkeypatch.delenv("QUOTABAR_MONTHLY_LIMIT", raising=False)
        config = parse_args([])
        assert config.listen_address == ":9186"
        assert config.refresh_interval == 1800
        assert config.log_level == "info"
        assert config.once is False
        assert config.metrics_enabled is True

    def test_flags(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        monkeypatch.delenv("QUOTABAR_MONTHLY_LIMIT", raising=False)
        config = parse_args(
            [
                "--web.listen-address=",
                "--refresh.interval",
                "60",
                "--log.level",
                "debug",
                "--once",
            ]
        )
        assert config.metrics_enabled is False
        assert config.refresh_interval == 60
        assert config.log_level == "debug"
        assert config.once is True
