import os
from dataclasses import dataclass, field
from pathlib import Path

from quotabar.cache import DEFAULT_CACHE_DIR
from quotabar.credentials import DEFAULT_AUTH_FILE
from quotabar.provider.opencode import DEFAULT_MONTHLY_LIMIT, DEFAULT_OPENCODE_BIN
from quotabar.scheduler import DEFAULT_REFRESH_INTERVAL_SECONDS


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186", empty disables the metrics server
    listen_address: "str" = ":9186"
    # refresh interval in seconds
    refresh_interval: "int" = DEFAULT_REFRESH_INTERVAL_SECONDS
    log_level: "str" = "info"
    # refresh every provider once and exit
    once: "bool" = False

    cache_dir: "Path" = field(default_factory=lambda: DEFAULT_CACHE_DIR)
    auth_file: "Path" = field(default_factory=lambda: DEFAULT_AUTH_FILE)
    opencode_bin: "Path" = field(default_factory=lambda: DEFAULT_OPENCODE_BIN)
    # spend treated as 100% for the opencode ledger
    monthly_limit: "float" = DEFAULT_MONTHLY_LIMIT

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()
        if os.environ.get("QUOTABAR_CACHE_DIR"):
            config.cache_dir = Path(os.environ["QUOTABAR_CACHE_DIR"])
        if os.environ.get("QUOTABAR_AUTH_FILE"):
            config.auth_file = Path(os.environ["QUOTABAR_AUTH_FILE"])
        if os.environ.get("QUOTABAR_OPENCODE_BIN"):
            config.opencode_bin = Path(os.environ["QUOTABAR_OPENCODE_BIN"])
        if os.environ.get("QUOTABAR_MONTHLY_LIMIT"):
            try:
                config.monthly_limit = float(os.environ["QUOTABAR_MONTHLY_LIMIT"])
            except ValueError as e:
                raise ValueError(
                    "QUOTABAR_MONTHLY_LIMIT must be a number, "
                    f"got {os.environ['QUOTABAR_MONTHLY_LIMIT']!r}"
                ) from e
        return config

    @property
    def metrics_enabled(self) -> "bool":
        return bool(self.listen_address)
