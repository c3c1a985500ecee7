from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from quotabar.cache import CacheStore


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def cache(tmp_path: "Path") -> "CacheStore":
    return CacheStore(tmp_path / "cache")
