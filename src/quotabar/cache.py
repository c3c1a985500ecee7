import json
import os
import tempfile
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable

import structlog

from quotabar.models import (
    CachedSnapshot,
    DailyUsage,
    DetailedUsage,
    MeteredUsage,
    PayAsYouGoUsage,
    ProviderIdentifier,
    ProviderResult,
    ProviderType,
    UsageResult,
)

logger = structlog.get_logger()

DEFAULT_CACHE_DIR = Path.home() / ".cache" / "quotabar"


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


def _encode_datetime(value: "datetime | None") -> "str | None":
    return value.isoformat() if value is not None else None


def _decode_datetime(value: "Any") -> "datetime | None":
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _float(value: "Any", default: "float | None" = 0.0) -> "float | None":
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return default


def _int(value: "Any", default: "int | None" = 0) -> "int | None":
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return default


def encode_snapshot(snapshot: "CachedSnapshot") -> "dict[str, Any]":
    usage = snapshot.result.usage
    encoded_usage: "dict[str, Any]" = {
        "kind": usage.provider_type.value,
        "resets_at": _encode_datetime(usage.resets_at),
    }
    if isinstance(usage, MeteredUsage):
        encoded_usage.update(used=usage.used, limit=usage.limit)
    else:
        encoded_usage.update(
            utilization_percent=usage.utilization_percent, cost=usage.cost
        )

    details = snapshot.result.details
    encoded_details: "dict[str, Any] | None" = None
    if details is not None:
        encoded_details = {
            "model_breakdown": dict(details.model_breakdown),
            "sessions": details.sessions,
            "messages": details.messages,
            "avg_cost_per_day": details.avg_cost_per_day,
            "monthly_cost": details.monthly_cost,
            "daily_history": [
                {
                    "date": day.date.isoformat(),
                    "included_requests": day.included_requests,
                    "billed_requests": day.billed_requests,
                    "gross_amount": day.gross_amount,
                    "billed_amount": day.billed_amount,
                    "models": list(day.models),
                }
                for day in details.daily_history
            ],
        }

    return {
        "captured_at": _encode_datetime(snapshot.captured_at),
        "usage": encoded_usage,
        "details": encoded_details,
    }


def _decode_usage(data: "dict[str, Any]") -> "UsageResult":
    kind = data.get("kind")
    if kind is None:
        kind = ProviderType.METERED.value if "limit" in data else ProviderType.PAY_AS_YOU_GO.value

    resets_at = _decode_datetime(data.get("resets_at"))
    if kind == ProviderType.METERED.value:
        return MeteredUsage(
            used=_float(data.get("used")),
            limit=_float(data.get("limit")),
            resets_at=resets_at,
        )
    if kind == ProviderType.PAY_AS_YOU_GO.value:
        return PayAsYouGoUsage(
            utilization_percent=_float(data.get("utilization_percent")),
            cost=_float(data.get("cost")),
            resets_at=resets_at,
        )
    raise ValueError(f"unknown usage kind {kind!r}")


def _decode_day(data: "Any") -> "DailyUsage | None":
    if not isinstance(data, dict):
        return None
    try:
        day = date.fromisoformat(str(data.get("date")))
    except ValueError:
        return None
    models = data.get("models")
    return DailyUsage(
        date=day,
        included_requests=_int(data.get("included_requests")),
        billed_requests=_int(data.get("billed_requests")),
        gross_amount=_float(data.get("gross_amount")),
        billed_amount=_float(data.get("billed_amount")),
        models=tuple(str(m) for m in models) if isinstance(models, list) else (),
    )


def _decode_details(data: "Any") -> "DetailedUsage | None":
    if not isinstance(data, dict):
        return None

    breakdown = data.get("model_breakdown")
    history: "dict[date, DailyUsage]" = {}
    for raw in data.get("daily_history") or []:
        day = _decode_day(raw)
        if day is not None:
            history[day.date] = day

    return DetailedUsage(
        model_breakdown={
            str(k): float(v)
            for k, v in (breakdown.items() if isinstance(breakdown, dict) else [])
            if _float(v, None) is not None
        },
        sessions=_int(data.get("sessions"), None),
        messages=_int(data.get("messages"), None),
        avg_cost_per_day=_float(data.get("avg_cost_per_day"), None),
        daily_history=tuple(history.values()),
        monthly_cost=_float(data.get("monthly_cost"), None),
    )


def decode_snapshot(data: "dict[str, Any]") -> "CachedSnapshot":
    """
    rebuilds a snapshot from its stored form. Missing fields take
    defaults and unknown fields are ignored; only a missing usage
    object or an unknown usage kind is rejected.
    """
    usage = data.get("usage")
    if not isinstance(usage, dict):
        raise ValueError("snapshot has no usage object")

    captured_at = _decode_datetime(data.get("captured_at")) or datetime.fromtimestamp(
        0, timezone.utc
    )
    return CachedSnapshot(
        result=ProviderResult(
            usage=_decode_usage(usage),
            details=_decode_details(data.get("details")),
        ),
        captured_at=captured_at,
    )


class CacheStore:
    """
    CacheStore keeps the last successful reading per provider, in
    memory and as one JSON file per provider under cache_dir.

    Files are replaced atomically, so a reader never sees a partial
    write. There is no expiry: old data is always returned and
    staleness is left to the caller.
    """

    def __init__(
        self,
        cache_dir: "Path" = DEFAULT_CACHE_DIR,
        clock: "Callable[[], datetime]" = _utcnow,
    ) -> "None":
        self._dir = cache_dir
        self._clock = clock
        self._lock: "threading.Lock" = threading.Lock()
        self._snapshots: "dict[ProviderIdentifier, CachedSnapshot]" = {}

    def path_for(self, provider: "ProviderIdentifier") -> "Path":
        return self._dir / f"{provider.value}.json"

    def save(
        self,
        provider: "ProviderIdentifier",
        result: "ProviderResult",
    ) -> "CachedSnapshot":
        snapshot = CachedSnapshot(result=result, captured_at=self._clock())
        payload = json.dumps(encode_snapshot(snapshot), sort_keys=True)

        with self._lock:
            # memory keeps the newest reading even when the disk write fails
            self._snapshots[provider] = snapshot
            path = self.path_for(provider)
            try:
                self._write(path, payload)
            except OSError as e:
                logger.warning(
                    "cache_write_failed", provider=provider.value, path=str(path), error=str(e)
                )
                return snapshot

        logger.debug("cache_saved", provider=provider.value)
        return snapshot

    def load(self, provider: "ProviderIdentifier") -> "CachedSnapshot | None":
        with self._lock:
            snapshot = self._snapshots.get(provider)
            if snapshot is not None:
                return snapshot

            path = self.path_for(provider)
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                snapshot = decode_snapshot(data)
            except FileNotFoundError:
                return None
            except (OSError, ValueError, AttributeError) as e:
                logger.warning(
                    "cache_unreadable", provider=provider.value, path=str(path), error=str(e)
                )
                return None

            self._snapshots[provider] = snapshot
            return snapshot

    def _write(self, path: "Path", payload: "str") -> "None":
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
