from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from quotabar.credentials import CredentialStore
from quotabar.errors import ConfigurationError, ParseError, TransportError
from quotabar.models import (
    DailyUsage,
    DetailedUsage,
    MeteredUsage,
    PayAsYouGoUsage,
    ProviderIdentifier,
    ProviderResult,
    UsageResult,
)
from quotabar.provider.base import bounded_fetch

logger = structlog.get_logger()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# how many of the most recent activity dates are kept
_HISTORY_DAYS = 14


def next_reset(limit_reset: "str | None", now: "datetime") -> "datetime | None":
    """
    maps an OpenRouter limit_reset period to the next UTC boundary.
    """
    today = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    if limit_reset == "daily":
        return today + timedelta(days=1)
    if limit_reset == "weekly":
        return today + timedelta(days=7 - today.weekday())
    if limit_reset == "monthly":
        if now.month == 12:
            return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
        return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return None


def bucket_activity(entries: "list[Any]") -> "tuple[DailyUsage, ...]":
    """
    groups activity entries by calendar date. Each day counts its
    entries and the distinct models used. Entries without a
    readable date are ignored.
    """
    counts: "dict[date, int]" = defaultdict(int)
    models: "dict[date, set[str]]" = defaultdict(set)

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            day = date.fromisoformat(str(entry.get("date", ""))[:10])
        except ValueError:
            continue
        counts[day] += 1
        if entry.get("model"):
            models[day].add(str(entry["model"]))

    days = sorted(counts)[-_HISTORY_DAYS:]
    return tuple(
        DailyUsage(
            date=day,
            included_requests=counts[day],
            models=tuple(sorted(models[day])),
        )
        for day in days
    )


class OpenRouterProvider:
    """
    OpenRouterProvider implements the UsageProvider protocol for the
    OpenRouter credits API. A key with a hard limit is reported as
    metered usage, otherwise spend is reported against the purchased
    credits. Per-day activity is attached when the key can read it.
    """

    def __init__(
        self,
        credentials: "CredentialStore",
        timeout_seconds: "float" = 30.0,
    ) -> "None":
        self._credentials = credentials
        self._timeout = timeout_seconds
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            base_url=OPENROUTER_BASE_URL,
            timeout=10.0,
        )

    @property
    def identifier(self) -> "ProviderIdentifier":
        return ProviderIdentifier.OPEN_ROUTER

    @property
    def requires_auth(self) -> "bool":
        return False

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def fetch(self) -> "ProviderResult":
        api_key = self._credentials.lookup("openrouter")
        if not api_key:
            raise ConfigurationError(self.identifier, "no OpenRouter API key configured")

        return await bounded_fetch(self._fetch(api_key), self._timeout, self.identifier)

    async def _fetch(self, api_key: "str") -> "ProviderResult":
        headers = {"Authorization": f"Bearer {api_key}"}
        credits = await self._get_data("/credits", headers)
        key = await self._get_data("/key", headers)
        history = await self._fetch_activity(headers)

        usage = self._combine(credits, key, datetime.now(timezone.utc))
        monthly = key.get("usage_monthly")
        details = DetailedUsage(
            daily_history=history,
            monthly_cost=float(monthly) if isinstance(monthly, (int, float)) else None,
        )

        logger.info(
            "openrouter_fetch_done",
            percent=round(usage.percent, 1),
            history_days=len(history),
        )
        return ProviderResult(usage=usage, details=details)

    def _combine(
        self,
        credits: "dict[str, Any]",
        key: "dict[str, Any]",
        now: "datetime",
    ) -> "UsageResult":
        try:
            limit = key.get("limit")
            if isinstance(limit, (int, float)) and not isinstance(limit, bool):
                return MeteredUsage(
                    used=float(key.get("usage") or 0.0),
                    limit=float(limit),
                    resets_at=next_reset(key.get("limit_reset"), now),
                )

            total_credits = float(credits.get("total_credits") or 0.0)
            total_usage = float(credits.get("total_usage") or 0.0)
        except (TypeError, ValueError) as e:
            raise ParseError(
                self.identifier,
                f"unexpected credits or key shape: {e}",
                context=f"credits={credits!r} key={key!r}",
            ) from e

        utilization = total_usage / total_credits * 100 if total_credits > 0 else 0.0
        return PayAsYouGoUsage(utilization_percent=utilization, cost=total_usage)

    async def _get_data(
        self,
        path: "str",
        headers: "dict[str, str]",
    ) -> "dict[str, Any]":
        """
        issues a GET and returns the 'data' object of the response.
        """
        logger.debug("openrouter_request", path=path)
        try:
            resp = await self._client.get(path, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(self.identifier, f"GET {path} failed: {e}") from e

        if resp.status_code != 200:
            raise TransportError(
                self.identifier,
                f"GET {path} returned HTTP {resp.status_code}",
                context=resp.text,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise ParseError(
                self.identifier, f"GET {path} returned non-JSON", context=resp.text
            ) from e

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise ParseError(
                self.identifier,
                f"GET {path} has no data object",
                context=resp.text,
                field="data",
            )
        return data

    async def _fetch_activity(
        self,
        headers: "dict[str, str]",
    ) -> "tuple[DailyUsage, ...]":
        """
        best-effort activity listing. Anything short of a usable
        list yields an empty history.
        """
        try:
            resp = await self._client.get("/activity", headers=headers)
            if resp.status_code != 200:
                logger.debug("openrouter_activity_unavailable", status=resp.status_code)
                return ()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("openrouter_activity_failed", error=str(e))
            return ()

        entries = body.get("data") if isinstance(body, dict) else None
        if not isinstance(entries, list) or not entries:
            return ()
        return bucket_activity(entries)
