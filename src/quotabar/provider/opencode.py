import os
from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path
from typing import Callable, Sequence

import structlog

from quotabar.errors import (
    ConfigurationError,
    FetchTimeout,
    ParseError,
    TextParseError,
    TransportError,
)
from quotabar.extract import extract_labeled_number, extract_rows
from quotabar.models import (
    DailyUsage,
    DetailedUsage,
    PayAsYouGoUsage,
    ProviderIdentifier,
    ProviderResult,
)
from quotabar.provider.base import bounded_fetch
from quotabar.transport import ProcessRunner

logger = structlog.get_logger()

DEFAULT_OPENCODE_BIN = Path.home() / ".opencode" / "bin" / "opencode"
DEFAULT_MONTHLY_LIMIT = 1000.0

# the summary window and the trailing windows used for daily history
SUMMARY_DAYS = 30
HISTORY_DAYS = 7

INTEGER = r"[\d,]+"
# one model per line: "│ <model> ... │ Cost $1.23"
MODEL_ROW = r"^[ \t]*│[ \t]*(?P<name>[^\s│]+)[^\n]*?│[ \t]*Cost[ \t]+\$(?P<value>[\d,.]+)"


@dataclass(frozen=True, slots=True)
class LedgerStats:
    total_cost: "float"
    avg_cost_per_day: "float"
    sessions: "int"
    messages: "int"
    model_costs: "dict[str, float]" = field(default_factory=dict)


def parse_stats(output: "str") -> "LedgerStats":
    """
    parses the tables printed by 'opencode stats'. Raises
    TextParseError naming the first field that is missing or
    unreadable; the per-model breakdown is optional.
    """
    return LedgerStats(
        total_cost=extract_labeled_number(output, "Total Cost", "total_cost"),
        avg_cost_per_day=extract_labeled_number(
            output, "Avg Cost/Day", "avg_cost_per_day"
        ),
        sessions=extract_labeled_number(
            output, "Sessions", "sessions", pattern=INTEGER, cast=int
        ),
        messages=extract_labeled_number(
            output, "Messages", "messages", pattern=INTEGER, cast=int
        ),
        model_costs=extract_rows(output, MODEL_ROW),
    )


def derive_daily_costs(cumulative: "Sequence[float]") -> "list[float]":
    """
    turns cumulative totals for windows of 1..n days into per-day
    costs. Index 0 is today. A ledger that shrinks between windows
    yields a negative day; that is reported as-is.
    """
    daily: "list[float]" = []
    previous = 0.0
    for total in cumulative:
        daily.append(total - previous)
        previous = total
    return daily


class OpenCodeProvider:
    """
    OpenCodeProvider reads pay-as-you-go spend from the local
    opencode CLI ledger.

    A fetch runs the stats command once for the 30 day summary and
    once more for each trailing window of 1..7 days, so it is slow.
    Any failing invocation fails the whole fetch.
    """

    def __init__(
        self,
        runner: "ProcessRunner",
        binary: "Path" = DEFAULT_OPENCODE_BIN,
        monthly_limit: "float" = DEFAULT_MONTHLY_LIMIT,
        command_timeout_seconds: "float" = 15.0,
        today: "Callable[[], date]" = date.today,
    ) -> "None":
        self._runner = runner
        self._binary = binary
        self._monthly_limit = monthly_limit
        self._command_timeout = command_timeout_seconds
        self._today = today

    @property
    def identifier(self) -> "ProviderIdentifier":
        return ProviderIdentifier.OPEN_CODE_ZEN

    @property
    def requires_auth(self) -> "bool":
        return False

    async def close(self) -> "None":
        pass

    async def fetch(self) -> "ProviderResult":
        if not os.access(self._binary, os.X_OK):
            raise ConfigurationError(
                self.identifier, f"opencode CLI not found at {self._binary}"
            )

        # each of the 1 + HISTORY_DAYS invocations gets its own bound
        bound = self._command_timeout * (1 + HISTORY_DAYS)
        return await bounded_fetch(self._fetch(), bound, self.identifier)

    async def _fetch(self) -> "ProviderResult":
        stats = await self._stats(SUMMARY_DAYS)
        history = await self._daily_history()

        utilization = (
            min(stats.total_cost / self._monthly_limit * 100, 100.0)
            if self._monthly_limit > 0
            else 0.0
        )
        logger.info(
            "opencode_fetch_done",
            total_cost=stats.total_cost,
            utilization=round(utilization, 1),
            monthly_limit=self._monthly_limit,
        )

        return ProviderResult(
            usage=PayAsYouGoUsage(utilization_percent=utilization, cost=stats.total_cost),
            details=DetailedUsage(
                model_breakdown=stats.model_costs,
                sessions=stats.sessions,
                messages=stats.messages,
                avg_cost_per_day=stats.avg_cost_per_day,
                daily_history=history,
                monthly_cost=stats.total_cost,
            ),
        )

    async def _daily_history(self) -> "tuple[DailyUsage, ...]":
        cumulative = [
            (await self._stats(days)).total_cost for days in range(1, HISTORY_DAYS + 1)
        ]
        today = self._today()
        history = [
            DailyUsage(
                date=today - timedelta(days=index),
                gross_amount=cost,
                billed_amount=cost,
            )
            for index, cost in enumerate(derive_daily_costs(cumulative))
        ]
        logger.debug("opencode_daily_history", days=len(history))
        return tuple(history)

    async def _stats(self, days: "int") -> "LedgerStats":
        args = ["stats", "--days", str(days), "--models", "10"]
        try:
            result = await self._runner.run(
                str(self._binary), args, timeout=self._command_timeout
            )
        except FileNotFoundError as e:
            raise ConfigurationError(
                self.identifier, f"opencode CLI not found at {self._binary}"
            ) from e
        except TimeoutError as e:
            raise FetchTimeout(
                self.identifier, f"opencode stats --days {days} timed out"
            ) from e
        except OSError as e:
            raise TransportError(
                self.identifier, f"failed to execute opencode CLI: {e}"
            ) from e

        if result.exit_code != 0:
            raise TransportError(
                self.identifier,
                f"opencode CLI failed with exit code {result.exit_code}",
                context=result.output,
            )

        try:
            return parse_stats(result.output)
        except TextParseError as e:
            raise ParseError(
                self.identifier, str(e), context=result.output, field=e.field
            ) from e
