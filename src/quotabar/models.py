import math
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Union


class ProviderIdentifier(str, Enum):
    """
    ProviderIdentifier names a provider instance. The value is
    stable and doubles as the cache key and metrics label.
    """

    OPEN_ROUTER = "open_router"
    OPEN_CODE_ZEN = "open_code_zen"
    COPILOT = "copilot"


class ProviderType(str, Enum):
    METERED = "metered"
    PAY_AS_YOU_GO = "pay_as_you_go"


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


def _clamp(value: "float", low: "float" = 0.0, high: "float | None" = None) -> "float":
    value = float(value)
    if math.isnan(value):
        return low
    value = max(value, low)
    if high is not None:
        value = min(value, high)
    return value


@dataclass(frozen=True, slots=True)
class MeteredUsage:
    """
    MeteredUsage is a reading against a hard numeric limit.
    A limit of 0 means the limit is unknown, not that the
    quota is zero.
    """

    used: "float"
    limit: "float"
    resets_at: "datetime | None" = None

    def __post_init__(self) -> "None":
        object.__setattr__(self, "used", _clamp(self.used))
        object.__setattr__(self, "limit", _clamp(self.limit))

    @property
    def provider_type(self) -> "ProviderType":
        return ProviderType.METERED

    @property
    def has_limit(self) -> "bool":
        return self.limit > 0

    @property
    def percent(self) -> "float":
        if not self.has_limit:
            return 0.0
        return min(self.used / self.limit * 100, 100.0)


@dataclass(frozen=True, slots=True)
class PayAsYouGoUsage:
    """
    PayAsYouGoUsage is a reading billed by accrued cost, with a
    derived utilization percentage.
    """

    utilization_percent: "float"
    cost: "float"
    resets_at: "datetime | None" = None

    def __post_init__(self) -> "None":
        object.__setattr__(
            self, "utilization_percent", _clamp(self.utilization_percent, high=100.0)
        )
        object.__setattr__(self, "cost", _clamp(self.cost))

    @property
    def provider_type(self) -> "ProviderType":
        return ProviderType.PAY_AS_YOU_GO

    @property
    def percent(self) -> "float":
        return self.utilization_percent


UsageResult = Union[MeteredUsage, PayAsYouGoUsage]


@dataclass(frozen=True, slots=True)
class DailyUsage:
    date: "date"
    included_requests: "int" = 0
    billed_requests: "int" = 0
    gross_amount: "float" = 0.0
    billed_amount: "float" = 0.0
    # distinct model names seen that day, sorted
    models: "tuple[str, ...]" = ()


@dataclass(frozen=True, slots=True)
class DetailedUsage:
    """
    DetailedUsage is the optional breakdown attached to a reading.
    daily_history is kept ascending by date; a duplicate date is
    rejected.
    """

    # read-only view, excluded from hashing
    model_breakdown: "Mapping[str, float]" = field(
        default_factory=lambda: MappingProxyType({}), hash=False
    )
    sessions: "int | None" = None
    messages: "int | None" = None
    avg_cost_per_day: "float | None" = None
    daily_history: "tuple[DailyUsage, ...]" = ()
    monthly_cost: "float | None" = None

    def __post_init__(self) -> "None":
        history = tuple(sorted(self.daily_history, key=lambda d: d.date))
        for prev, cur in zip(history, history[1:]):
            if prev.date == cur.date:
                raise ValueError(f"duplicate daily history date: {cur.date}")
        object.__setattr__(self, "daily_history", history)
        object.__setattr__(
            self, "model_breakdown", MappingProxyType(dict(self.model_breakdown))
        )


@dataclass(frozen=True, slots=True)
class ProviderResult:
    usage: "UsageResult"
    details: "DetailedUsage | None" = None


@dataclass(frozen=True, slots=True)
class CachedSnapshot:
    result: "ProviderResult"
    # timezone-aware UTC capture time
    captured_at: "datetime"
