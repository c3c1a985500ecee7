from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

import structlog

from quotabar.models import (
    MeteredUsage,
    ProviderIdentifier,
    ProviderResult,
    SessionState,
)

logger = structlog.get_logger()


class ReadingStatus(str, Enum):
    REFRESHING = "refreshing"
    FRESH = "fresh"
    # last good value, shown because the latest fetch failed
    CACHED = "cached"
    # last good value, shown because the session is signed out
    STALE_UNAUTHENTICATED = "stale_unauthenticated"
    NOT_SIGNED_IN = "not_signed_in"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Reading:
    """
    Reading is what the display layer receives for one provider.
    result is None for REFRESHING, NOT_SIGNED_IN and ERROR.
    """

    provider: "ProviderIdentifier"
    status: "ReadingStatus"
    result: "ProviderResult | None" = None
    captured_at: "datetime | None" = None
    error: "str | None" = None

    @property
    def is_stale(self) -> "bool":
        return self.status in (ReadingStatus.CACHED, ReadingStatus.STALE_UNAUTHENTICATED)


class UsageDisplay(Protocol):
    def show(self, reading: "Reading") -> "None": ...

    def session_changed(self, state: "SessionState") -> "None": ...


def format_reading(reading: "Reading") -> "str":
    """
    short status-bar style text for a reading, e.g. '42%', '17 (no
    limit info)', '42% (old)' or 'Err'.
    """
    if reading.status is ReadingStatus.REFRESHING:
        return "..."
    if reading.status is ReadingStatus.NOT_SIGNED_IN:
        return "?"
    if reading.status is ReadingStatus.ERROR or reading.result is None:
        return "Err"

    usage = reading.result.usage
    if isinstance(usage, MeteredUsage) and not usage.has_limit:
        text = f"{int(usage.used)} (no limit info)"
    else:
        text = f"{int(usage.percent)}%"

    if reading.is_stale:
        text += " (old)"
    return text


class LogDisplay:
    """
    LogDisplay renders readings as structured log lines. Useful
    headless, and as the default display of the command line entry
    point.
    """

    def show(self, reading: "Reading") -> "None":
        if reading.status is ReadingStatus.REFRESHING:
            logger.debug("reading", provider=reading.provider.value, status="refreshing")
            return

        logger.info(
            "reading",
            provider=reading.provider.value,
            status=reading.status.value,
            text=format_reading(reading),
            captured_at=reading.captured_at.isoformat() if reading.captured_at else None,
            error=reading.error,
        )

    def session_changed(self, state: "SessionState") -> "None":
        if state is SessionState.AUTHENTICATED:
            logger.info("session_ready")
        else:
            logger.warning("sign_in_required", state=state.value)
