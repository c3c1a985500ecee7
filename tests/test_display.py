from datetime import datetime, timezone

import pytest

from quotabar.display import Reading, ReadingStatus, format_reading
from quotabar.models import (
    MeteredUsage,
    PayAsYouGoUsage,
    ProviderIdentifier,
    ProviderResult,
)

COPILOT = ProviderIdentifier.COPILOT


def _metered(used: "float", limit: "float") -> "ProviderResult":
    return ProviderResult(usage=MeteredUsage(used=used, limit=limit))


class TestFormatReading:
    def test_fresh_metered(self) -> "None":
        reading = Reading(COPILOT, ReadingStatus.FRESH, result=_metered(150, 300))
        assert format_reading(reading) == "50%"

    def test_metered_without_limit(self) -> "None":
        reading = Reading(COPILOT, ReadingStatus.FRESH, result=_metered(17, 0))
        assert format_reading(reading) == "17 (no limit info)"

    def test_cached_marked_old(self) -> "None":
        reading = Reading(
            COPILOT,
            ReadingStatus.CACHED,
            result=_metered(150, 300),
            captured_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        assert reading.is_stale
        assert format_reading(reading) == "50% (old)"

    def test_pay_as_you_go(self) -> "None":
        reading = Reading(
            ProviderIdentifier.OPEN_CODE_ZEN,
            ReadingStatus.STALE_UNAUTHENTICATED,
            result=ProviderResult(usage=PayAsYouGoUsage(utilization_percent=7.9, cost=79)),
        )
        assert format_reading(reading) == "7% (old)"

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (ReadingStatus.REFRESHING, "..."),
            (ReadingStatus.NOT_SIGNED_IN, "?"),
            (ReadingStatus.ERROR, "Err"),
        ],
    )
    def test_states_without_result(
        self, status: "ReadingStatus", expected: "str"
    ) -> "None":
        assert format_reading(Reading(COPILOT, status)) == expected
