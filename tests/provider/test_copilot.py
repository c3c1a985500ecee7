import asyncio
import json
from datetime import date
from typing import Any

import pytest

from quotabar.errors import (
    FetchTimeout,
    NoAccountIdentifier,
    NotAuthenticated,
    ParseError,
    TransportError,
)
from quotabar.models import MeteredUsage
from quotabar.provider.copilot import (
    BILLING_URL,
    EMBEDDED_DATA_SCRIPT,
    OUTER_HTML_SCRIPT,
    USER_API_SCRIPT,
    CopilotProvider,
    parse_usage_rows,
)
from quotabar.session import SessionStateMachine
from quotabar.transport import DocumentHostError

TABLE = {
    "table": {
        "rows": [
            {
                "id": "r1",
                "cells": [
                    {"value": "2026-03-01"},
                    {"value": "1,200"},
                    {"value": "3"},
                    {"value": "$48.12"},
                    {"value": "$0.12"},
                ],
            },
            {
                "id": "r2",
                "cells": [
                    {"value": "2026-03-02"},
                    {"value": "10"},
                    {"value": "n/a"},
                ],
            },
        ]
    }
}


class FakeHost:
    """
    A document host answering each known script with a canned value,
    or raising it when it is an exception.
    """

    def __init__(self, **responses: "Any") -> "None":
        self._responses = responses
        self.scripts: "list[str]" = []
        self.navigated: "list[str]" = []

    def _key(self, script: "str") -> "str":
        if script == USER_API_SCRIPT:
            return "user"
        if script == EMBEDDED_DATA_SCRIPT:
            return "embedded"
        if script == OUTER_HTML_SCRIPT:
            return "html"
        if "copilot_usage_table" in script:
            return "table"
        if "copilot_usage_card" in script:
            return "card"
        raise AssertionError(f"unexpected script: {script}")

    async def evaluate(self, script: "str") -> "Any":
        self.scripts.append(script)
        response = self._responses.get(self._key(script))
        if isinstance(response, Exception):
            raise response
        return response

    async def navigate(self, url: "str") -> "None":
        self.navigated.append(url)

    def evaluated(self, key: "str") -> "int":
        return sum(1 for s in self.scripts if self._key(s) == key)


class SlowHost(FakeHost):
    """
    A document host that takes longer than any test timeout to answer.
    """

    async def evaluate(self, script: "str") -> "Any":
        self.scripts.append(script)
        await asyncio.sleep(5)
        return None


def _signed_in() -> "SessionStateMachine":
    session = SessionStateMachine()
    session.page_loaded()
    return session


class TestCustomerIdChain:
    @pytest.mark.asyncio
    async def test_user_api_first(self) -> "None":
        host = FakeHost(user=json.dumps({"id": 4242, "login": "octocat"}))
        provider = CopilotProvider(host, _signed_in())

        assert await provider.resolve_customer_id() == "4242"
        assert host.evaluated("embedded") == 0
        assert host.evaluated("html") == 0

    @pytest.mark.asyncio
    async def test_embedded_data_when_user_api_fails(self) -> "None":
        host = FakeHost(
            user=json.dumps({"error": "HTTP 401"}),
            embedded="99",
        )
        provider = CopilotProvider(host, _signed_in())

        assert await provider.resolve_customer_id() == "99"
        assert host.evaluated("html") == 0

    @pytest.mark.asyncio
    async def test_markup_regex_when_earlier_stages_fail(self) -> "None":
        html = '<div data-customer-id="555"></div><a href="?customer_id=777">'
        host = FakeHost(
            user=DocumentHostError("script failed"),
            embedded=None,
            html=html,
        )
        provider = CopilotProvider(host, _signed_in())

        # patterns are tried in order, so customer_id= wins over data-customer-id
        assert await provider.resolve_customer_id() == "777"
        assert host.scripts[-1] == OUTER_HTML_SCRIPT

    @pytest.mark.asyncio
    async def test_escaped_json_in_markup(self) -> "None":
        host = FakeHost(
            user=None,
            embedded=None,
            html="{&quot;customerId&quot;:1234}",
        )
        provider = CopilotProvider(host, _signed_in())

        assert await provider.resolve_customer_id() == "1234"

    @pytest.mark.asyncio
    async def test_no_identifier(self) -> "None":
        host = FakeHost(user="not json", embedded=None, html="<html></html>")
        provider = CopilotProvider(host, _signed_in())

        with pytest.raises(NoAccountIdentifier):
            await provider.resolve_customer_id()

    @pytest.mark.asyncio
    async def test_unexpected_stage_error_not_swallowed(self) -> "None":
        host = FakeHost(user=RuntimeError("bug in host"), embedded="12")
        provider = CopilotProvider(host, _signed_in())

        with pytest.raises(RuntimeError):
            await provider.resolve_customer_id()
        assert host.evaluated("embedded") == 0

    @pytest.mark.asyncio
    async def test_boolean_id_rejected(self) -> "None":
        host = FakeHost(user={"id": True}, embedded="12")
        provider = CopilotProvider(host, _signed_in())

        assert await provider.resolve_customer_id() == "12"


class TestCopilotProviderFetch:
    @pytest.mark.asyncio
    async def test_fetch(self) -> "None":
        host = FakeHost(
            user={"id": 1},
            table=TABLE,
            card={"user_premium_request_entitlement": 1500},
        )
        provider = CopilotProvider(host, _signed_in())

        result = await provider.fetch()

        assert isinstance(result.usage, MeteredUsage)
        assert result.usage.used == 1213.0
        assert result.usage.limit == 1500.0
        assert result.usage.resets_at is not None
        assert result.usage.resets_at.day == 1
        assert "customer_id=1&" in host.scripts[1]

        assert result.details is not None
        history = result.details.daily_history
        assert [d.date for d in history] == [date(2026, 3, 1), date(2026, 3, 2)]
        assert history[0].included_requests == 1200
        assert history[0].billed_requests == 3
        assert history[0].gross_amount == 48.12
        assert history[1].billed_requests == 0

    @pytest.mark.asyncio
    async def test_camel_case_entitlement(self) -> "None":
        host = FakeHost(
            user={"id": 1},
            table=json.dumps(TABLE),
            card={"userPremiumRequestEntitlement": 300},
        )
        provider = CopilotProvider(host, _signed_in())

        result = await provider.fetch()

        assert result.usage == MeteredUsage(
            used=1213, limit=300, resets_at=result.usage.resets_at
        )

    @pytest.mark.asyncio
    async def test_card_failure_degrades_to_no_limit(self) -> "None":
        host = FakeHost(
            user={"id": 1},
            table=TABLE,
            card=DocumentHostError("network"),
        )
        provider = CopilotProvider(host, _signed_in())

        result = await provider.fetch()

        assert isinstance(result.usage, MeteredUsage)
        assert result.usage.limit == 0.0
        assert result.usage.has_limit is False
        assert result.usage.used == 1213.0

    @pytest.mark.asyncio
    async def test_table_failure_fails_fetch(self) -> "None":
        host = FakeHost(user={"id": 1}, table=DocumentHostError("network"))
        provider = CopilotProvider(host, _signed_in())

        with pytest.raises(TransportError):
            await provider.fetch()
        assert host.evaluated("card") == 0

    @pytest.mark.asyncio
    async def test_table_shape_change_is_parse_error(self) -> "None":
        host = FakeHost(user={"id": 1}, table={"rows": []})
        provider = CopilotProvider(host, _signed_in())

        with pytest.raises(ParseError) as exc:
            await provider.fetch()
        assert exc.value.field == "table"

    @pytest.mark.asyncio
    async def test_not_authenticated_makes_no_calls(self) -> "None":
        host = FakeHost(user={"id": 1}, table=TABLE)
        provider = CopilotProvider(host, SessionStateMachine())

        with pytest.raises(NotAuthenticated):
            await provider.fetch()
        assert host.scripts == []

    @pytest.mark.asyncio
    async def test_slow_host_times_out(self) -> "None":
        host = SlowHost()
        provider = CopilotProvider(host, _signed_in(), timeout_seconds=0.05)

        with pytest.raises(FetchTimeout) as exc:
            await provider.fetch()
        assert exc.value.kind == "timeout"
        assert host.scripts == [USER_API_SCRIPT]

    @pytest.mark.asyncio
    async def test_unexpected_host_error_propagates(self) -> "None":
        host = FakeHost(user={"id": 1}, table=RuntimeError("bug in host"))
        provider = CopilotProvider(host, _signed_in())

        with pytest.raises(RuntimeError):
            await provider.fetch()

    @pytest.mark.asyncio
    async def test_open_billing_page(self) -> "None":
        host = FakeHost()
        provider = CopilotProvider(host, SessionStateMachine())

        await provider.open_billing_page()

        assert host.navigated == [BILLING_URL]


class TestParseUsageRows:
    def test_missing_cells_count_as_zero(self) -> "None":
        rows = parse_usage_rows(
            {"rows": [{"cells": [{"value": "Model A"}]}, {"id": "x"}, "junk"]}
        )
        assert len(rows) == 2
        assert rows[0].label == "Model A"
        assert rows[0].included == 0.0
        assert rows[1].billed == 0.0
