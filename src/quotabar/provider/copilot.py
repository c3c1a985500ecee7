import json
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

import structlog

from quotabar.errors import (
    NoAccountIdentifier,
    NotAuthenticated,
    ParseError,
    TransportError,
)
from quotabar.extract import parse_number
from quotabar.models import (
    DailyUsage,
    DetailedUsage,
    MeteredUsage,
    ProviderIdentifier,
    ProviderResult,
)
from quotabar.provider.base import bounded_fetch
from quotabar.session import SessionStateMachine
from quotabar.transport import DocumentHost, DocumentHostError

logger = structlog.get_logger()

BILLING_URL = "https://github.com/settings/billing/premium_requests_usage"

USER_API_SCRIPT = """
return await (async function() {
    try {
        const response = await fetch('/api/v3/user', {
            headers: { 'Accept': 'application/json' }
        });
        if (!response.ok) return JSON.stringify({ error: 'HTTP ' + response.status });
        return JSON.stringify(await response.json());
    } catch (e) {
        return JSON.stringify({ error: e.toString() });
    }
})()
"""

EMBEDDED_DATA_SCRIPT = """
return (function() {
    const el = document.querySelector('script[data-target="react-app.embeddedData"]');
    if (!el) return null;
    try {
        const data = JSON.parse(el.textContent);
        const id = data && data.payload && data.payload.customer && data.payload.customer.customerId;
        return id ? id.toString() : null;
    } catch (e) {
        return null;
    }
})()
"""

OUTER_HTML_SCRIPT = "return document.documentElement.outerHTML"

USAGE_TABLE_SCRIPT = """
return await (await fetch('/settings/billing/copilot_usage_table?customer_id={customer_id}&group=7&period=3&query=&page=1', {{
    headers: {{
        'accept': 'application/json',
        'content-type': 'application/json',
        'x-requested-with': 'XMLHttpRequest'
    }}
}})).json()
"""

USAGE_CARD_SCRIPT = """
return await (async function() {{
    try {{
        const res = await fetch('/settings/billing/copilot_usage_card?customer_id={customer_id}&period=3', {{
            headers: {{ 'Accept': 'application/json', 'x-requested-with': 'XMLHttpRequest' }}
        }});
        return await res.json();
    }} catch (e) {{ return null; }}
}})()
"""

# tried in order against the page markup, first match wins. The
# page structure is undocumented, so these are expected to change.
CUSTOMER_ID_PATTERNS: "list[re.Pattern[str]]" = [
    re.compile(r'"customerId":(\d+)'),
    re.compile(r"customerId&quot;:(\d+)"),
    re.compile(r"customer_id=(\d+)"),
    re.compile(r'data-customer-id="(\d+)"'),
]

_ENTITLEMENT_KEYS = ("user_premium_request_entitlement", "userPremiumRequestEntitlement")
_ROW_DATE_FORMATS = ("%Y-%m-%d", "%b %d, %Y", "%B %d, %Y", "%m/%d/%Y")


@dataclass(frozen=True, slots=True)
class UsageRow:
    label: "str"
    included: "float"
    billed: "float"
    gross_amount: "float"
    billed_amount: "float"


def _as_json(result: "Any") -> "Any":
    """
    script results arrive either as a JSON string or already decoded.
    """
    if isinstance(result, str):
        return json.loads(result)
    return result


def _cell_number(cells: "list[Any]", index: "int") -> "float":
    if index >= len(cells) or not isinstance(cells[index], dict):
        return 0.0
    value = cells[index].get("value")
    if value is None:
        return 0.0
    try:
        return parse_number(str(value))
    except ValueError:
        return 0.0


def _row_date(label: "str") -> "date | None":
    for fmt in _ROW_DATE_FORMATS:
        try:
            return datetime.strptime(label.strip(), fmt).date()
        except ValueError:
            continue
    return None


def parse_usage_rows(table: "dict[str, Any]") -> "list[UsageRow]":
    """
    reads included and billed quantities from each table row. Cells
    that are missing or unreadable count as zero.
    """
    rows: "list[UsageRow]" = []
    for row in table.get("rows") or []:
        if not isinstance(row, dict):
            continue
        cells = row.get("cells") or []
        first = cells[0].get("value") if cells and isinstance(cells[0], dict) else None
        rows.append(
            UsageRow(
                label=str(first or ""),
                included=_cell_number(cells, 1),
                billed=_cell_number(cells, 2),
                gross_amount=_cell_number(cells, 3),
                billed_amount=_cell_number(cells, 4),
            )
        )
    return rows


def rows_to_history(rows: "list[UsageRow]") -> "tuple[DailyUsage, ...]":
    """
    keeps rows labelled with a date, merging rows of the same day.
    """
    merged: "dict[date, list[float]]" = defaultdict(lambda: [0.0, 0.0, 0.0, 0.0])
    for row in rows:
        day = _row_date(row.label)
        if day is None:
            continue
        totals = merged[day]
        totals[0] += row.included
        totals[1] += row.billed
        totals[2] += row.gross_amount
        totals[3] += row.billed_amount

    return tuple(
        DailyUsage(
            date=day,
            included_requests=int(t[0]),
            billed_requests=int(t[1]),
            gross_amount=t[2],
            billed_amount=t[3],
        )
        for day, t in sorted(merged.items())
    )


def first_of_next_month(now: "datetime") -> "datetime":
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


class CopilotProvider:
    """
    CopilotProvider scrapes premium request usage from the GitHub
    billing pages through an authenticated document host.

    There is no stable API, so the account identifier is found by a
    chain of fallbacks: the user API, the page's embedded JSON, and
    finally regexes over the raw markup. With an identifier, the
    usage table gives the request count and the usage card gives
    the entitlement. A missing entitlement is reported as limit 0.
    """

    def __init__(
        self,
        host: "DocumentHost",
        session: "SessionStateMachine",
        timeout_seconds: "float" = 30.0,
    ) -> "None":
        self._host = host
        self._session = session
        self._timeout = timeout_seconds

    @property
    def identifier(self) -> "ProviderIdentifier":
        return ProviderIdentifier.COPILOT

    @property
    def requires_auth(self) -> "bool":
        return True

    async def close(self) -> "None":
        pass

    async def open_billing_page(self) -> "None":
        """
        loads the billing page; the host reports the result to the
        session machine as a page load or an expiry.
        """
        await self._host.navigate(BILLING_URL)

    async def fetch(self) -> "ProviderResult":
        if not self._session.is_authenticated:
            raise NotAuthenticated(
                self.identifier, f"session is {self._session.state.value}"
            )
        return await bounded_fetch(self._fetch(), self._timeout, self.identifier)

    async def _fetch(self) -> "ProviderResult":
        customer_id = await self.resolve_customer_id()

        rows = await self._usage_rows(customer_id)
        used = sum(row.included + row.billed for row in rows)
        limit = await self._entitlement(customer_id)

        logger.info(
            "copilot_fetch_done",
            customer_id=customer_id,
            used=used,
            limit=limit,
        )
        return ProviderResult(
            usage=MeteredUsage(
                used=used,
                limit=limit,
                resets_at=first_of_next_month(datetime.now(timezone.utc)),
            ),
            details=DetailedUsage(daily_history=rows_to_history(rows)),
        )

    async def resolve_customer_id(self) -> "str":
        stages = (
            ("user_api", self._id_from_user_api),
            ("embedded_data", self._id_from_embedded_data),
            ("markup_regex", self._id_from_markup),
        )
        for stage, resolve in stages:
            try:
                customer_id = await resolve()
            except (DocumentHostError, ValueError) as e:
                logger.warning("copilot_id_stage_error", stage=stage, error=str(e))
                continue

            if customer_id:
                logger.debug("copilot_id_resolved", stage=stage)
                return customer_id
            logger.debug("copilot_id_stage_empty", stage=stage)

        raise NoAccountIdentifier(
            self.identifier, "customer id not found by any lookup stage"
        )

    async def _id_from_user_api(self) -> "str | None":
        data = _as_json(await self._host.evaluate(USER_API_SCRIPT))
        if not isinstance(data, dict):
            return None
        user_id = data.get("id")
        if isinstance(user_id, int) and not isinstance(user_id, bool):
            return str(user_id)
        return None

    async def _id_from_embedded_data(self) -> "str | None":
        result = await self._host.evaluate(EMBEDDED_DATA_SCRIPT)
        if isinstance(result, (str, int)) and not isinstance(result, bool) and result:
            return str(result)
        return None

    async def _id_from_markup(self) -> "str | None":
        html = await self._host.evaluate(OUTER_HTML_SCRIPT)
        if not isinstance(html, str):
            return None
        for pattern in CUSTOMER_ID_PATTERNS:
            match = pattern.search(html)
            if match:
                return match.group(1)
        return None

    async def _usage_rows(self, customer_id: "str") -> "list[UsageRow]":
        script = USAGE_TABLE_SCRIPT.format(customer_id=customer_id)
        try:
            result = await self._host.evaluate(script)
        except DocumentHostError as e:
            raise TransportError(
                self.identifier, f"usage table request failed: {e}"
            ) from e

        try:
            data = _as_json(result)
        except ValueError as e:
            raise ParseError(
                self.identifier,
                "usage table is not JSON",
                context=str(result),
                field="table",
            ) from e

        table = data.get("table") if isinstance(data, dict) else None
        if not isinstance(table, dict):
            raise ParseError(
                self.identifier,
                "usage table response has no table object",
                context=repr(data),
                field="table",
            )
        return parse_usage_rows(table)

    async def _entitlement(self, customer_id: "str") -> "int":
        """
        best-effort premium request entitlement, 0 when unknown.
        """
        script = USAGE_CARD_SCRIPT.format(customer_id=customer_id)
        try:
            card = _as_json(await self._host.evaluate(script))
        except (DocumentHostError, ValueError) as e:
            logger.warning("copilot_usage_card_failed", error=str(e))
            return 0

        if isinstance(card, dict):
            for key in _ENTITLEMENT_KEYS:
                value = card.get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    return value

        logger.warning("copilot_entitlement_missing", card=repr(card)[:200])
        return 0
