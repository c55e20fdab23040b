"""
Unit tests for metrics_sync/adapters/appstore.py

Daily reports are served as gzip-compressed TSV from an in-memory map
keyed by (report type, date).
"""
import gzip
import jwt
import pytest
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from metrics_sync.adapters.appstore import (
    JWT_AUDIENCE,
    AppStoreAdapter,
    classify_event_keyword,
    gunzip_report,
    normalize_private_key,
    parse_duration,
)
from metrics_sync.adapters.base import FetchContext, FetchWindow
from metrics_sync.exceptions import ApiError, CredentialError, ParseError
from metrics_sync.models import BillingInterval, RevenueEventType, SubscriptionStatus

UTC = timezone.utc

DAY = date(2024, 1, 10)
WINDOW = FetchWindow(datetime(2024, 1, 10, tzinfo=UTC), datetime(2024, 1, 11, tzinfo=UTC))

CREDENTIALS = {
    "issuer_id": "issuer-1",
    "key_id": "KEY123",
    "private_key": "unused",
    "vendor_number": "88888888",
    "app_apple_id": "123",
}

SUMMARY_TSV = (
    "App Name\tApp Apple ID\tSubscription Name\tActive Standard Price Subscriptions\t"
    "Active Free Trial Introductory Offer Subscriptions\tGrace Period\n"
    "Example\t123\tPro Monthly\t5\t2\t1\n"
)

SUBSCRIBER_HEADER = (
    "Event Date\tApp Name\tApp Apple ID\tSubscription Name\tSubscription Apple ID\t"
    "Standard Subscription Duration\tSubscription Offer Type\tCustomer Price\tCustomer Currency\t"
    "Developer Proceeds\tProceeds Currency\tSubscriber ID\tRefund\tPurchase Date\tUnits"
)

SUBSCRIBER_ROWS = [
    # New paid subscriber
    "2024-01-10\tExample\t123\tPro Monthly\t9001\t1 Month\t\t9.99\tUSD\t6.99\tUSD\t111\t\t2024-01-10\t1",
    # Free trial start
    "2024-01-10\tExample\t123\tPro Monthly\t9001\t1 Month\tFree Trial\t0\tUSD\t0\tUSD\t222\t\t2024-01-10\t1",
    # Renewal of an older subscription
    "2024-01-10\tExample\t123\tPro Monthly\t9001\t1 Month\t\t9.99\tUSD\t8.49\tUSD\t333\t\t2023-11-10\t1",
    # Refund
    "2024-01-10\tExample\t123\tPro Monthly\t9001\t1 Month\t\t9.99\tUSD\t6.99\tUSD\t444\tYes\t2023-12-10\t-1",
    # Another app in the same vendor account
    "2024-01-10\tOther\t999\tOther Monthly\t7001\t1 Month\t\t4.99\tUSD\t3.49\tUSD\t555\t\t2024-01-10\t1",
    # Unreadable date
    "garbage\tExample\t123\tPro Monthly\t9001\t1 Month\t\t9.99\tUSD\t6.99\tUSD\t666\t\t2024-01-10\t1",
]

EVENTS_TSV = (
    "Event Date\tEvent\tApp Name\tApp Apple ID\tQuantity\n"
    "2024-01-10\tStart Introductory Offer\tExample\t123\t3\n"
    "2024-01-10\tCancel\tExample\t123\t1\n"
)


def report(text: str) -> bytes:
    return gzip.compress(text.encode("utf-8"))


def default_reports():
    return {
        ("SUBSCRIPTION", DAY.isoformat()): report(SUMMARY_TSV),
        ("SUBSCRIBER", DAY.isoformat()): report(SUBSCRIBER_HEADER + "\n" + "\n".join(SUBSCRIBER_ROWS) + "\n"),
        ("SUBSCRIPTION_EVENT", DAY.isoformat()): report(EVENTS_TSV),
    }


def make_adapter(reports=None):
    reports = default_reports() if reports is None else reports
    client = MagicMock()
    client.close = AsyncMock()

    async def get_bytes(endpoint, params=None, headers=None):
        filters = dict(params)
        key = (filters["filter[reportType]"], filters["filter[reportDate]"])
        data = reports.get(key)
        if isinstance(data, Exception):
            raise data
        if data is None:
            raise ApiError("API returned 404", status_code=404)
        return data

    client.get_bytes = AsyncMock(side_effect=get_bytes)
    adapter = AppStoreAdapter(client=client)
    adapter._token = MagicMock(return_value="signed.jwt")
    return adapter, client


def generate_pem() -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


class TestHelpers:
    """Tests for module-level helpers."""

    @pytest.mark.parametrize("text,expected", [
        ("1 Month", (BillingInterval.MONTH, 1)),
        ("7 Days", (BillingInterval.DAY, 7)),
        ("1 Year", (BillingInterval.YEAR, 1)),
        ("2 Months", (BillingInterval.MONTH, 2)),
    ])
    def test_parse_duration(self, text, expected):
        """Standard durations map to interval and count."""
        assert parse_duration(text) == expected

    def test_parse_duration_unknown(self):
        """Unknown duration text yields None."""
        assert parse_duration("") is None

    @pytest.mark.parametrize("event,expected", [
        ("Refund", "refund"),
        ("Cancel", "cancel"),
        ("Renewal from Billing Retry", "billing_retry"),
        ("Renew", "renewal"),
        ("Crossgrade", "plan_change"),
        ("Something Else", "other"),
    ])
    def test_event_keywords(self, event, expected):
        """Event report names are bucketed by keyword."""
        assert classify_event_keyword(event) == expected

    def test_normalize_private_key(self):
        """A key pasted as one line is rebuilt into PEM."""
        pem = generate_pem()
        body = "".join(line for line in pem.splitlines() if "-----" not in line)
        assert normalize_private_key(body) == pem
        assert normalize_private_key(pem.replace("\n", "\\n")) == pem

    def test_gunzip_report(self):
        """Gzip bodies are inflated; plain bodies pass through."""
        assert gunzip_report(report("a\tb\n")) == b"a\tb\n"
        assert gunzip_report(b"a\tb\n") == b"a\tb\n"

    @pytest.mark.parametrize("data", [
        report(SUMMARY_TSV)[:20],
        b"\x1f\x8b" + b"not really gzip",
    ])
    def test_gunzip_report_corrupt(self, data):
        """Truncated or damaged archives raise ParseError."""
        with pytest.raises(ParseError):
            gunzip_report(data)


class TestToken:
    """Tests for the ES256 API token."""

    def test_token_claims(self):
        """The token is signed for the App Store Connect audience."""
        pem = generate_pem()
        adapter = AppStoreAdapter(client=MagicMock())
        credentials = dict(CREDENTIALS, private_key=pem)

        token = adapter._token(credentials)

        public_key = serialization.load_pem_private_key(pem.encode(), None).public_key()
        claims = jwt.decode(token, public_key, algorithms=["ES256"], audience=JWT_AUDIENCE)
        assert claims["iss"] == "issuer-1"
        assert jwt.get_unverified_header(token)["kid"] == "KEY123"

    def test_token_cached(self):
        """The same token is reused until close to expiry."""
        adapter = AppStoreAdapter(client=MagicMock())
        credentials = dict(CREDENTIALS, private_key=generate_pem())
        assert adapter._token(credentials) == adapter._token(credentials)

    def test_invalid_key(self):
        """An unusable key is a credential error."""
        adapter = AppStoreAdapter(client=MagicMock())
        with pytest.raises(CredentialError):
            adapter._token(dict(CREDENTIALS, private_key="not-a-key"))

    def test_missing_fields(self):
        """Missing fields are named in the error."""
        adapter = AppStoreAdapter(client=MagicMock())
        with pytest.raises(CredentialError) as exc_info:
            adapter._token({"issuer_id": "issuer-1"})
        assert "vendor_number" in str(exc_info.value)


class TestAppStoreFetch:
    """Tests for AppStoreAdapter.fetch."""

    @pytest.mark.asyncio
    async def test_subscriber_report(self):
        """Subscriber rows become subscriptions and revenue events."""
        adapter, _ = make_adapter()

        result = await adapter.fetch(CREDENTIALS, WINDOW)

        assert not result.failed
        subs = {s.external_id: s for s in result.subscriptions}
        assert set(subs) == {"111:9001", "222:9001", "333:9001", "444:9001"}
        assert subs["111:9001"].interval is BillingInterval.MONTH
        assert subs["111:9001"].amount == 9.99
        assert subs["222:9001"].is_trial is True
        assert subs["222:9001"].trial_end == datetime(2024, 2, 9, tzinfo=UTC)
        assert subs["333:9001"].start_date == datetime(2023, 11, 10, tzinfo=UTC)
        assert subs["444:9001"].status is SubscriptionStatus.CANCELED

        events = {e.subscription_external_id: e for e in result.revenue_events}
        assert set(events) == {"111:9001", "333:9001", "444:9001"}
        assert events["111:9001"].event_type is RevenueEventType.FIRST_PAYMENT
        assert events["111:9001"].amount_proceeds == 6.99
        assert events["111:9001"].external_id == "2024-01-10:111:9001:0"
        assert events["333:9001"].event_type is RevenueEventType.RENEWAL
        assert events["444:9001"].event_type is RevenueEventType.REFUND
        assert events["444:9001"].amount == 9.99

    @pytest.mark.asyncio
    async def test_debug_counters(self):
        """Summary and event reports surface as counters."""
        adapter, _ = make_adapter()

        result = await adapter.fetch(CREDENTIALS, WINDOW)

        counters = result.debug_counters
        assert counters["reported_active_subscribers"] == 7
        assert counters["reported_trial_subscribers"] == 2
        assert counters["reported_grace"] == 1
        assert counters["reports_downloaded"] == 3
        assert counters["subscriber_rows"] == 4
        assert counters["trial_rows"] == 1
        assert counters["parse_errors"] == 1
        assert counters["event_type_counts"]["start"] == 3
        assert counters["event_type_counts"]["cancel"] == 1

    @pytest.mark.asyncio
    async def test_summary_archived(self):
        """The summary report is handed to the report sink."""
        adapter, _ = make_adapter()
        sink = AsyncMock()
        context = FetchContext(report_sink=sink)

        await adapter.fetch(CREDENTIALS, WINDOW, context)

        sink.assert_awaited_once()
        day, report_type, row_count, summary = sink.call_args.args
        assert day == DAY
        assert report_type == "SUBSCRIPTION"
        assert row_count == 1
        assert summary["reported_active_subscribers"] == 7

    @pytest.mark.asyncio
    async def test_missing_reports_are_not_errors(self):
        """A day without reports is counted, not failed."""
        adapter, _ = make_adapter(reports={})

        result = await adapter.fetch(CREDENTIALS, WINDOW)

        assert not result.failed
        assert result.record_count == 0
        assert result.debug_counters["reports_missing"] == 3

    @pytest.mark.asyncio
    async def test_server_error_fails_platform(self):
        """A non-404 API error fails the result."""
        reports = default_reports()
        reports[("SUBSCRIBER", DAY.isoformat())] = ApiError("API returned 500", status_code=500)
        adapter, _ = make_adapter(reports)

        result = await adapter.fetch(CREDENTIALS, WINDOW)

        assert result.failed
        assert "500" in result.error

    @pytest.mark.asyncio
    async def test_cancellation_between_days(self):
        """Cancellation is checked before each day after the first."""
        adapter, client = make_adapter()
        window = FetchWindow(datetime(2024, 1, 10, tzinfo=UTC), datetime(2024, 1, 13, tzinfo=UTC))
        context = FetchContext(is_cancelled=AsyncMock(return_value=True))

        result = await adapter.fetch(CREDENTIALS, window, context)

        assert result.cancelled
        assert client.get_bytes.call_count == 3

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        """A 401 surfaces as a failed result carrying the credential error."""
        reports = default_reports()
        reports[("SUBSCRIPTION", DAY.isoformat())] = CredentialError(
            "Credentials rejected (401)", platform="appstore"
        )
        adapter, _ = make_adapter(reports)

        result = await adapter.fetch(CREDENTIALS, WINDOW)

        assert result.failed
        assert "401" in result.error

    @pytest.mark.asyncio
    async def test_corrupt_report_skipped(self):
        """A truncated archive is counted and skipped; the other reports still apply."""
        reports = default_reports()
        reports[("SUBSCRIBER", DAY.isoformat())] = reports[("SUBSCRIBER", DAY.isoformat())][:30]
        adapter, _ = make_adapter(reports)

        result = await adapter.fetch(CREDENTIALS, WINDOW)

        assert not result.failed
        assert result.subscriptions == []
        counters = result.debug_counters
        assert counters["corrupt_reports"] == 1
        assert counters["reports_downloaded"] == 2
        assert counters["reported_active_subscribers"] == 7
