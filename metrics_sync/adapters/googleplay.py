"""
Cloud-export adapter (Google Play financial reports in a GCS bucket).

Monthly zip files are read for every month overlapping the window:
- sales/salesreport_YYYYMM.zip: one row per charge or refund
- earnings/earnings_YYYYMM_*.zip: charge, fee and tax lines per order (proceeds)

Reports are restated late, so incremental syncs re-read a lookback period.
"""
import asyncio
import io
import json
import re
import zipfile
import zlib
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote

import google.auth.exceptions
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from pydantic import ValidationError

from metrics_sync.adapters.base import (
    FetchContext, FetchResult, FetchWindow, PlatformAdapter, interval_from_name,
)
from metrics_sync.adapters.csv_decoding import (
    decode_report, find_column, iter_rows, parse_date, parse_number,
)
from metrics_sync.adapters.http import PlatformHttpClient
from metrics_sync.adapters.records import GooglePlayEarningRow, GooglePlaySaleRow
from metrics_sync.config import config
from metrics_sync.exceptions import ApiError, CredentialError, ParseError
from metrics_sync.models import (
    BillingInterval, Platform, RevenueEvent, RevenueEventType, Subscription,
    SubscriptionStatus, from_unix, utcnow,
)
from metrics_sync.observability import get_logger
from metrics_sync.resilience import RetryConfig, with_retry

logger = get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/devstorage.read_only"]

TOKEN_REFRESH_RETRY = RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0)

_REPORT_OBJECT = re.compile(r"^(sales/salesreport_|earnings/earnings_)\d{6}")


def months_between(start: date, end: date) -> List[str]:
    """YYYYMM strings for every month touched by [start, end]."""
    months = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        months.append(f"{year:04d}{month:02d}")
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return months


def package_variants(package_name: str) -> List[str]:
    """Spellings of a package name used in object names and report rows."""
    lowered = (package_name or "").strip().lower()
    variants = [lowered, lowered.replace(".", "_"), lowered.replace(".", "")]
    return [v for i, v in enumerate(variants) if v and v not in variants[:i]]


def object_matches_package(name: str, variants: List[str]) -> bool:
    """Monthly sales/earnings files are account-wide; other objects must name the package."""
    lowered = name.lower()
    if _REPORT_OBJECT.match(lowered):
        return True
    return any(variant in lowered for variant in variants)


def read_zip_csv(data: bytes) -> Iterator[List[Dict[str, str]]]:
    """
    Yield the rows of each CSV member of a zip archive, one list per member.

    Members are kept apart because each carries its own header line.

    Raises:
        ParseError: If the archive or a member is unreadable
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise ParseError("Invalid zip archive", str(e), Platform.GOOGLEPLAY.value)
    with archive:
        for member in archive.namelist():
            if not member.lower().endswith(".csv"):
                continue
            try:
                content = archive.read(member)
            except (zipfile.BadZipFile, OSError, zlib.error) as e:
                raise ParseError(f"Unreadable archive member {member}", str(e), Platform.GOOGLEPLAY.value)
            yield list(iter_rows(decode_report(content)))


class GooglePlayAdapter(PlatformAdapter):
    """
    Google Play adapter.

    Credentials: {"service_account_json", "bucket_name", "package_name"}
    """

    platform = Platform.GOOGLEPLAY

    def __init__(self, client: Optional[PlatformHttpClient] = None):
        self.client = client or PlatformHttpClient("googleplay", config.http.gcs_base_url)

    async def close(self) -> None:
        await self.client.close()

    # ─── Authentication ──────────────────────────────────────────────────────

    async def _access_token(self, credentials: Dict[str, Any], context: FetchContext) -> str:
        missing = [k for k in ("service_account_json", "bucket_name", "package_name") if not credentials.get(k)]
        if missing:
            raise CredentialError("Missing Google Play credentials", ", ".join(missing), platform=self.platform.value)

        gcs_credentials = context.cache.get("googleplay:credentials")
        if gcs_credentials is None:
            info = credentials["service_account_json"]
            try:
                if isinstance(info, str):
                    info = json.loads(info)
                gcs_credentials = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
            except (ValueError, KeyError) as e:
                raise CredentialError("Service account JSON is invalid", str(e), platform=self.platform.value)
            context.cache["googleplay:credentials"] = gcs_credentials

        if not gcs_credentials.valid:
            await self._refresh_token(gcs_credentials)
        return gcs_credentials.token

    @with_retry(TOKEN_REFRESH_RETRY)
    async def _refresh_token(self, gcs_credentials: service_account.Credentials) -> None:
        try:
            # google-auth refresh is blocking
            await asyncio.to_thread(gcs_credentials.refresh, Request())
        except google.auth.exceptions.RefreshError as e:
            raise CredentialError("Service account was rejected", str(e), platform=self.platform.value)
        except google.auth.exceptions.TransportError as e:
            raise ApiError("Token refresh failed", str(e), platform=self.platform.value)

    # ─── Storage Access ──────────────────────────────────────────────────────

    async def _list_objects(self, bucket: str, prefix: str, headers: Dict[str, str]) -> List[str]:
        names: List[str] = []
        page_token = None
        while True:
            params = {"prefix": prefix}
            if page_token:
                params["pageToken"] = page_token
            page = await self.client.get_json(f"storage/v1/b/{bucket}/o", params=params, headers=headers)
            names.extend(item["name"] for item in page.get("items", []) if item.get("name"))
            page_token = page.get("nextPageToken")
            if not page_token:
                return names

    async def _download(self, bucket: str, name: str, headers: Dict[str, str], context: FetchContext) -> bytes:
        cache_key = f"googleplay:object:{name}"
        if cache_key not in context.cache:
            context.cache[cache_key] = await self.client.get_bytes(
                f"storage/v1/b/{bucket}/o/{quote(name, safe='')}",
                params={"alt": "media"},
                headers=headers,
            )
            context.incr("objects_downloaded")
        return context.cache[cache_key]

    async def _read_reports(
        self,
        bucket: str,
        prefix: str,
        variants: List[str],
        headers: Dict[str, str],
        context: FetchContext,
    ) -> List[List[Dict[str, str]]]:
        """Row tables of every matching report object, one per CSV file."""
        tables: List[List[Dict[str, str]]] = []
        for name in await self._list_objects(bucket, prefix, headers):
            if not name.lower().endswith(".zip") or not object_matches_package(name, variants):
                continue
            data = await self._download(bucket, name, headers, context)
            try:
                tables.extend(list(read_zip_csv(data)))
            except ParseError as e:
                context.incr("parse_errors")
                logger.warning(f"Skipping unreadable report {name}: {e}")
        return tables

    # ─── Row Parsing ─────────────────────────────────────────────────────────

    def _parse_sale(self, row: Dict[str, str], columns: Dict[str, Optional[str]]) -> GooglePlaySaleRow:
        """
        Raises:
            ParseError: If the row is unusable
        """
        def get(name: str) -> Optional[str]:
            column = columns.get(name)
            return row.get(column) if column else None

        timestamp = get("timestamp")
        if timestamp and timestamp.strip().isdigit():
            order_date = from_unix(int(timestamp.strip()))
        else:
            order_date = parse_date(get("order_date"))
        try:
            return GooglePlaySaleRow(
                order_number=get("order_number"),
                order_date=order_date,
                financial_status=get("financial_status") or "",
                product_id=(get("product_id") or "").strip(),
                sku_id=get("sku_id"),
                base_plan_id=get("base_plan_id"),
                product_type=get("product_type"),
                charged_amount=parse_number(get("charged_amount") or "0"),
                item_price=parse_number(get("item_price")) if get("item_price") else None,
                currency=get("currency"),
            )
        except ValidationError as e:
            raise ParseError("Invalid sales row", str(e.error_count()), self.platform.value, record=row)

    def _sales_rows(
        self,
        tables: List[List[Dict[str, str]]],
        variants: List[str],
        context: FetchContext,
    ) -> List[GooglePlaySaleRow]:
        sales = []
        for rows in tables:
            if rows:
                sales.extend(self._sales_table(rows, variants, context))
        return sales

    def _sales_table(
        self,
        rows: List[Dict[str, str]],
        variants: List[str],
        context: FetchContext,
    ) -> List[GooglePlaySaleRow]:
        header = list(rows[0].keys())
        columns = {
            "order_number": find_column(header, r"^order number$"),
            "order_date": find_column(header, r"^order charged date$", r"^order date$"),
            "timestamp": find_column(header, r"^order charged timestamp$"),
            "financial_status": find_column(header, r"^financial status$"),
            "product_id": find_column(header, r"^product id$"),
            "sku_id": find_column(header, r"^sku id$"),
            "base_plan_id": find_column(header, r"^base plan id$"),
            "product_type": find_column(header, r"^product type$"),
            "charged_amount": find_column(header, r"^charged amount$"),
            "item_price": find_column(header, r"^item price$"),
            "currency": find_column(header, r"^currency of sale$", r"^buyer currency$"),
        }
        sales = []
        for raw in rows:
            try:
                sale = self._parse_sale(raw, columns)
            except ParseError as e:
                context.incr("parse_errors")
                logger.debug(f"Skipping Google Play sales row: {e}")
                continue
            if sale.product_id.lower() not in variants:
                context.incr("other_package_rows")
                continue
            sales.append(sale)
        return sales

    def _earnings(
        self,
        tables: List[List[Dict[str, str]]],
        variants: List[str],
        context: FetchContext,
    ) -> Dict[Tuple[str, bool], float]:
        """Merchant-currency totals keyed by (order number, is_refund)."""
        totals: Dict[Tuple[str, bool], float] = defaultdict(float)
        for rows in tables:
            if rows:
                self._earnings_table(rows, variants, context, totals)
        return totals

    def _earnings_table(
        self,
        rows: List[Dict[str, str]],
        variants: List[str],
        context: FetchContext,
        totals: Dict[Tuple[str, bool], float],
    ) -> None:
        header = list(rows[0].keys())
        order_column = find_column(header, r"^description$", r"^order number$")
        type_column = find_column(header, r"^transaction type$")
        product_column = find_column(header, r"^product id$")
        amount_column = find_column(header, r"^amount \(merchant currency\)$", r"merchant currency\)")
        currency_column = find_column(header, r"^merchant currency$")

        for raw in rows:
            try:
                earning = GooglePlayEarningRow(
                    order_number=raw.get(order_column) if order_column else None,
                    transaction_type=raw.get(type_column) if type_column else None,
                    product_id=raw.get(product_column) if product_column else None,
                    amount_merchant=parse_number(raw.get(amount_column) if amount_column else None),
                    merchant_currency=raw.get(currency_column) if currency_column else None,
                )
            except (ValidationError, ParseError):
                context.incr("parse_errors")
                continue
            if earning.product_id and earning.product_id.lower() not in variants:
                continue
            is_refund = "refund" in earning.transaction_type.lower()
            totals[(earning.order_number, is_refund)] += earning.amount_merchant
            context.incr("earnings_rows")

    # ─── Canonical Mapping ───────────────────────────────────────────────────

    def _map(
        self,
        sales: List[GooglePlaySaleRow],
        earnings: Dict[Tuple[str, bool], float],
        window: FetchWindow,
        context: FetchContext,
        result: FetchResult,
    ) -> None:
        now = utcnow()
        subscriptions: Dict[str, Subscription] = {}

        for sale in sorted(sales, key=lambda s: (s.order_date, s.order_number)):
            interval = interval_from_name(sale.base_plan_id, sale.product_id, sale.sku_id) or BillingInterval.MONTH
            period = timedelta(days=interval.approx_days)
            base_id = sale.base_order_id
            amount = abs(sale.charged_amount)

            sub = subscriptions.get(base_id)
            if sub is None:
                sub = Subscription(
                    platform=Platform.GOOGLEPLAY,
                    external_id=base_id,
                    status=SubscriptionStatus.ACTIVE,
                    product_id=sale.sku_id or sale.product_id,
                    start_date=sale.order_date,
                    interval=interval,
                    currency=sale.currency,
                )
                subscriptions[base_id] = sub

            if sale.is_refund:
                sub.status = SubscriptionStatus.CANCELED
                sub.canceled_at = sale.order_date
                if window.contains(sale.order_date):
                    proceeds = earnings.get((sale.order_number, True))
                    result.revenue_events.append(RevenueEvent(
                        platform=Platform.GOOGLEPLAY,
                        external_id=f"{sale.order_number}:refund",
                        subscription_external_id=base_id,
                        event_type=RevenueEventType.REFUND,
                        amount=amount,
                        amount_proceeds=abs(proceeds) if proceeds is not None else None,
                        timestamp=sale.order_date,
                        currency=sale.currency,
                        product_id=sub.product_id,
                    ))
                    context.count("event_type_counts", RevenueEventType.REFUND.value)
                continue

            # A renewal number tells how far back the subscription started
            start = sale.order_date - period * sale.renewal_number
            sub.start_date = min(sub.start_date, start)
            sub.end_date = max(sub.end_date or sale.order_date, sale.order_date + period)
            sub.amount = amount if sale.item_price is None else abs(sale.item_price)

            if window.contains(sale.order_date):
                event_type = RevenueEventType.RENEWAL if sale.is_renewal else RevenueEventType.FIRST_PAYMENT
                proceeds = earnings.get((sale.order_number, False))
                result.revenue_events.append(RevenueEvent(
                    platform=Platform.GOOGLEPLAY,
                    external_id=sale.order_number,
                    subscription_external_id=base_id,
                    event_type=event_type,
                    amount=amount,
                    amount_excluding_tax=abs(sale.item_price) if sale.item_price is not None else None,
                    amount_proceeds=abs(proceeds) if proceeds is not None else None,
                    timestamp=sale.order_date,
                    currency=sale.currency,
                    product_id=sub.product_id,
                ))
                context.count("event_type_counts", event_type.value)

        for sub in subscriptions.values():
            if sub.status is not SubscriptionStatus.CANCELED and sub.end_date and sub.end_date <= now:
                sub.status = SubscriptionStatus.EXPIRED
            if sub.start_date < window.end:
                result.subscriptions.append(sub)

    # ─── Main Flow ───────────────────────────────────────────────────────────

    async def _fetch(
        self,
        credentials: Dict[str, Any],
        window: FetchWindow,
        context: FetchContext,
        result: FetchResult,
    ) -> None:
        token = await self._access_token(credentials, context)
        headers = {"Authorization": f"Bearer {token}"}
        bucket = credentials["bucket_name"]
        variants = package_variants(credentials["package_name"])

        sales_tables: List[List[Dict[str, str]]] = []
        earnings_tables: List[List[Dict[str, str]]] = []
        for index, month in enumerate(months_between(window.start.date(), window.end.date())):
            if index and await context.cancelled():
                result.cancelled = True
                logger.info(f"Google Play fetch cancelled before {month}")
                break
            sales_tables.extend(await self._read_reports(
                bucket, f"sales/salesreport_{month}", variants, headers, context
            ))
            earnings_tables.extend(await self._read_reports(
                bucket, f"earnings/earnings_{month}", variants, headers, context
            ))

        sales = self._sales_rows(sales_tables, variants, context)
        context.incr("sales_rows", len(sales))
        self._map(sales, self._earnings(earnings_tables, variants, context), window, context, result)
