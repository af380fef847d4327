"""
Billing-platform and order-history adapters.

RechargeClient and ShopifyClient wrap the merchant's third-party APIs over
httpx and return normalized dict records. StaticOrderProvider serves an
in-memory history with the same interface for replays and synthetic fleets.
"""
import asyncio
import copy
import logging
import re
from typing import Callable, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

RECHARGE_API_URL = 'https://api.rechargeapps.com'
RECHARGE_API_VERSION = '2021-11'
SHOPIFY_API_VERSION = '2024-01'
PAGE_LIMIT = 250
MAX_CATALOG_PAGES = 100

_LINK_NEXT = re.compile(r'<([^>]+)>;\s*rel="next"')


class FetchError(RuntimeError):
    """An adapter call failed permanently or exhausted its retry budget."""


def _retry_after_seconds(response: httpx.Response) -> float:
    value = response.headers.get('Retry-After')
    try:
        return min(float(value), 60.0) if value else 0.0
    except ValueError:
        return 0.0


async def _retry_on_transient_error(
    func: Callable,
    *args,
    max_retries: int = 3,
    retry_delay_seconds: float = 1.0,
    on_retry: Optional[Callable[[int, str], None]] = None,
    **kwargs,
):
    """
    Execute an async call with exponential backoff on transient errors.

    Retries connection/timeout/protocol errors, 5xx responses and 429 (waiting
    at least the Retry-After header). Other 4xx responses raise immediately.

    Raises:
        The last exception once all retries are exhausted.
    """
    last_error = None

    for attempt in range(max_retries + 1):
        delay = retry_delay_seconds * (2 ** attempt)
        try:
            return await func(*args, **kwargs)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if 400 <= status < 500 and status != 429:
                raise
            last_error = e
            error_msg = f"HTTP {status}"
            if status == 429:
                delay = max(delay, _retry_after_seconds(e.response))
        except (httpx.ConnectError, httpx.ReadTimeout, httpx.WriteTimeout,
                httpx.ConnectTimeout, httpx.RemoteProtocolError) as e:
            last_error = e
            error_msg = str(e) or type(e).__name__

        if attempt < max_retries:
            if on_retry:
                on_retry(attempt + 1, error_msg)
            logger.warning(
                f"Transient error (attempt {attempt + 1}/{max_retries + 1}): {error_msg}. "
                f"Waiting {delay:.1f}s before retry..."
            )
            await asyncio.sleep(delay)

    raise last_error


# =============================================================================
# NORMALIZERS
# =============================================================================
def normalize_subscription(raw: Dict) -> Dict:
    unit = raw.get('order_interval_unit')
    return {
        'subscription_id': str(raw.get('id')),
        'customer_id': str(raw.get('customer_id')),
        'created_at': raw.get('created_at'),
        'status': str(raw.get('status') or '').lower(),
        'cancelled_at': raw.get('cancelled_at'),
        'cancellation_reason': raw.get('cancellation_reason'),
        'charge_interval': {'unit': unit, 'frequency': raw.get('charge_interval_frequency')},
        'ship_interval': {'unit': unit, 'frequency': raw.get('order_interval_frequency')},
        'properties': [{'name': p.get('name'), 'value': p.get('value')} for p in raw.get('properties') or []],
        'next_charge_at': raw.get('next_charge_scheduled_at'),
        'sku': raw.get('sku'),
        'product_title': raw.get('product_title'),
    }


def normalize_customer(raw: Dict) -> Dict:
    external = raw.get('external_customer_id') or {}
    return {
        'customer_id': str(raw.get('id')),
        'email': (raw.get('email') or '').strip().lower(),
        'first_name': raw.get('first_name') or '',
        'last_name': raw.get('last_name') or '',
        'order_customer_id': str(external['ecommerce']) if external.get('ecommerce') else None,
    }


def normalize_charge(raw: Dict) -> Dict:
    items = raw.get('line_items') or []
    first = items[0] if items else {}
    return {
        'charge_id': str(raw.get('id')),
        'status': str(raw.get('status') or '').lower(),
        'processed_at': raw.get('processed_at'),
        'scheduled_at': raw.get('scheduled_at'),
        'sku': first.get('sku') or None,
        'product_name': first.get('title') or '',
        'subscription_ids': [str(li['subscription_id']) for li in items if li.get('subscription_id')],
    }


def normalize_order(raw: Dict) -> Dict:
    customer = raw.get('customer') or {}
    return {
        'order_id': str(raw.get('id')),
        'order_number': raw.get('order_number'),
        'created_at': raw.get('created_at'),
        'financial_status': raw.get('financial_status'),
        'email': (raw.get('email') or customer.get('email') or '').lower(),
        'customer_id': str(customer['id']) if customer.get('id') else None,
        'line_items': [{
            'sku': item.get('sku') or None,
            'product_name': item.get('title') or item.get('name') or '',
            'variant_title': item.get('variant_title') or None,
            'quantity': int(item.get('quantity') or 1),
        } for item in raw.get('line_items') or []],
    }


# =============================================================================
# HTTP CLIENTS
# =============================================================================
class _ApiClient:
    name = 'api'

    def __init__(self, headers: Dict[str, str], client: Optional[httpx.AsyncClient] = None,
                 max_retries: int = 3, retry_delay_seconds: float = 1.0, page_delay: float = 0.0):
        self.headers = headers
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.page_delay = page_delay
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def _get(self, url: str, params: Optional[Dict] = None) -> httpx.Response:
        async def once():
            response = await self._client.get(url, params=params, headers=self.headers)
            response.raise_for_status()
            return response

        try:
            return await _retry_on_transient_error(
                once, max_retries=self.max_retries, retry_delay_seconds=self.retry_delay_seconds)
        except httpx.HTTPStatusError as e:
            raise FetchError(f"{self.name} API error: {e.response.status_code} - {e.response.text[:200]}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"{self.name} request failed: {e}") from e

    async def _page_pause(self):
        if self.page_delay:
            await asyncio.sleep(self.page_delay)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()


class RechargeClient(_ApiClient):
    """Billing platform: customers, subscriptions and charge history."""

    name = 'Recharge'

    def __init__(self, api_key: str, base_url: str = RECHARGE_API_URL, **kwargs):
        kwargs.setdefault('page_delay', 0.2)
        super().__init__({
            'X-Recharge-Access-Token': api_key,
            'X-Recharge-Version': RECHARGE_API_VERSION,
            'Content-Type': 'application/json',
        }, **kwargs)
        self.base_url = base_url.rstrip('/')

    async def _page(self, resource: str, params: Dict, cursor: Optional[str]) -> Tuple[List[Dict], Optional[str]]:
        query = {'cursor': cursor, 'limit': PAGE_LIMIT} if cursor else {**params, 'limit': PAGE_LIMIT}
        response = await self._get(f"{self.base_url}/{resource}", params=query)
        data = response.json()
        return data.get(resource) or [], data.get('next_cursor') or None

    async def list_customers(self, cursor: Optional[str] = None) -> Tuple[List[Dict], Optional[str]]:
        rows, next_cursor = await self._page('customers', {}, cursor)
        return [normalize_customer(r) for r in rows], next_cursor

    async def list_subscriptions(self, status: Optional[str] = None, cursor: Optional[str] = None,
                                 customer_id: Optional[str] = None) -> Tuple[List[Dict], Optional[str]]:
        params = {}
        if status:
            params['status'] = status
        if customer_id:
            params['customer_id'] = customer_id
        rows, next_cursor = await self._page('subscriptions', params, cursor)
        return [normalize_subscription(r) for r in rows], next_cursor

    async def iter_customers(self):
        cursor = None
        while True:
            customers, cursor = await self.list_customers(cursor)
            for c in customers:
                yield c
            if not cursor:
                break
            await self._page_pause()

    async def iter_subscriptions(self, status: Optional[str] = None):
        cursor = None
        while True:
            subs, cursor = await self.list_subscriptions(status, cursor)
            for s in subs:
                yield s
            if not cursor:
                break
            await self._page_pause()

    async def list_charges(self, customer_id: str, subscription_id: Optional[str] = None) -> List[Dict]:
        """Successful charges for a customer in schedule order, optionally limited to one subscription."""
        found = []
        cursor = None
        params = {'customer_id': customer_id, 'status': 'success', 'sort_by': 'scheduled_at-asc'}
        while True:
            charges, cursor = await self._page('charges', params, cursor)
            for charge in charges:
                if str(charge.get('status', '')).upper() != 'SUCCESS':
                    continue
                if subscription_id and not any(str(li.get('subscription_id')) == str(subscription_id)
                                               for li in charge.get('line_items') or []):
                    continue
                found.append(normalize_charge(charge))
            if not cursor:
                break
            await self._page_pause()
        return found

    async def count_successful_charges(self, customer_id: str, subscription_id: Optional[str] = None) -> int:
        return len(await self.list_charges(customer_id, subscription_id))


class ShopifyClient(_ApiClient):
    """Order history: per-customer orders and catalog-wide order pages."""

    name = 'Shopify'

    def __init__(self, shop: str, access_token: str, **kwargs):
        kwargs.setdefault('page_delay', 0.5)
        super().__init__({
            'X-Shopify-Access-Token': access_token,
            'Content-Type': 'application/json',
        }, **kwargs)
        self.base_url = f"https://{shop}/admin/api/{SHOPIFY_API_VERSION}"

    @staticmethod
    def _next_link(response: httpx.Response) -> Optional[str]:
        match = _LINK_NEXT.search(response.headers.get('Link', ''))
        return match.group(1) if match else None

    async def _pages(self, params: Dict, max_pages: Optional[int] = None):
        url = f"{self.base_url}/orders.json"
        query = params
        pages = 0
        while url and (max_pages is None or pages < max_pages):
            response = await self._get(url, params=query)
            yield [normalize_order(o) for o in response.json().get('orders', [])]
            pages += 1
            url = self._next_link(response)
            # the next link already carries the page_info cursor
            query = None
            if url:
                await self._page_pause()

    async def list_orders(self, customer_id: Optional[str] = None, date_range: Optional[Tuple] = None,
                          email: Optional[str] = None) -> List[Dict]:
        params = {'status': 'any', 'limit': PAGE_LIMIT,
                  'fields': 'id,order_number,created_at,financial_status,email,customer,line_items'}
        if customer_id:
            params['customer_id'] = customer_id
        elif email:
            params['email'] = email
        else:
            raise ValueError('Must provide either customer_id or email')
        if date_range:
            start, end = date_range
            if start:
                params['created_at_min'] = start
            if end:
                params['created_at_max'] = end
        orders = []
        async for page in self._pages(params):
            orders.extend(page)
        return orders

    async def iter_order_pages(self, since: Optional[str] = None):
        params = {'status': 'any', 'limit': PAGE_LIMIT, 'fields': 'id,order_number,created_at,line_items'}
        if since:
            params['created_at_min'] = since
        async for page in self._pages(params, max_pages=MAX_CATALOG_PAGES):
            yield page


class StaticOrderProvider:
    """Order history served from memory, keyed by order-platform customer id."""

    def __init__(self, orders_by_customer: Dict[str, List[Dict]], failing_customers=()):
        self.orders_by_customer = orders_by_customer
        self.failing_customers = set(failing_customers)

    async def list_orders(self, customer_id=None, date_range=None, email=None):
        if customer_id in self.failing_customers:
            raise FetchError(f"Order history unavailable for customer {customer_id}")
        orders = self.orders_by_customer.get(customer_id)
        if orders is None and email:
            orders = [o for rows in self.orders_by_customer.values() for o in rows
                      if (o.get('email') or '').lower() == email.lower()]
        return copy.deepcopy(orders or [])

    async def iter_order_pages(self, since=None):
        for customer_id in sorted(self.orders_by_customer):
            yield copy.deepcopy(self.orders_by_customer[customer_id])

    async def aclose(self):
        pass
