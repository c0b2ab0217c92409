"""
Square API Client

Thin adapters over the Square REST API:
- BookingsClient: list/retrieve bookings (reconciliation), create (phone bookings)
- CustomerClient: customer lookup with its own small retry (enrichment),
  find-or-create by phone (phone bookings)
- CatalogClient: service-variation name resolution behind a TTL cache

Shared plumbing lives in SquareClient:
- Bearer auth + Square-Version header
- Structured error mapping
- Exponential backoff on 429/5xx/transport errors

Square API Documentation: https://developer.squareup.com/reference/square
"""

import time
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..config import settings
from ..schemas.square import SquareBooking
from ..utils.ttl_cache import TTLCache
from .errors import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "Detail Service"
UNKNOWN_CUSTOMER = "Unknown Customer"
GENERIC_VARIATION_NAMES = {"regular"}


@dataclass
class SquareResponse:
    """Wrapper for Square API responses with structured error info"""
    success: bool
    status_code: int
    data: Optional[Dict] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    should_retry: bool = False


@dataclass
class SquareError:
    """Structured error from Square API"""
    code: str
    message: str
    status_code: int
    retryable: bool = False


# Error mapping for Square responses
ERROR_MAP = {
    400: SquareError("bad_request", "Invalid request", 400, False),
    401: SquareError("unauthorized", "Invalid or missing access token", 401, False),
    403: SquareError("forbidden", "Access token lacks permission", 403, False),
    404: SquareError("not_found", "Resource not found", 404, False),
    429: SquareError("rate_limited", "Too many requests", 429, True),
    500: SquareError("server_error", "Square server error", 500, True),
    502: SquareError("bad_gateway", "Square gateway error", 502, True),
    503: SquareError("service_unavailable", "Square service unavailable", 503, True),
}


@dataclass
class BookingsPage:
    bookings: List[Dict[str, Any]] = field(default_factory=list)
    cursor: Optional[str] = None


class SquareClient:
    """
    Base client for Square API operations.

    Pass http_client to share a connection pool (or an httpx.MockTransport
    in tests); otherwise a short-lived client is opened per request.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str,
        api_version: str = "2024-01-18",
        timeout: float = 20,
        max_retries: int = 3,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        request_id: Optional[str] = None
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.max_retries = max_retries
        self.http_client = http_client
        self.sleep = sleep
        self.request_id = request_id or "no-request-id"

        self.base_delay = 0.5
        self.max_delay = 8.0

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token)

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Square-Version": self.api_version,
            "User-Agent": "DetailOps-Backend/1.0",
        }

    def _map_error(self, status_code: int, response_data: Optional[Dict]) -> SquareError:
        """Map HTTP status code to structured error"""
        detail = None
        if response_data:
            errors = response_data.get("errors") or []
            if errors and isinstance(errors[0], dict):
                detail = errors[0].get("detail") or errors[0].get("code")

        if status_code in ERROR_MAP:
            error = ERROR_MAP[status_code]
            if detail:
                return SquareError(error.code, detail, status_code, error.retryable)
            return error

        if status_code >= 500:
            return SquareError("server_error", detail or f"Server error: {status_code}", status_code, True)

        return SquareError("unknown", detail or f"Unknown error: {status_code}", status_code, False)

    def _send(self, method: str, url: str, params: Optional[Dict], json: Optional[Dict] = None) -> httpx.Response:
        if self.http_client is not None:
            return self.http_client.request(method, url, headers=self._get_headers(), params=params, json=json)
        with httpx.Client(timeout=self.timeout) as client:
            return client.request(method, url, headers=self._get_headers(), params=params, json=json)

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        json: Optional[Dict] = None,
        max_attempts: Optional[int] = None
    ) -> SquareResponse:
        """
        Make an HTTP request to the Square API with retry logic.
        Client errors (4xx other than 429) are returned without retrying.
        Writes must carry an idempotency_key in the body so retries are safe.
        """
        url = f"{self.base_url}{endpoint}"
        attempts = max_attempts or self.max_retries
        last_error = None
        last_status = 0

        for attempt in range(attempts):
            try:
                response = self._send(method, url, params, json)
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.warning(f"[{self.request_id}] Square request failed: {e}")
                if attempt < attempts - 1:
                    self.sleep(min(self.base_delay * (2 ** attempt), self.max_delay))
                continue

            status_code = response.status_code
            last_status = status_code

            try:
                data = response.json()
            except ValueError:
                data = None

            if 200 <= status_code < 300:
                return SquareResponse(success=True, status_code=status_code, data=data)

            error = self._map_error(status_code, data)

            if error.retryable:
                last_error = error.message
                logger.warning(
                    f"[{self.request_id}] Square {method} {endpoint} -> {status_code}, "
                    f"attempt {attempt + 1}/{attempts}"
                )
                if attempt < attempts - 1:
                    self.sleep(min(self.base_delay * (2 ** attempt), self.max_delay))
                continue

            return SquareResponse(
                success=False,
                status_code=status_code,
                data=data,
                error=error.message,
                error_code=error.code,
                should_retry=False
            )

        return SquareResponse(
            success=False,
            status_code=last_status,
            error=f"All retries failed: {last_error}",
            error_code="retries_exhausted",
            should_retry=True
        )


class BookingsClient(SquareClient):
    """Square Bookings API"""

    def list_bookings(
        self,
        start_at_min: Optional[str] = None,
        start_at_max: Optional[str] = None,
        location_id: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: int = 100
    ) -> BookingsPage:
        """
        One page of raw booking dicts. Raises UpstreamError on failure.
        Bookings are returned unvalidated; callers parse them one at a time.
        """
        if not self.is_configured:
            raise UpstreamError("Square access token not configured")

        params = {"limit": str(limit)}
        if start_at_min:
            params["start_at_min"] = start_at_min
        if start_at_max:
            params["start_at_max"] = start_at_max
        if location_id:
            params["location_id"] = location_id
        if cursor:
            params["cursor"] = cursor

        resp = self._make_request("GET", "/v2/bookings", params=params)
        if not resp.success:
            logger.error(f"[{self.request_id}] List bookings failed: {resp.status_code} {resp.error}")
            raise UpstreamError(
                f"Failed to list bookings: {resp.error}",
                status=resp.status_code,
                retryable=resp.should_retry
            )

        data = resp.data or {}
        return BookingsPage(bookings=list(data.get("bookings") or []), cursor=data.get("cursor") or None)

    def list_all_bookings(
        self,
        start_at_min: Optional[str] = None,
        start_at_max: Optional[str] = None,
        location_id: Optional[str] = None,
        limit: int = 100,
        max_pages: int = 10
    ) -> List[Dict[str, Any]]:
        """Follow cursors up to max_pages pages"""
        all_bookings: List[Dict[str, Any]] = []
        cursor = None
        pages = 0

        while pages < max_pages:
            pages += 1
            page = self.list_bookings(
                start_at_min=start_at_min,
                start_at_max=start_at_max,
                location_id=location_id,
                cursor=cursor,
                limit=limit
            )
            all_bookings.extend(page.bookings)
            if not page.cursor:
                break
            cursor = page.cursor
        else:
            if cursor:
                logger.warning(
                    f"[{self.request_id}] Stopped listing bookings at page cap ({max_pages}), "
                    f"{len(all_bookings)} bookings fetched"
                )

        logger.info(f"[{self.request_id}] Fetched {len(all_bookings)} bookings in {pages} page(s)")
        return all_bookings

    def retrieve_booking(self, booking_id: str) -> Optional[SquareBooking]:
        if not self.is_configured:
            raise UpstreamError("Square access token not configured")

        resp = self._make_request("GET", f"/v2/bookings/{booking_id}")
        if resp.status_code == 404:
            return None
        if not resp.success:
            raise UpstreamError(
                f"Failed to retrieve booking {booking_id}: {resp.error}",
                status=resp.status_code,
                retryable=resp.should_retry
            )
        booking = (resp.data or {}).get("booking")
        return SquareBooking.model_validate(booking) if booking else None

    def create_booking(
        self,
        customer_id: str,
        location_id: str,
        start_at: str,
        service_variation_id: str,
        service_variation_version: int,
        duration_minutes: int,
        team_member_id: Optional[str] = None,
        customer_note: Optional[str] = None,
        seller_note: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a booking and return the raw Square booking.
        Replaying the same idempotency_key returns the original booking.
        """
        if not self.is_configured:
            raise UpstreamError("Square access token not configured")

        segment = {
            "service_variation_id": service_variation_id,
            "service_variation_version": service_variation_version,
            "duration_minutes": duration_minutes,
        }
        if team_member_id:
            segment["team_member_id"] = team_member_id

        booking: Dict[str, Any] = {
            "start_at": start_at,
            "location_id": location_id,
            "customer_id": customer_id,
            "appointment_segments": [segment],
        }
        if customer_note:
            booking["customer_note"] = customer_note
        if seller_note:
            booking["seller_note"] = seller_note

        resp = self._make_request(
            "POST",
            "/v2/bookings",
            json={"idempotency_key": idempotency_key or str(uuid.uuid4()), "booking": booking}
        )
        if not resp.success:
            logger.error(f"[{self.request_id}] Create booking failed: {resp.status_code} {resp.error}")
            raise UpstreamError(
                f"Failed to create booking: {resp.error}",
                status=resp.status_code,
                retryable=resp.should_retry
            )

        created = (resp.data or {}).get("booking")
        if not created or not created.get("id"):
            raise UpstreamError("Square returned no booking", status=resp.status_code)
        logger.info(f"[{self.request_id}] Created Square booking {created['id']} for customer {customer_id}")
        return created



def format_customer_name(customer: Optional[Dict[str, Any]]) -> str:
    """Best display name: full name, given, family, company, nickname"""
    if not customer:
        return UNKNOWN_CUSTOMER

    given = (customer.get("given_name") or "").strip()
    family = (customer.get("family_name") or "").strip()
    if given and family:
        return f"{given} {family}"
    if given:
        return given
    if family:
        return family
    if customer.get("company_name"):
        return customer["company_name"]
    if customer.get("nickname"):
        return customer["nickname"]
    return UNKNOWN_CUSTOMER


def to_customer_cached(customer: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Square customer -> CustomerCache dict stored on the job"""
    now = now or datetime.now(timezone.utc)
    return {
        "id": customer.get("id"),
        "name": format_customer_name(customer),
        "email": customer.get("email_address"),
        "phone": customer.get("phone_number"),
        "cached_at": now.isoformat(),
    }


class CustomerClient(SquareClient):
    """Square Customers API"""

    def fetch_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """
        Raw Square customer, or None if unknown or no token configured.
        Raises UpstreamError on other failures.
        """
        if not self.is_configured:
            logger.warning("No Square access token configured, skipping customer fetch")
            return None

        resp = self._make_request("GET", f"/v2/customers/{customer_id}", max_attempts=1)
        if resp.status_code == 404:
            logger.warning(f"[{self.request_id}] Customer {customer_id} not found")
            return None
        if not resp.success:
            raise UpstreamError(
                f"Customer fetch failed: {resp.error}",
                status=resp.status_code,
                retryable=resp.should_retry or resp.status_code in (0, 429) or resp.status_code >= 500
            )
        return (resp.data or {}).get("customer")

    def fetch_customer_with_retry(
        self,
        customer_id: str,
        retries: int = 1,
        now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """
        CustomerCache dict or None. Best-effort: failures are logged,
        retried `retries` times with backoff, then given up on.
        """
        for attempt in range(retries + 1):
            try:
                customer = self.fetch_customer(customer_id)
            except UpstreamError as e:
                if e.retryable and attempt < retries:
                    delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                    logger.warning(
                        f"[{self.request_id}] Customer fetch failed ({e.message}), retrying in {delay}s"
                    )
                    self.sleep(delay)
                    continue
                logger.error(f"[{self.request_id}] Giving up on customer {customer_id}: {e.message}")
                return None

            if not customer:
                return None
            return to_customer_cached(customer, now)

        return None

    def search_customers_by_phone(self, phone: str) -> List[Dict[str, Any]]:
        """Customers whose phone number matches exactly"""
        resp = self._make_request(
            "POST",
            "/v2/customers/search",
            json={"query": {"filter": {"phone_number": {"exact": phone}}}, "limit": 10}
        )
        if not resp.success:
            raise UpstreamError(
                f"Customer search failed: {resp.error}",
                status=resp.status_code,
                retryable=resp.should_retry
            )
        return (resp.data or {}).get("customers") or []

    def create_customer(
        self,
        name: str,
        phone: str,
        email: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        given_name, _, family_name = name.strip().partition(" ")
        body = {
            "idempotency_key": idempotency_key or str(uuid.uuid4()),
            "given_name": given_name,
            "phone_number": phone,
        }
        if family_name.strip():
            body["family_name"] = family_name.strip()
        if email:
            body["email_address"] = email

        resp = self._make_request("POST", "/v2/customers", json=body)
        if not resp.success:
            raise UpstreamError(
                f"Customer create failed: {resp.error}",
                status=resp.status_code,
                retryable=resp.should_retry
            )
        customer = (resp.data or {}).get("customer")
        if not customer or not customer.get("id"):
            raise UpstreamError("Square returned no customer", status=resp.status_code)
        return customer

    def find_or_create_customer(
        self,
        name: str,
        phone: str,
        email: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Raw Square customer for a phone caller. Reuses the first customer
        already on file with this phone number, otherwise creates one.
        """
        if not self.is_configured:
            raise UpstreamError("Square access token not configured")

        matches = self.search_customers_by_phone(phone)
        if matches:
            logger.info(f"[{self.request_id}] Reusing Square customer {matches[0].get('id')} for phone booking")
            return matches[0]

        customer = self.create_customer(name, phone, email=email, idempotency_key=idempotency_key)
        logger.info(f"[{self.request_id}] Created Square customer {customer['id']} for phone booking")
        return customer



class CatalogClient(SquareClient):
    """Square Catalog API with an injected name cache"""

    def __init__(self, *args, cache: Optional[TTLCache] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.cache = cache if cache is not None else TTLCache(capacity=512, ttl_seconds=3600)

    def fetch_catalog_object(self, object_id: str) -> Optional[Dict[str, Any]]:
        """Catalog object (item or variation), or None if unavailable"""
        if not self.is_configured:
            logger.warning("No Square access token configured, skipping catalog fetch")
            return None

        resp = self._make_request(
            "GET",
            f"/v2/catalog/object/{object_id}",
            params={"include_related_objects": "true"}
        )
        if not resp.success:
            if resp.status_code == 404:
                logger.warning(f"[{self.request_id}] Catalog object {object_id} not found")
            else:
                logger.error(
                    f"[{self.request_id}] Catalog fetch failed for {object_id}: "
                    f"{resp.status_code} {resp.error}"
                )
            return None
        return (resp.data or {}).get("object")

    def fetch_service_name(self, variation_id: str) -> str:
        """
        "Item - Variation" name for a service variation.
        Falls back to the variation id when the catalog can't be read.
        """
        cached = self.cache.get(variation_id)
        if cached:
            return cached

        catalog_object = self.fetch_catalog_object(variation_id)
        if not catalog_object:
            return variation_id

        service_name = variation_id
        object_type = catalog_object.get("type")

        if object_type == "ITEM_VARIATION":
            variation_data = catalog_object.get("item_variation_data") or {}
            variation_name = variation_data.get("name")
            item_id = variation_data.get("item_id")
            item_name = None

            if item_id:
                item_object = self.fetch_catalog_object(item_id)
                if item_object:
                    item_name = (item_object.get("item_data") or {}).get("name")

            if item_name:
                if (
                    variation_name
                    and variation_name.lower() not in GENERIC_VARIATION_NAMES
                    and variation_name != item_name
                ):
                    service_name = f"{item_name} - {variation_name}"
                else:
                    service_name = item_name
            else:
                service_name = variation_name or variation_id

        elif object_type == "ITEM":
            service_name = (catalog_object.get("item_data") or {}).get("name") or variation_id

        self.cache.set(variation_id, service_name)
        logger.info(f"[{self.request_id}] Service name resolved: {variation_id} -> {service_name}")
        return service_name


@dataclass
class SquareClients:
    bookings: BookingsClient
    customers: CustomerClient
    catalog: CatalogClient


def build_square_clients(
    http_client: Optional[httpx.Client] = None,
    catalog_cache: Optional[TTLCache] = None
) -> SquareClients:
    """Clients configured from settings, sharing one catalog cache"""
    common = dict(
        access_token=settings.square_access_token,
        base_url=settings.square_base_url,
        api_version=settings.square_api_version,
        timeout=settings.square_timeout_seconds,
        http_client=http_client,
    )
    cache = catalog_cache or TTLCache(
        capacity=settings.catalog_cache_capacity,
        ttl_seconds=settings.catalog_cache_ttl_seconds
    )
    return SquareClients(
        bookings=BookingsClient(**common),
        customers=CustomerClient(**common),
        catalog=CatalogClient(**common, cache=cache),
    )


@lru_cache()
def get_square_clients() -> SquareClients:
    """Process-wide clients (FastAPI dependency, override in tests)"""
    return build_square_clients()
