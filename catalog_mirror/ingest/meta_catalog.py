"""Meta Graph API catalog client.

Reads the commerce catalog that the WooCommerce store publishes to Meta.
The client is read-only and never retries; each call is a single request.
"""

import logging
from typing import Any, Optional

import httpx

from catalog_mirror.config import settings
from catalog_mirror.ingest.base import (
    BaseCatalogClient,
    CatalogPage,
    ExternalProduct,
    UpstreamMalformed,
    UpstreamUnavailable,
)
from catalog_mirror import metrics

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = "id,retailer_id,name,description,price,availability,image_url,url"
CATALOG_INFO_FIELDS = "id,name,product_count,vertical"

# Transport errors surfaced as UpstreamUnavailable
TRANSPORT_EXC = (
    httpx.TransportError,
    httpx.TooManyRedirects,
)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    return value if value else None


def parse_product(item: Any) -> ExternalProduct:
    """
    Parse one Graph API product node into an ExternalProduct.

    Raises:
        UpstreamMalformed: If the node is not an object or has no id
    """
    if not isinstance(item, dict):
        raise UpstreamMalformed(f"Catalog item is not an object: {item!r}")

    external_id = _optional_str(item.get("id"))
    if not external_id:
        raise UpstreamMalformed(f"Catalog item without id: {item!r}")

    return ExternalProduct(
        external_id=external_id,
        retailer_id=_optional_str(item.get("retailer_id")),
        name=_optional_str(item.get("name")),
        description=item.get("description"),
        raw_price=item.get("price"),
        image_url=_optional_str(item.get("image_url")),
        availability=item.get("availability"),
        url=_optional_str(item.get("url")),
    )


def parse_page(payload: Any) -> CatalogPage:
    """
    Parse a Graph API list response into a CatalogPage.

    The next cursor is ``paging.cursors.after`` and is only followed when
    the response also carries ``paging.next``.
    """
    if not isinstance(payload, dict):
        raise UpstreamMalformed("Catalog response is not a JSON object")

    data = payload.get("data")
    if not isinstance(data, list):
        raise UpstreamMalformed("Catalog response has no 'data' list")

    items = [parse_product(item) for item in data]

    next_cursor = None
    paging = payload.get("paging") or {}
    if isinstance(paging, dict) and paging.get("next"):
        cursors = paging.get("cursors") or {}
        after = cursors.get("after") if isinstance(cursors, dict) else None
        if not after:
            raise UpstreamMalformed("Catalog response has paging.next but no cursor")
        next_cursor = str(after)

    return CatalogPage(items=items, next_cursor=next_cursor)


class MetaCatalogClient(BaseCatalogClient):
    """
    Fetches product pages from a Meta commerce catalog.

    Features:
    - Cursor pagination hidden behind fetch_page / fetch_all
    - Status-aware error mapping (UpstreamUnavailable / UpstreamMalformed)
    - Connection test and catalog info for operators
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
        catalog_id: Optional[str] = None,
        access_token: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        max_pages: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the catalog client (defaults come from settings).

        Args:
            transport: Optional httpx transport, used by tests to stub the API
        """
        self.base_url = (base_url or settings.meta_api_base_url).rstrip("/")
        self.api_version = api_version or settings.meta_api_version
        self.catalog_id = catalog_id or settings.meta_catalog_id
        self.access_token = access_token if access_token is not None else settings.meta_access_token
        self.page_size = page_size or settings.catalog_page_size
        self.timeout = timeout or settings.catalog_request_timeout
        self.max_pages = max_pages or settings.catalog_max_pages
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    def _build_url(self, endpoint: str) -> str:
        return f"{self.base_url}/{self.api_version}/{endpoint}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_json(self, endpoint: str, params: dict[str, Any]) -> Any:
        """
        Issue one GET and decode the JSON body.

        Raises:
            UpstreamUnavailable: Transport error or non-2xx status
            UpstreamMalformed: Body is not JSON
        """
        client = await self._get_client()
        query = {"access_token": self.access_token, **params}

        try:
            response = await client.get(self._build_url(endpoint), params=query)
        except TRANSPORT_EXC as e:
            metrics.record_upstream_error(type(e).__name__)
            raise UpstreamUnavailable(
                f"Catalog request failed ({type(e).__name__}): {endpoint}"
            ) from e

        if not 200 <= response.status_code < 300:
            metrics.record_upstream_error(f"HTTP {response.status_code}")
            detail = self._error_message(response)
            logger.error(
                f"Catalog API error {response.status_code} for {endpoint}: {detail}"
            )
            raise UpstreamUnavailable(
                f"Catalog API returned {response.status_code}: {detail}"
            )

        try:
            return response.json()
        except ValueError as e:
            metrics.record_upstream_error("invalid_json")
            raise UpstreamMalformed(f"Catalog API returned non-JSON body for {endpoint}") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Extract the Graph API error message, falling back to the raw body."""
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return str(body["error"].get("message", ""))[:200]
        return response.text[:200]

    async def fetch_page(self, cursor: Optional[str] = None) -> CatalogPage:
        """Fetch one page of catalog products."""
        params: dict[str, Any] = {"fields": PRODUCT_FIELDS, "limit": self.page_size}
        if cursor:
            params["after"] = cursor

        payload = await self._get_json(f"{self.catalog_id}/products", params)
        try:
            page = parse_page(payload)
        except UpstreamMalformed:
            metrics.record_upstream_error("malformed")
            raise

        logger.debug(
            f"Fetched catalog page: {len(page.items)} items, "
            f"more={'yes' if page.next_cursor else 'no'}"
        )
        return page

    async def test_connection(self) -> bool:
        """Check that the catalog is reachable with the configured credentials."""
        try:
            await self._get_json(self.catalog_id, {"fields": "id,name"})
            return True
        except (UpstreamUnavailable, UpstreamMalformed) as e:
            logger.error(f"Catalog connection test failed: {e}")
            return False

    async def get_catalog_info(self) -> Optional[dict]:
        """Return id, name, product_count and vertical of the catalog, or None."""
        try:
            info = await self._get_json(self.catalog_id, {"fields": CATALOG_INFO_FIELDS})
        except (UpstreamUnavailable, UpstreamMalformed) as e:
            logger.error(f"Error getting catalog info: {e}")
            return None
        return info if isinstance(info, dict) else None
