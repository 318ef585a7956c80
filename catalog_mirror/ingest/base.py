"""Base catalog client interface and the records it produces."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Union

logger = logging.getLogger(__name__)

RawPrice = Union[int, float, Decimal, str, None]


class UpstreamError(RuntimeError):
    """Base class for failures reaching or reading the upstream catalog."""
    pass


class UpstreamUnavailable(UpstreamError):
    """Raised on transport failures, timeouts and non-2xx responses."""
    pass


class UpstreamMalformed(UpstreamError):
    """Raised when a response cannot be parsed into catalog pages."""
    pass


@dataclass
class ExternalProduct:
    """Product record as read from the upstream catalog, before normalization."""

    external_id: str
    retailer_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    raw_price: RawPrice = None
    image_url: Optional[str] = None
    availability: Optional[str] = None
    url: Optional[str] = None


@dataclass
class CatalogPage:
    """One page of upstream products and the cursor for the next one."""

    items: list[ExternalProduct] = field(default_factory=list)
    next_cursor: Optional[str] = None


class BaseCatalogClient(ABC):
    """Abstract base class for upstream catalog clients.

    Implementations fetch single pages; ``fetch_all`` follows cursors.
    Neither retries: retry policy belongs to whoever drives the sync.
    """

    max_pages: int = 1000

    @abstractmethod
    async def fetch_page(self, cursor: Optional[str] = None) -> CatalogPage:
        """
        Fetch one page of the catalog.

        Args:
            cursor: Opaque cursor returned by the previous page, None for the first page

        Returns:
            CatalogPage; an empty page with next_cursor=None marks the end

        Raises:
            UpstreamUnavailable: On transport or status failures
            UpstreamMalformed: If the response has an unexpected shape
        """
        pass

    async def fetch_all(self) -> list[ExternalProduct]:
        """
        Fetch every page, concatenating items in arrival order.

        The first failing page aborts the whole fetch; items from earlier
        pages are discarded.

        Returns:
            All products in the catalog
        """
        products: list[ExternalProduct] = []
        seen_cursors: set[str] = set()
        cursor: Optional[str] = None
        pages = 0

        while True:
            page = await self.fetch_page(cursor)
            pages += 1
            products.extend(page.items)

            if page.next_cursor is None:
                break
            if page.next_cursor in seen_cursors:
                raise UpstreamMalformed(
                    f"Catalog returned a repeated cursor after {pages} pages"
                )
            if pages >= self.max_pages:
                raise UpstreamMalformed(
                    f"Catalog pagination exceeded {self.max_pages} pages"
                )
            seen_cursors.add(page.next_cursor)
            cursor = page.next_cursor

        logger.info(f"Fetched {len(products)} catalog products in {pages} pages")
        return products

    async def close(self):
        """Release any network resources held by the client."""
        pass
