"""
NutriSaath Backend: Open Food Facts Client
============================================

What:  Async HTTP client for the Open Food Facts v2 API, the upstream product
       source behind the product cache.
How:   One shared httpx.AsyncClient with an explicit timeout and the
       configured User-Agent. Raw payloads are normalized into the dict shape
       ProductStore.upsert() and ProductRecord accept.
Who:   Called by ProductResolver (services/product_service.py).
When:  On a cache miss, a stale record, or a `nocache` request.

Outcome mapping:
    HTTP 404, or `status != 1`, or no `product` → None (not found, a result)
    timeout / connection error                  → UpstreamUnavailable
    any other non-2xx status                    → UpstreamUnavailable
    body that is not a JSON object              → UpstreamUnavailable
    product fields with the wrong shape         → UpstreamUnavailable

No retries: a failed call surfaces to the caller on the first attempt, and the
timeout bounds how long a request can wait on upstream.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from nutrisaath.config import settings
from nutrisaath.exceptions import UpstreamUnavailable
from nutrisaath.schemas.product import BARCODE_PATTERN

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = "code,product_name,brands,ingredients_text,nutriments,selected_images"

# Search is scoped to the Indian market, English labels, most popular first
SEARCH_COUNTRY = "India"
SEARCH_LANGUAGE = "en"
SEARCH_SORT = "popularity_key"


def _unexpected_payload(field: str) -> UpstreamUnavailable:
    logger.error("Open Food Facts payload has an unexpected %s", field)
    return UpstreamUnavailable(
        message="Open Food Facts returned an unexpected payload",
        context={"error": "unexpected_payload", "field": field},
    )


def normalize_off_product(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert an Open Food Facts product object into our product fields.

    Images come from `selected_images[<type>].display`, preferring the
    English rendition and falling back to French.

    Raises:
        UpstreamUnavailable: The product has no `code`, or a field has the
            wrong shape.
    """
    code = raw.get("code") if isinstance(raw, dict) else None
    if not code:
        raise UpstreamUnavailable(
            message="Open Food Facts product response missing code",
            context={"keys": sorted(raw.keys()) if isinstance(raw, dict) else None},
        )

    images: List[Dict[str, str]] = []
    selected = raw.get("selected_images") or {}
    if not isinstance(selected, dict):
        raise _unexpected_payload("selected_images")
    for image_type, variants in selected.items():
        if variants and not isinstance(variants, dict):
            raise _unexpected_payload(f"selected_images.{image_type}")
        display = (variants or {}).get("display") or {}
        if not isinstance(display, dict):
            raise _unexpected_payload(f"selected_images.{image_type}.display")
        url = display.get("en") or display.get("fr")
        if url and not isinstance(url, str):
            raise _unexpected_payload(f"selected_images.{image_type}.display")
        if url:
            images.append({"type": image_type, "url": url})

    nutriments = raw.get("nutriments")
    fields: Dict[str, Any] = {
        "barcode": str(code),
        "nutrients": nutriments if isinstance(nutriments, dict) else None,
        "images": images,
    }
    for field, source in (("name", "product_name"), ("brand", "brands"), ("ingredients", "ingredients_text")):
        value = raw.get(source) or None
        if value is not None and not isinstance(value, str):
            raise _unexpected_payload(source)
        fields[field] = value
    return fields


class OpenFoodFactsClient:
    """
    Thin async wrapper around the two Open Food Facts endpoints we use.

    Args:
        base_url:  API root, defaults to OFF_BASE_URL
        timeout:   Per-request deadline in seconds, defaults to OFF_TIMEOUT_SECONDS
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.off_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.off_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        # Created lazily so the client binds to the running event loop
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"User-Agent": settings.off_user_agent_header},
                transport=self._transport,
            )
        return self._client

    async def _get(self, path: str, params: Dict[str, Any]) -> httpx.Response:
        try:
            return await self._get_client().get(path, params=params)
        except httpx.TimeoutException as e:
            logger.error("Open Food Facts request timed out: %s (%.1fs)", path, self.timeout)
            raise UpstreamUnavailable(context={"path": path, "error": "timeout"}) from e
        except httpx.HTTPError as e:
            logger.error("Open Food Facts request failed: %s: %s", path, e)
            raise UpstreamUnavailable(context={"path": path, "error": type(e).__name__}) from e

    @staticmethod
    def _json_object(response: httpx.Response, path: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            logger.error("Open Food Facts returned invalid JSON for %s", path)
            raise UpstreamUnavailable(context={"path": path, "error": "invalid_json"}) from e
        if not isinstance(payload, dict):
            raise UpstreamUnavailable(context={"path": path, "error": "unexpected_payload"})
        return payload

    async def get_product(self, barcode: str) -> Optional[Dict[str, Any]]:
        """
        Fetch one product by barcode.

        Returns:
            Normalized product fields, or None when Open Food Facts has no
            product for this barcode.

        Raises:
            UpstreamUnavailable: Transport failure, unexpected status, or an
                unusable payload.
        """
        path = f"/product/{barcode}.json"
        response = await self._get(path, {"fields": PRODUCT_FIELDS})

        if response.status_code == 404:
            logger.info("Product %s not found on Open Food Facts", barcode)
            return None
        if not response.is_success:
            logger.error(
                "Open Food Facts returned HTTP %d for %s", response.status_code, path
            )
            raise UpstreamUnavailable(
                context={"path": path, "status_code": response.status_code}
            )

        payload = self._json_object(response, path)
        product = payload.get("product")
        if payload.get("status") != 1 or not product:
            logger.info("Product %s not found on Open Food Facts (status=%s)", barcode, payload.get("status"))
            return None

        return normalize_off_product(product)

    async def search(
        self,
        query: str,
        page: int = 1,
        page_size: int = 20,
        nocache: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Free-text product search, biased to brand and product-name matches.

        Hits without an 8 to 14 digit `code` are skipped.
        """
        q = query.strip()
        params: Dict[str, Any] = {
            "search_terms": q,
            "search_simple": "1",
            "countries": SEARCH_COUNTRY,
            "lc": SEARCH_LANGUAGE,
            "sort_by": SEARCH_SORT,
            "page": str(page),
            "page_size": str(page_size),
            "fields": PRODUCT_FIELDS,
            "q": q,
            "tagtype_0": "brands",
            "tag_contains_0": "contains",
            "tag_0": q,
            "tagtype_1": "product_name",
            "tag_contains_1": "contains",
            "tag_1": q,
        }
        if nocache:
            params["nocache"] = "1"

        path = "/search"
        response = await self._get(path, params)
        if not response.is_success:
            logger.error(
                "Open Food Facts search returned HTTP %d for %r", response.status_code, q
            )
            raise UpstreamUnavailable(
                context={"path": path, "status_code": response.status_code}
            )

        payload = self._json_object(response, path)
        results: List[Dict[str, Any]] = []
        products = payload.get("products") or []
        if not isinstance(products, list):
            raise _unexpected_payload("products")
        for raw in products:
            if not isinstance(raw, dict) or not re.fullmatch(BARCODE_PATTERN, str(raw.get("code") or "")):
                logger.debug("Skipping search hit without a usable barcode")
                continue
            results.append(normalize_off_product(raw))
        return results

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


off_client = OpenFoodFactsClient()
