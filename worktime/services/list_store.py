"""
List store client
Handles authenticated REST calls to the SharePoint-style list store
"""
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
import structlog

from ..config import settings
from ..errors import StoreRequestError

logger = structlog.get_logger(__name__)

VERBOSE_JSON = "application/json;odata=verbose"


class ListStoreClient:
    """Async client for list/item reads and MERGE writes against the list store"""

    def __init__(
        self,
        token: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        if not token:
            raise ValueError("List store bearer token is required")
        self.token = token
        self._client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.store_timeout_s,
            transport=transport,
        )

    async def __aenter__(self) -> "ListStoreClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ---- URL builders ----

    @staticmethod
    def items_url(site_url: str, list_id: str, item_id: Optional[int] = None) -> str:
        base = f"{site_url.rstrip('/')}/_api/web/lists/getById('{list_id}')/items"
        return base if item_id is None else f"{base}({item_id})"

    @staticmethod
    def items_by_title_url(site_url: str, list_title: str, item_id: Optional[int] = None) -> str:
        base = f"{site_url.rstrip('/')}/_api/web/lists/getByTitle('{quote(list_title)}')/items"
        return base if item_id is None else f"{base}({item_id})"

    @staticmethod
    def list_url(site_url: str, list_id: str) -> str:
        return f"{site_url.rstrip('/')}/_api/web/lists(guid'{list_id}')"

    # ---- Requests ----

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.token}", "Accept": VERBOSE_JSON}
        if extra:
            headers.update(extra)
        return headers

    async def _request(self, method: str, url: str, operation: str, **kwargs) -> httpx.Response:
        headers = self._headers(kwargs.pop("headers", None))
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("store_transport_error", operation=operation, url=url, error=str(e))
            raise StoreRequestError(None, str(e), operation) from e
        if response.status_code >= 400:
            raise StoreRequestError(response.status_code, response.text, operation)
        return response

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None, operation: str = "get") -> Dict[str, Any]:
        """GET and return the verbose-OData `d` payload"""
        response = await self._request("GET", url, operation, params=params)
        try:
            body = response.json() if response.content else {}
        except ValueError as e:
            # sign-in pages and proxies answer 200 with HTML
            logger.warning("store_invalid_body", operation=operation, url=url, status_code=response.status_code)
            raise StoreRequestError(response.status_code, f"invalid JSON body: {response.text}", operation) from e
        return body.get("d", body) if isinstance(body, dict) else {}

    async def get_results(self, url: str, params: Optional[Dict[str, Any]] = None, operation: str = "get_results") -> list:
        data = await self.get(url, params=params, operation=operation)
        results = data.get("results") if isinstance(data, dict) else None
        return results if isinstance(results, list) else []

    async def merge(self, url: str, body: Dict[str, Any], etag: Optional[str] = None, operation: str = "merge") -> None:
        """Update an item in place; unconditional unless an ETag is supplied"""
        await self._request(
            "POST",
            url,
            operation,
            json=body,
            headers={
                "Content-Type": VERBOSE_JSON,
                "X-HTTP-Method": "MERGE",
                "IF-MATCH": etag or "*",
            },
        )

    async def post_json(self, url: str, body: Dict[str, Any], operation: str = "post") -> httpx.Response:
        """Plain JSON POST (no store auth header), used for outbound webhooks"""
        try:
            response = await self._client.post(
                url,
                json=body,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise StoreRequestError(None, str(e), operation) from e
        if response.status_code >= 400:
            raise StoreRequestError(response.status_code, response.text, operation)
        return response

    async def list_entity_type(self, site_url: str, list_id: str) -> str:
        """Item type tag for writes; the configured default when the lookup fails"""
        try:
            data = await self.get(
                self.list_url(site_url, list_id),
                params={"$select": "ListItemEntityTypeFullName"},
                operation="list_entity_type",
            )
        except StoreRequestError as e:
            logger.warning("entity_type_lookup_failed", list_id=list_id, error=e.message)
            return settings.default_entity_type
        return data.get("ListItemEntityTypeFullName") or settings.default_entity_type
