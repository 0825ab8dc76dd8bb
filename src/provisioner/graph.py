"""Microsoft Graph client for Entra ID objects.

Thin async wrapper over httpx that authenticates each request with a
bearer token from the shared azure-identity credential and turns Graph
error payloads into GraphError. Lookups by filter return None when nothing
matches, so callers can tell "not found" apart from a failed request.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
DEFAULT_GRAPH_TIMEOUT_SECONDS = 30.0

# Safety bound when following @odata.nextLink
MAX_PAGES = 50

# Graph returns 400 (not 409) when adding an existing group member or app role grant
_DUPLICATE_MARKERS = (
    "already exist",
    "permission being assigned already exists",
)


class GraphError(Exception):
    """Raised when a Microsoft Graph request fails.

    ``status_code`` is None for failures before a response arrives: token
    acquisition, DNS, timeout or connection reset.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_conflict(self) -> bool:
        if self.status_code == 409:
            return True
        if self.status_code == 400:
            lowered = self.message.lower()
            return any(marker in lowered for marker in _DUPLICATE_MARKERS)
        return False

    def __str__(self) -> str:
        if self.status_code is None:
            return f"Graph transport error: {self.message}"
        return f"Graph error ({self.status_code} {self.code or 'unknown'}): {self.message}"


def odata_quote(value: str) -> str:
    """Quote a string literal for an OData $filter expression."""
    return "'" + value.replace("'", "''") + "'"


class GraphClient:
    """Async Microsoft Graph v1.0 client.

    The credential is passed in explicitly; the client never reaches for
    ambient authentication state.
    """

    def __init__(
        self,
        credential: TokenCredential,
        *,
        base_url: str = GRAPH_BASE_URL,
        timeout: float = DEFAULT_GRAPH_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credential = credential
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def __aenter__(self) -> GraphClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        token = self._credential.get_token(GRAPH_SCOPE)
        return {
            "Authorization": f"Bearer {token.token}",
            "Content-Type": "application/json",
        }

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON body ({} when empty).

        Raises:
            GraphError: On token or transport failure, or a non-2xx response.
        """
        url = path if path.startswith("https://") else f"{self._base_url}{path}"

        try:
            headers = self._headers()
        except AzureError as e:
            logger.warning(
                f"Graph token acquisition failed on {method} {path}: {e}",
                extra={"method": method, "path": path, "error_type": type(e).__name__},
            )
            raise GraphError(str(e) or type(e).__name__) from e

        try:
            response = await self._client.request(
                method, url, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            logger.warning(
                f"Graph transport error on {method} {path}: {e}",
                extra={"method": method, "path": path, "error_type": type(e).__name__},
            )
            raise GraphError(str(e) or type(e).__name__) from e

        if response.status_code >= 400:
            raise self._error_from_response(response)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    @staticmethod
    def _error_from_response(response: httpx.Response) -> GraphError:
        code: str | None = None
        message = response.text or response.reason_phrase
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            code = payload["error"].get("code")
            message = payload["error"].get("message") or message
        return GraphError(message, status_code=response.status_code, code=code)

    async def get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.request("POST", path, json=json or {})

    async def patch(self, path: str, json: dict[str, Any]) -> dict[str, Any]:
        return await self.request("PATCH", path, json=json)

    async def list_all(
        self, path: str, params: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        """Collect every page of a collection response."""
        items: list[dict[str, Any]] = []
        page = await self.get(path, params)
        for fetched in range(1, MAX_PAGES + 1):
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")
            if not next_link:
                return items
            if fetched == MAX_PAGES:
                break
            page = await self.get(next_link)
        logger.warning(f"Stopped paging {path} after {MAX_PAGES} pages; results are truncated")
        return items

    async def find_one(
        self,
        collection: str,
        field: str,
        value: str,
        *,
        select: str | None = None,
    ) -> dict[str, Any] | None:
        """Return the first object whose ``field`` equals ``value``, or None.

        When several objects match (display names are not unique in Entra ID)
        the first one returned is used and the ambiguity is logged.
        """
        params = {"$filter": f"{field} eq {odata_quote(value)}"}
        if select:
            params["$select"] = select
        matches = await self.list_all(f"/{collection}", params)
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                f"{len(matches)} {collection} match {field}={value!r}; using the first",
                extra={"collection": collection, "field": field, "value": value},
            )
        return matches[0]

    async def signed_in_user_id(self) -> str | None:
        """Object ID of the signed-in user, None for app-only sessions."""
        try:
            me = await self.get("/me", {"$select": "id"})
        except GraphError as e:
            logger.info(f"No signed-in user available: {e}")
            return None
        return me.get("id")

