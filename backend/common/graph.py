import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx

from common.config import settings

logger = logging.getLogger(__name__)


class GraphAPIError(Exception):
    """A non-2xx response from Microsoft Graph."""

    def __init__(self, status_code: Optional[int], message: str, details: Any = None, retry_after: Optional[int] = None):
        super().__init__(f"Graph request failed ({status_code}): {message}")
        self.status_code = status_code
        self.message = message
        self.details = details
        self.retry_after = retry_after


class DeltaCursorExpired(GraphAPIError):
    """The stored delta link is no longer accepted; a fresh full delta is needed."""


def is_not_found(exc: Exception) -> bool:
    return isinstance(exc, GraphAPIError) and exc.status_code == 404


def is_precondition_failed(exc: Exception) -> bool:
    return isinstance(exc, GraphAPIError) and exc.status_code == 412


def is_conflict(exc: Exception) -> bool:
    return isinstance(exc, GraphAPIError) and exc.status_code == 409


def _quote(value: str) -> str:
    return quote(value, safe="")


class GraphTodoClient:
    """Thin Microsoft To Do client: lists are remote containers, tasks are remote items."""

    def __init__(self):
        self.base_url = settings.GRAPH_API_BASE.rstrip("/")
        self.timeout = settings.GRAPH_TIMEOUT_SECONDS

    @staticmethod
    def version_of(resource: Optional[Dict[str, Any]]) -> Optional[str]:
        """Opaque concurrency token of a Graph resource."""
        if not isinstance(resource, dict):
            return None
        return resource.get("@odata.etag")

    def _get_headers(self, access_token: str, etag: Optional[str] = None) -> Dict[str, str]:
        if not access_token:
            raise RuntimeError("Graph access token is required")
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        if etag:
            headers["If-Match"] = etag
        return headers

    async def _request(
        self,
        access_token: str,
        method: str,
        resource: str,
        json: Optional[Dict[str, Any]] = None,
        etag: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        url = resource if resource.startswith("https://") else f"{self.base_url}{resource}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.request(method, url, headers=self._get_headers(access_token, etag), json=json)
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            error = body.get("error") if isinstance(body, dict) else None
            message = (error or {}).get("message") if isinstance(error, dict) else None
            retry_after = resp.headers.get("Retry-After")
            raise GraphAPIError(
                resp.status_code,
                message or resp.reason_phrase or "Microsoft Graph request failed",
                details=body,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def get_profile(self, access_token: str) -> Dict[str, Any]:
        return await self._request(access_token, "GET", "/me") or {}

    # --- Lists (containers) ---

    async def create_list(self, access_token: str, display_name: str) -> Dict[str, Any]:
        return await self._request(access_token, "POST", "/me/todo/lists", json={"displayName": display_name})

    async def update_list(self, access_token: str, list_id: str, display_name: str) -> Optional[Dict[str, Any]]:
        return await self._request(
            access_token, "PATCH", f"/me/todo/lists/{_quote(list_id)}", json={"displayName": display_name}
        )

    async def delete_list(self, access_token: str, list_id: str) -> None:
        await self._request(access_token, "DELETE", f"/me/todo/lists/{_quote(list_id)}")

    async def list_lists(self, access_token: str) -> List[Dict[str, Any]]:
        lists: List[Dict[str, Any]] = []
        resource: Optional[str] = "/me/todo/lists"
        while resource:
            page = await self._request(access_token, "GET", resource) or {}
            lists.extend(item for item in page.get("value", []) if isinstance(item, dict))
            resource = page.get("@odata.nextLink")
        return lists

    async def find_list_by_name(
        self, access_token: str, display_name: str, exclude: Iterable[str] = ()
    ) -> Optional[Dict[str, Any]]:
        """First list named ``display_name`` whose id is not in ``exclude``."""
        wanted = display_name.strip().lower()
        skip = set(exclude)
        for item in await self.list_lists(access_token):
            if item.get("id") in skip:
                continue
            if (item.get("displayName") or "").strip().lower() == wanted:
                return item
        return None

    # --- Tasks (items) ---

    async def create_task(self, access_token: str, list_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(access_token, "POST", f"/me/todo/lists/{_quote(list_id)}/tasks", json=payload)

    async def get_task(self, access_token: str, list_id: str, task_id: str) -> Optional[Dict[str, Any]]:
        return await self._request(
            access_token, "GET", f"/me/todo/lists/{_quote(list_id)}/tasks/{_quote(task_id)}"
        )

    async def update_task(
        self, access_token: str, list_id: str, task_id: str, payload: Dict[str, Any], etag: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        return await self._request(
            access_token,
            "PATCH",
            f"/me/todo/lists/{_quote(list_id)}/tasks/{_quote(task_id)}",
            json=payload,
            etag=etag,
        )

    async def delete_task(self, access_token: str, list_id: str, task_id: str, etag: Optional[str] = None) -> None:
        await self._request(
            access_token, "DELETE", f"/me/todo/lists/{_quote(list_id)}/tasks/{_quote(task_id)}", etag=etag
        )

    async def get_delta(self, access_token: str, list_id: str, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Fetch one delta page. ``cursor`` is a previously returned next/delta link."""
        resource = cursor or f"/me/todo/lists/{_quote(list_id)}/tasks/delta"
        try:
            return await self._request(access_token, "GET", resource) or {}
        except GraphAPIError as exc:
            if exc.status_code == 410:
                raise DeltaCursorExpired(410, "Delta token is no longer valid", details=exc.details) from exc
            raise


graph_client = GraphTodoClient()
