"""HTTP client for the OrgX REST API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from orgx_dispatch import __version__
from orgx_dispatch.config import DEFAULT_BASE_URL

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_USER_AGENT = f"orgx-dispatch/{__version__}"

ENTITIES_PATH = "/api/entities"
ACTIVITY_PATH = "/api/client/live/activity"
CHANGESET_PATH = "/api/client/live/changesets/apply"
SYNC_PATH = "/api/client/sync"
SPAWN_GUARD_PATH = "/api/client/spawn"
QUALITY_PATH = "/api/client/quality"


class OrgxApiError(RuntimeError):
    """Upstream request failure; ``status_code`` is 0 for transport errors."""

    def __init__(self, message: str, *, status_code: int = 0, body: object = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class OrgxClient:
    """Authenticated OrgX client with timeout and connection retries."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        user_id: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "User-Agent": DEFAULT_USER_AGENT,
        }
        if user_id:
            headers["X-Orgx-User-Id"] = user_id
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body (or text)."""

        try:
            response = self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s %s", method, path)
            raise OrgxApiError(f"Timeout calling {method} {path}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s %s: %s", method, path, error)
            raise OrgxApiError(f"HTTP error calling {method} {path}: {error}") from error

        body = _decode_body(response)
        if not response.is_success:
            raise OrgxApiError(
                f"HTTP {response.status_code} {response.reason_phrase} "
                f"from {method} {path}: {body}",
                status_code=response.status_code,
                body=body,
            )
        return body

    def list_entities(
        self,
        entity_type: str,
        *,
        limit: int = 1_000,
        **filters: str,
    ) -> list[dict[str, Any]]:
        params = {"type": entity_type, "limit": str(limit), **filters}
        result = self.request("GET", ENTITIES_PATH, params=params)
        rows = result.get("data") if isinstance(result, dict) else None
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]

    def create_entity(self, entity_type: str, payload: dict[str, Any]) -> Any:
        result = self.request("POST", ENTITIES_PATH, json={"type": entity_type, **payload})
        return _unwrap_entity(result)

    def update_entity(self, entity_type: str, entity_id: str, updates: dict[str, Any]) -> Any:
        result = self.request(
            "PATCH",
            ENTITIES_PATH,
            json={"type": entity_type, "id": entity_id, **updates},
        )
        return _unwrap_entity(result)

    def emit_activity(self, payload: dict[str, Any]) -> Any:
        return self.request("POST", ACTIVITY_PATH, json=payload)

    def apply_changeset(self, payload: dict[str, Any]) -> Any:
        return self.request("POST", CHANGESET_PATH, json=payload)

    def sync(self, payload: dict[str, Any]) -> Any:
        return self.request("POST", SYNC_PATH, json=payload)

    def check_spawn_guard(self, payload: dict[str, Any]) -> Any:
        return self.request("POST", SPAWN_GUARD_PATH, json=payload)

    def record_quality(self, payload: dict[str, Any]) -> Any:
        return self.request("POST", QUALITY_PATH, json=payload)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OrgxClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _unwrap_entity(result: Any) -> Any:
    if isinstance(result, dict):
        return result.get("entity") or result.get("data") or result
    return result
