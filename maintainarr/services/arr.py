"""Base commune des clients Radarr et Sonarr (API v3, clé dans X-Api-Key)."""
import logging
from typing import Any, Dict, Optional

import httpx

from maintainarr.config import get_config
from maintainarr.core.errors import ExternalServiceError
from maintainarr.utils.http_client import RobustHTTPClient, get_http_client

logger = logging.getLogger(__name__)


def check_delete_response(service: str, response: httpx.Response) -> bool:
    """Interprète la réponse d'un DELETE Radarr/Sonarr.

    Returns True when the item was deleted, False when it was already gone
    (HTTP 404). Any other non-2xx raises ExternalServiceError with the
    response text.
    """
    if response.status_code == 404:
        return False
    if response.is_success:
        return True
    raise ExternalServiceError(service, response.status_code, _error_text(response))


def _error_text(response: httpx.Response) -> str:
    return response.text.strip() or response.reason_phrase


class ArrService:
    """HTTP access to one *arr instance; subclasses name the endpoints."""

    display_name = "Arr"

    def __init__(self, url: str, api_key: str, http_client: Optional[RobustHTTPClient] = None):
        self.base_url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = get_config().maintenance.request_timeout_seconds
        self.http = http_client or get_http_client()

    @property
    def service_name(self) -> str:
        return self.display_name.lower()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v3/{path}"

    async def _send(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, json: Any = None) -> httpx.Response:
        return await self.http.send(
            method,
            self._url(path),
            self.service_name,
            headers={"X-Api-Key": self.api_key},
            params=params,
            json=json,
            timeout=self.timeout,
        )

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._send("GET", path, params=params)
        except httpx.HTTPError as e:
            raise ExternalServiceError(self.display_name, None, f"Error fetching {path}: {str(e)}")
        if not response.is_success:
            raise ExternalServiceError(self.display_name, response.status_code, _error_text(response))
        return response.json()

    async def _delete_one(self, path: str, params: Optional[Dict[str, Any]] = None) -> bool:
        """DELETE d'un élément; False s'il était déjà absent (404)."""
        response = await self._send("DELETE", path, params=params)
        deleted = check_delete_response(self.display_name, response)
        if not deleted:
            logger.info(f"{self.display_name} {path} already gone (404)")
        return deleted

    async def _delete_bulk(self, path: str, body: Dict[str, Any]) -> None:
        """DELETE groupé (corps JSON); tout statut non-2xx lève ExternalServiceError."""
        response = await self._send("DELETE", path, json=body)
        if not response.is_success:
            raise ExternalServiceError(self.display_name, response.status_code, _error_text(response))

    async def system_status(self) -> Dict[str, Any]:
        """GET /system/status, used by the diagnostics endpoint."""
        return await self._get_json("system/status")
