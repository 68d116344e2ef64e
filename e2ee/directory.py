"""
HTTP client for the key directory.

Endpoints:
- PUT /keys/{user_id}          publish our public key
- GET /keys/{user_id}          fetch a peer's current public key
- PUT /groups/{group_id}/key   publish wrapped copies of a group key
- GET /groups/{group_id}/key   fetch our own wrapped copy
"""

from typing import Dict, Optional, Tuple

import httpx

from .errors import DirectoryError, NetworkError, NotFound
from .models import PeerPublicKeyRecord
from .primitives import b64decode, b64encode


def _body(response: httpx.Response) -> dict:
    """JSON object body, or an empty dict for anything else (e.g. a proxy error page)"""
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class DirectoryClient:
    """
    Thin async wrapper over the directory REST API.

    HTTP status codes are mapped onto the crypto error taxonomy: 404 becomes
    NotFound, 5xx and transport failures become NetworkError.
    """

    def __init__(self, server_url: str, token: Optional[str] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize directory client.

        Args:
            server_url: Base URL of the directory server
            token: Bearer token for write operations
            http_client: Shared client; one is created when omitted
        """
        self.server_url = server_url.rstrip("/")
        self.token = token
        self.http_client = http_client or httpx.AsyncClient()

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        try:
            response = await self.http_client.request(
                method,
                f"{self.server_url}{path}",
                json=json,
                headers=self._headers()
            )
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}")

        if response.status_code == 404:
            raise NotFound(f"{path} not found")
        if response.status_code >= 500:
            raise NetworkError(f"{method} {path} returned {response.status_code}")
        if response.status_code >= 400:
            detail = _body(response).get("detail") or f"status {response.status_code}"
            raise DirectoryError(f"{method} {path} rejected: {detail}")

        data = _body(response)
        if not data:
            raise NetworkError(f"{method} {path} returned no JSON object ({response.status_code})")
        return data

    async def put_public_key(self, user_id: str, public_key: bytes) -> PeerPublicKeyRecord:
        data = await self._request("PUT", f"/keys/{user_id}", json={"publicKey": b64encode(public_key)})
        try:
            return PeerPublicKeyRecord.from_dict(data)
        except (KeyError, ValueError) as e:
            raise DirectoryError(f"Directory acknowledgement for {user_id} is malformed: {e}")

    async def get_public_key(self, user_id: str) -> PeerPublicKeyRecord:
        data = await self._request("GET", f"/keys/{user_id}")
        try:
            return PeerPublicKeyRecord.from_dict(data)
        except (KeyError, ValueError) as e:
            raise NotFound(f"Directory entry for {user_id} is malformed: {e}")

    async def put_group_key(self, group_id: str, payload: dict) -> dict:
        return await self._request("PUT", f"/groups/{group_id}/key", json=payload)

    async def get_group_key(self, group_id: str) -> Tuple[bytes, int]:
        """
        Fetch our wrapped copy of a group key.

        Returns:
            Tuple of (wrapped_key, version)
        """
        data = await self._request("GET", f"/groups/{group_id}/key")
        try:
            return b64decode(data["wrappedKey"]), int(data.get("version", 1))
        except (KeyError, ValueError) as e:
            raise NotFound(f"Group key for {group_id} is malformed: {e}")

    async def aclose(self):
        await self.http_client.aclose()
