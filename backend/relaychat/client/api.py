"""HTTP clients for the relay's token-issuance and history endpoints.

Both collaborators are consumed through small protocols so the client core
can be driven by in-memory fakes in tests:

    - AccessTokenProvider.get_access_token(session_id) -> AccessToken
    - HistorySource.fetch(session_id, before, limit) -> HistoryResponse
"""
import logging
from typing import List, Optional, Protocol
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field, ValidationError

from relaychat.errors import AuthRejected, TransportError
from relaychat.protocol import INBOUND, AccessToken, Message

logger = logging.getLogger(__name__)


class HistoryResponse(BaseModel):
    """Body of the paged history endpoint.

    ``hasMore`` is None when the source did not say either way.
    """
    messages: List[Message] = Field(default_factory=list)
    hasMore: Optional[bool] = None


class AccessTokenProvider(Protocol):
    async def get_access_token(self, session_id: str) -> AccessToken: ...


class HistorySource(Protocol):
    async def fetch(
        self, session_id: str, before: Optional[str], limit: int
    ) -> HistoryResponse: ...


def _raise_for_status(response: httpx.Response, what: str) -> None:
    """Map HTTP failures onto the client error taxonomy.

    401/403 are credential problems and terminal; everything else is treated
    as a transient transport failure.
    """
    if response.status_code in (401, 403):
        detail = ""
        try:
            detail = response.json().get("detail", "")
        except ValueError:
            pass
        raise AuthRejected(detail or f"{what} rejected ({response.status_code})")
    if response.is_error:
        raise TransportError(f"{what} failed with HTTP {response.status_code}")


class HttpTokenProvider:
    """Requests session tokens from ``POST /sessions/{id}/token``."""

    def __init__(self, client: httpx.AsyncClient, user_id: str) -> None:
        self._client = client
        self._user_id = user_id

    async def get_access_token(self, session_id: str) -> AccessToken:
        try:
            response = await self._client.post(
                f"/sessions/{quote(session_id, safe='')}/token",
                json={"userId": self._user_id},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"token request failed: {exc}") from exc

        _raise_for_status(response, "token request")
        data = response.json()
        logger.debug("[Tokens] Issued token for session %s (expires %s)", session_id, data.get("expiresAt"))
        return AccessToken(token=data["token"], expires_at=float(data["expiresAt"]))


class HttpHistorySource:
    """Reads history pages from ``GET /sessions/{id}/messages``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def fetch(
        self, session_id: str, before: Optional[str], limit: int
    ) -> HistoryResponse:
        params = {"limit": limit}
        if before is not None:
            params["before"] = before
        try:
            response = await self._client.get(
                f"/sessions/{quote(session_id, safe='')}/messages",
                params=params,
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"history request failed: {exc}") from exc

        _raise_for_status(response, "history request")
        try:
            return HistoryResponse.model_validate(response.json(), context=INBOUND)
        except (ValueError, ValidationError) as exc:
            raise TransportError(f"history response was not understood: {exc}") from exc
