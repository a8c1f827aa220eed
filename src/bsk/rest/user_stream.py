"""User data stream (listen key) endpoints.

These are API_KEY requests: the key travels in the header, no signature.
"""

from __future__ import annotations

from pydantic import ValidationError

from bsk.auth.request_builder import RestRequest, SecurityType
from bsk.errors import ListenKeyError
from bsk.models import ListenKeyResponse
from bsk.rest.transport import RestClient

USER_DATA_STREAM_PATH = "/api/v3/userDataStream"


class UserStreamApi:
    """Start, keep alive and close listen keys."""

    def __init__(self, rest: RestClient) -> None:
        self._rest = rest

    async def start(self) -> str:
        """Create a listen key (or return the account's current one).

        Raises:
            ListenKeyError: If the reply carries no listen key
        """
        data = await self._rest.send(
            RestRequest.create("POST", USER_DATA_STREAM_PATH, security=SecurityType.API_KEY)
        )
        try:
            return ListenKeyResponse.model_validate(data).listen_key
        except ValidationError as e:
            raise ListenKeyError(f"Malformed userDataStream reply: {str(data)[:100]}") from e

    async def keepalive(self, listen_key: str) -> None:
        """Extend the listen key's validity."""
        await self._rest.send(
            RestRequest.create(
                "PUT",
                USER_DATA_STREAM_PATH,
                {"listenKey": listen_key},
                security=SecurityType.API_KEY,
            )
        )

    async def close(self, listen_key: str) -> None:
        await self._rest.send(
            RestRequest.create(
                "DELETE",
                USER_DATA_STREAM_PATH,
                {"listenKey": listen_key},
                security=SecurityType.API_KEY,
            )
        )
