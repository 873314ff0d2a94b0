"""
HTTP transport for the generation relay.

One client per credential snapshot. Every request carries both auth headers
the relay accepts (`Authorization: Bearer` and `mj-api-secret`), has its own
bounded timeout, and maps failures onto the error taxonomy:

- non-2xx -> TransportError (SubmissionError on submit endpoints)
- timeout / connection failure -> TransportError
- 2xx whose body is not a JSON object -> ProtocolError

Nothing here retries. The raw token never reaches a log line or an exception
message; only `mask_secret` output does.
"""
import os
from typing import Any, Dict, Optional, Type

import httpx
import structlog

from .credentials import IntegrationConfig
from .errors import ProtocolError, SubmissionError, TransportError

logger = structlog.get_logger()

RELAY_SUBMIT_TIMEOUT = float(os.environ.get("RELAY_SUBMIT_TIMEOUT", "30"))
RELAY_POLL_TIMEOUT = float(os.environ.get("RELAY_POLL_TIMEOUT", "15"))

# Keep error bodies short enough for a log line
MAX_ERROR_BODY_CHARS = 500


class RelayClient:
    """
    Thin async client for the relay API.

    Usage:
        async with RelayClient(credential) as relay:
            data = await relay.post_json("/mj/submit/imagine", {"prompt": "..."})

    An injected httpx client is used as-is and left open on close.
    """

    def __init__(
        self,
        credential: IntegrationConfig,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.credential = credential
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    @property
    def headers(self) -> Dict[str, str]:
        token = self.credential.token
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
            "mj-api-secret": token,
        }

    def url_for(self, path: str) -> str:
        return f"{self.credential.base_url}/{path.lstrip('/')}"

    async def post_json(
        self,
        path: str,
        body: Dict[str, Any],
        timeout: float = RELAY_SUBMIT_TIMEOUT,
        error_class: Type[TransportError] = SubmissionError,
    ) -> Dict[str, Any]:
        """POST a JSON body and return the decoded JSON object."""
        return await self._request("POST", path, timeout, error_class, json=body)

    async def get_json(
        self,
        path: str,
        timeout: float = RELAY_POLL_TIMEOUT,
    ) -> Dict[str, Any]:
        """GET a path and return the decoded JSON object."""
        return await self._request("GET", path, timeout, TransportError)

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float,
        error_class: Type[TransportError],
        **kwargs,
    ) -> Dict[str, Any]:
        url = self.url_for(path)
        masked = self.credential.masked_token
        client = self._get_client()

        try:
            response = await client.request(method, url, headers=self.headers, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("relay_request_timeout", method=method, url=url, timeout=timeout, token=masked)
            raise TransportError(f"Relay {method} {path} timed out after {timeout}s (token {masked})") from e
        except httpx.HTTPError as e:
            logger.error("relay_request_failed", method=method, url=url, error=str(e), token=masked)
            raise TransportError(f"Relay {method} {path} failed: {e} (token {masked})") from e

        if response.status_code < 200 or response.status_code >= 300:
            body = response.text[:MAX_ERROR_BODY_CHARS]
            logger.error(
                "relay_http_error",
                method=method,
                url=url,
                status_code=response.status_code,
                body=body,
                token=masked,
            )
            raise error_class(
                f"Relay responded {response.status_code} to {method} {path} (token {masked}): {body}",
                status_code=response.status_code,
                body=body,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(
                f"Relay returned non-JSON body for {method} {path}",
                payload=response.text[:MAX_ERROR_BODY_CHARS],
            ) from e

        if not isinstance(data, dict):
            raise ProtocolError(f"Relay returned {type(data).__name__}, expected an object", payload=data)

        logger.debug("relay_response", method=method, url=url, status_code=response.status_code)
        return data
