"""
Vault HTTP transport — JSON requests against the Vault v1 API.

Paths are relative to ``/v1/`` (e.g. ``auth/approle/login``,
``secret/data/vaultlocker/<uuid>``). The current session token, if any, is
sent as ``X-Vault-Token``.

Security Note:
    Never log request or response bodies; they carry tokens and secrets.
    Only log methods, paths and status codes.
"""
import ssl
import logging
from typing import Any

import aiohttp
import orjson

from ..exceptions import StoreHTTPError

logger = logging.getLogger("vault_dmcrypt.vault")

TOKEN_HEADER = "X-Vault-Token"


class VaultTransport:
    """Thin aiohttp wrapper speaking Vault's JSON API.

    Missing resources are returned as ``None``; any other non-success status
    raises ``StoreHTTPError``. Network level failures propagate as
    ``aiohttp.ClientError`` for the caller to wrap.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30,
        ca_bundle: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self._base_url = url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._ssl: Any = None
        if ca_bundle:
            self._ssl = ssl.create_default_context(cafile=ca_bundle)
        self._session = session
        self._owns_session = session is None
        self._token = ""

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    @property
    def token(self) -> str:
        return self._token

    def set_token(self, token: str) -> None:
        self._token = token or ""

    def clear_token(self) -> None:
        self._token = ""

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    def _url(self, path: str) -> str:
        return f"{self._base_url}/v1/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Issue a request and decode the JSON response.

        Returns:
            Decoded response body, ``{}`` for an empty success body, or
            ``None`` when Vault reports the path as missing (404 with no
            error messages).

        Raises:
            StoreHTTPError: For any other non-2xx status, or a success
                response whose body is not a JSON object.
        """
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers[TOKEN_HEADER] = self._token
        data = orjson.dumps(payload) if payload is not None else None

        logger.debug("Vault request %s %s", method, path)
        session = self._get_session()
        async with session.request(
            method, self._url(path), data=data, headers=headers, ssl=self._ssl,
        ) as response:
            body = await response.read()
            status = response.status

        parsed: dict[str, Any] = {}
        if body:
            try:
                parsed = orjson.loads(body)
            except orjson.JSONDecodeError:
                parsed = {"errors": [body.decode("utf-8", "replace")]}
        if not isinstance(parsed, dict):
            if 200 <= status < 300:
                raise StoreHTTPError(status, ["response body is not a JSON object"], url=path)
            parsed = {}

        if 200 <= status < 300:
            return parsed
        errors = parsed.get("errors") or []
        if status == 404 and not errors:
            return None
        raise StoreHTTPError(status, errors, url=path)

    async def read(self, path: str) -> dict[str, Any] | None:
        return await self.request("GET", path)

    async def write(
        self, path: str, payload: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        return await self.request("POST", path, payload if payload is not None else {})

    async def delete(self, path: str) -> dict[str, Any] | None:
        return await self.request("DELETE", path)

    async def close(self) -> None:
        """Forget the token and close the HTTP session if we own it."""
        self.clear_token()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
