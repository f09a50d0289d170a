from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

import aiohttp

from warmhost.observability.logger import logger

# ─── Errors ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HttpError(Exception):
    """Non-2xx answer, or ``status=0`` when the request never completed."""

    status: int
    body: str

    def __str__(self) -> str:
        if self.status == 0:
            return f"request failed: {self.body}"
        return f"HTTP {self.status}: {self.body}"


# ─── Response ────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Response[T]:
    status: int
    data: T
    headers: dict[str, str]


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    def headers(self) -> dict[str, str]: ...


class BearerAuth:
    def __init__(self, token: str) -> None:
        self._token = token

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    """Small JSON client over one lazily created aiohttp session.

    ``base_url`` may be empty, in which case every path must be absolute.
    """

    def __init__(
        self,
        base_url: str = "",
        auth: Auth | None = None,
        *,
        timeout: float = 30,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = default_headers or {}
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", **self._default_headers}
        if self._auth:
            headers.update(self._auth.headers())
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        format: Literal["json", "text"] = "json",
    ) -> Response[Any]:
        session = self._ensure_session()
        url = self._url(path)
        self._log.debug("{method} {url}", method=method, url=url)
        try:
            async with session.request(method, url, headers=self._build_headers(), json=json) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    self._log.warning(
                        "HTTP {status} from {url}: {body}",
                        status=resp.status, url=url, body=body[:500],
                    )
                    raise HttpError(status=resp.status, body=body)
                match format:
                    case "json":
                        raw = await resp.read()
                        data = await resp.json(content_type=None) if raw else None
                    case "text":
                        data = await resp.text()
                return Response(status=resp.status, data=data, headers=dict(resp.headers))
        except TimeoutError as e:
            raise HttpError(status=0, body=f"timed out after {self._timeout.total}s") from e
        except aiohttp.ClientError as e:
            raise HttpError(status=0, body=str(e)) from e

    async def get(self, path: str, *, format: Literal["json", "text"] = "json") -> Response[Any]:
        return await self._send("GET", path, format=format)

    async def post(
        self,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        format: Literal["json", "text"] = "json",
    ) -> Response[Any]:
        return await self._send("POST", path, json=json, format=format)

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> HttpClient:
        self._ensure_session()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
