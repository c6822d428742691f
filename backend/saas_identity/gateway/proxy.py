"""
Reverse proxy from the gateway to the backend service.

Forwards the (already authenticated) request with httpx.AsyncClient:
- hop-by-hop headers are dropped in both directions
- client-supplied X-Gateway-Secret is dropped and, when configured, the
  gateway's own shared secret is attached
- upstream timeouts map to 504, other transport errors to 502
"""

import logging
from typing import Iterable, List, Optional, Tuple

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from saas_identity.auth.gateway_headers import GATEWAY_SECRET_HEADER

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Recomputed by httpx / starlette for the outgoing message
_REQUEST_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length", GATEWAY_SECRET_HEADER.lower()}
_RESPONSE_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


def _filter_headers(
    headers: Iterable[Tuple[str, str]],
    skip: frozenset,
) -> List[Tuple[str, str]]:
    return [(name, value) for name, value in headers if name.lower() not in skip]


class BackendForwarder:
    """
    Forwards gateway requests to the backend.

    Usage:
        forwarder = BackendForwarder("http://backend:8000", httpx.AsyncClient())
        response = await forwarder.forward(request)
    """

    def __init__(
        self,
        backend_url: str,
        client: httpx.AsyncClient,
        shared_secret: Optional[str] = None,
        timeout_seconds: float = 30.0,
    ):
        self._backend_url = backend_url.rstrip("/")
        self._client = client
        self._shared_secret = shared_secret
        self._timeout_seconds = timeout_seconds

    def build_url(self, request: Request) -> str:
        url = f"{self._backend_url}{request.url.path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        return url

    def build_headers(self, request: Request) -> List[Tuple[str, str]]:
        headers = _filter_headers(request.headers.items(), _REQUEST_SKIP_HEADERS)
        if self._shared_secret:
            headers.append((GATEWAY_SECRET_HEADER, self._shared_secret))
        return headers

    async def forward(self, request: Request) -> Response:
        """
        Send the request upstream and relay the response.

        Returns:
            The backend response, or a 502/504 JSON error
        """
        url = self.build_url(request)
        body = await request.body()

        try:
            upstream = await self._client.request(
                request.method,
                url,
                headers=self.build_headers(request),
                content=body,
                timeout=self._timeout_seconds,
            )
        except httpx.TimeoutException:
            logger.error("Backend request timed out", extra={"path": request.url.path})
            return JSONResponse(
                status_code=504,
                content={"error": "Gateway Timeout", "message": "Backend did not respond in time"},
            )
        except httpx.HTTPError as e:
            logger.error(
                "Backend request failed",
                extra={"path": request.url.path, "error": str(e)},
            )
            return JSONResponse(
                status_code=502,
                content={"error": "Bad Gateway", "message": "Backend unavailable"},
            )

        response = Response(content=upstream.content, status_code=upstream.status_code)
        for name, value in _filter_headers(upstream.headers.multi_items(), _RESPONSE_SKIP_HEADERS):
            response.headers.append(name, value)
        return response
