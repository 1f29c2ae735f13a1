"""Image acquisition: inline base64 payloads and remote URLs.

``ImageAcquirer.resolve()`` turns a request's image source into raw bytes:

  - ``image_base64`` present → decode it (a ``data:...;base64,`` prefix is
    accepted and stripped).
  - otherwise ``image_url`` present → streamed GET through the shared
    ``httpx.AsyncClient``.
  - neither → ``MissingImageSourceError``.

Every path enforces the same per-image ceiling (``max_bytes``). Remote bodies
are read in chunks and abandoned as soon as the ceiling is crossed, so an
oversized or endless response never holds more than ``max_bytes + 1`` bytes.

Error mapping for remote fetches:
  - non-http(s) URL, transport error, timeout, non-2xx → ``FetchFailedError``
  - declared or observed size over the ceiling        → ``PayloadTooLargeError``
"""

from __future__ import annotations

import base64
import binascii
from typing import Optional
from urllib.parse import urlsplit

import httpx

from nsfwgate.constants import (
    IMAGE_FETCH_TIMEOUT_S,
    POOL_KEEPALIVE_EXPIRY,
    POOL_MAX_CONNECTIONS,
    POOL_MAX_KEEPALIVE,
)
from nsfwgate.errors import (
    DecodeFailedError,
    FetchFailedError,
    MissingImageSourceError,
    PayloadTooLargeError,
)
from nsfwgate.utils.deadline import Deadline
from nsfwgate.utils.logger import get_logger

logger = get_logger(__name__)

_ALLOWED_SCHEMES = frozenset({"http", "https"})


# ─── httpx.AsyncClient factory ───────────────────────────────────────────────


def create_http_client() -> httpx.AsyncClient:
    """Create the shared client used for remote image fetches.

    Created once in the lifespan and stored at ``app.state.http_client``;
    never instantiated per request.
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY,
        ),
        timeout=httpx.Timeout(IMAGE_FETCH_TIMEOUT_S),
        follow_redirects=True,
    )


# ─── Acquirer ────────────────────────────────────────────────────────────────


class ImageAcquirer:
    """Resolve request image sources to bytes under a size ceiling.

    Args:
        http_client:     Shared client for remote fetches.
        max_bytes:       Per-image ceiling, inclusive.
        fetch_timeout_s: Upper bound for one remote fetch; further bounded by
                         the caller's deadline.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        max_bytes: int,
        fetch_timeout_s: float = IMAGE_FETCH_TIMEOUT_S,
    ) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self._client = http_client
        self.max_bytes = max_bytes
        self.fetch_timeout_s = fetch_timeout_s

    async def resolve(
        self,
        image_base64: Optional[str],
        image_url: Optional[str],
        deadline: Optional[Deadline] = None,
    ) -> bytes:
        """Return the image bytes for whichever source the request carries.

        Inline data wins when both sources are present.

        Raises:
            MissingImageSourceError: Neither source given.
            DecodeFailedError:       Malformed base64.
            PayloadTooLargeError:    Image exceeds ``max_bytes``.
            FetchFailedError:        Remote fetch failed.
            ScanTimeoutError:        ``deadline`` expired during the fetch.
        """
        if image_base64:
            return self.decode_inline(image_base64)
        if image_url:
            return await self.fetch(image_url, deadline or Deadline.never())
        raise MissingImageSourceError()

    def decode_inline(self, payload: str) -> bytes:
        comma = payload.find(",")
        if comma != -1:
            payload = payload[comma + 1:]
        compact = "".join(payload.split())
        try:
            data = base64.b64decode(compact, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeFailedError(f"failed to decode base64: {exc}") from exc
        return self.check_size(data)

    def check_size(self, data: bytes) -> bytes:
        if len(data) > self.max_bytes:
            raise PayloadTooLargeError(self.max_bytes)
        return data

    async def fetch(self, url: str, deadline: Deadline) -> bytes:
        scheme = urlsplit(url).scheme.lower()
        if scheme not in _ALLOWED_SCHEMES:
            raise FetchFailedError(f"unsupported URL scheme: '{scheme or url}'")
        return await deadline.run(self._download(url, deadline.bound(self.fetch_timeout_s)))

    async def _download(self, url: str, timeout_s: float) -> bytes:
        try:
            async with self._client.stream("GET", url, timeout=timeout_s) as response:
                if not response.is_success:
                    raise FetchFailedError(
                        f"failed to fetch image: HTTP {response.status_code}"
                    )

                declared = response.headers.get("content-length")
                if declared is not None and declared.isdigit() and int(declared) > self.max_bytes:
                    raise PayloadTooLargeError(self.max_bytes)

                buf = bytearray()
                async for chunk in response.aiter_bytes():
                    buf.extend(chunk[: self.max_bytes + 1 - len(buf)])
                    if len(buf) > self.max_bytes:
                        logger.warning(
                            "Remote image exceeded size limit",
                            url=url,
                            limit=self.max_bytes,
                        )
                        raise PayloadTooLargeError(self.max_bytes)
                return bytes(buf)
        except httpx.TimeoutException as exc:
            logger.warning("Image fetch timed out", url=url, error_type=type(exc).__name__)
            raise FetchFailedError("failed to fetch image: timed out") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning(
                "Image fetch failed",
                url=url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise FetchFailedError(f"failed to fetch image: {exc}") from exc
