import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from orchid.orchid_errors import OrchidTimeoutError, ProviderError
from orchid.orchid_serialize import deserialize

log = logging.getLogger(__name__)


async def http_request(method: str, url: str, *, config: Optional[Dict] = None, payload: Any = None,
                       transport: Optional[httpx.AsyncBaseTransport] = None) -> Any:
    """
    Core HTTP helper for provider backends.

    config keys:
      - timeout (seconds, default 60): bound on the whole request
      - retries (default 0): extra attempts on transport errors and 5xx/429
      - backoff (default 0.5): base delay, doubled per attempt
      - headers: extra request headers

    Returns the deserialized body on 2xx. Non-2xx raises ProviderError with a
    body preview; a timeout raises OrchidTimeoutError.
    """
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 60.0))
    retries = int(cfg.pop('retries', 0))
    backoff = float(cfg.pop('backoff', 0.5))
    headers = dict(cfg.pop('headers', {}))

    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        attempt = 0
        while True:
            try:
                resp = await client.request(method.upper(), url, headers=headers, json=payload)
            except httpx.TimeoutException as e:
                if attempt < retries:
                    attempt += 1
                    await asyncio.sleep(backoff * (2 ** (attempt - 1)))
                    continue
                raise OrchidTimeoutError(f"{method.upper()} {url} did not answer within {timeout:g}s") from e
            except httpx.HTTPError as e:
                if attempt < retries:
                    attempt += 1
                    await asyncio.sleep(backoff * (2 ** (attempt - 1)))
                    continue
                raise ProviderError(f"{method.upper()} {url} failed: {e}") from e

            if 200 <= resp.status_code < 300:
                try:
                    return deserialize(resp.content, content_type=resp.headers.get("Content-Type"))
                except ValueError as e:
                    raise ProviderError(f"unreadable response from {url}: {e}") from e
            if (resp.status_code == 429 or resp.status_code >= 500) and attempt < retries:
                attempt += 1
                log.debug("retrying %s after HTTP %s", url, resp.status_code)
                await asyncio.sleep(backoff * (2 ** (attempt - 1)))
                continue
            preview = (resp.text or "")[:200]
            raise ProviderError(f"HTTP {resp.status_code} for {url}: {preview}")


async def http_post_json(url: str, payload: Any, config: Optional[Dict] = None,
                         transport: Optional[httpx.AsyncBaseTransport] = None) -> Any:
    return await http_request('POST', url, config=config, payload=payload, transport=transport)
