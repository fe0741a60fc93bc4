import asyncio
import logging
from typing import Any, Dict, Optional, Type

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


async def post_json_with_retry(
    client: httpx.AsyncClient,
    url: str,
    payload: Dict[str, Any],
    *,
    headers: Optional[Dict[str, str]] = None,
    max_retries: int = 3,
    error_cls: Type[Exception] = RuntimeError,
    label: str = "request",
) -> Dict[str, Any]:
    """
    POST a JSON body and return the decoded JSON response.

    Timeouts, transport errors, 429 and 5xx are retried with exponential backoff
    (1s, 2s, 4s, ...). Any other HTTP error fails immediately. Raises error_cls
    once the budget is spent.
    """
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        try:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in RETRYABLE_STATUS_CODES and attempt < attempts - 1:
                wait_time = 2 ** attempt  # Exponential backoff
                logger.warning(f"{label} got HTTP {status} (attempt {attempt + 1}/{attempts}), retrying in {wait_time}s...")
                await asyncio.sleep(wait_time)
                continue
            body = e.response.text[:500]
            raise error_cls(f"{label} HTTP error {status}: {body}") from e

        except httpx.TransportError as e:
            # Covers timeouts and connection failures
            if attempt < attempts - 1:
                wait_time = 2 ** attempt
                logger.warning(f"{label} {type(e).__name__} (attempt {attempt + 1}/{attempts}), retrying in {wait_time}s...")
                await asyncio.sleep(wait_time)
                continue
            raise error_cls(f"{label} failed after {attempts} attempts: {e}") from e

        except ValueError as e:
            raise error_cls(f"{label} returned a non-JSON body: {e}") from e

    raise error_cls(f"{label} failed after {attempts} attempts")
