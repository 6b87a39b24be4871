"""
Shared request helper for the outbound API connectors.

Maps transport failures to UpstreamTimeout/UpstreamError and retries
idempotent GET requests on transient failures with exponential backoff.
Non-GET requests are sent exactly once.
"""

import asyncio
from typing import Any, Optional

import httpx
import structlog

from ledgerbridge.connectors.errors import UpstreamError, UpstreamTimeout, parse_error_body

logger = structlog.get_logger()

# Statuses worth retrying for idempotent requests
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


async def send_request(
    http_client: httpx.AsyncClient,
    service: str,
    method: str,
    url: str,
    *,
    max_attempts: int = 3,
    backoff_seconds: float = 0.5,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Send a request and return the successful response.

    Args:
        http_client: Shared async HTTP client
        service: Platform name used in errors and logs
        method: HTTP method
        url: Absolute URL
        max_attempts: Attempts for GET requests (other methods get one)
        backoff_seconds: Base delay; attempt n waits backoff * 2**(n-1)
        timeout: Per-call timeout overriding the client default
        **kwargs: Passed through to ``httpx.AsyncClient.request``

    Returns:
        Response with a 2xx status

    Raises:
        UpstreamTimeout: If the final attempt timed out
        UpstreamError: If the final attempt returned non-2xx or failed in transport
    """
    method = method.upper()
    attempts = max(1, max_attempts) if method == "GET" else 1
    if timeout is not None:
        kwargs["timeout"] = timeout

    for attempt in range(1, attempts + 1):
        last_attempt = attempt == attempts
        try:
            response = await http_client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.warning(
                "upstream_request_timeout",
                service=service,
                method=method,
                url=url,
                attempt=attempt,
            )
            if last_attempt:
                raise UpstreamTimeout(service, url)
        except httpx.TransportError as e:
            logger.warning(
                "upstream_transport_error",
                service=service,
                method=method,
                url=url,
                error=str(e),
                attempt=attempt,
            )
            if last_attempt:
                raise UpstreamError(service, 0, str(e), message=f"{service} API unreachable: {e}") from e
        else:
            if response.is_success:
                logger.debug(
                    "upstream_request_success",
                    service=service,
                    method=method,
                    url=url,
                    status_code=response.status_code,
                    attempt=attempt,
                )
                return response

            body = parse_error_body(response)
            logger.error(
                "upstream_request_failed",
                service=service,
                method=method,
                url=url,
                status_code=response.status_code,
                error=body,
                attempt=attempt,
            )
            # Don't retry client errors (4xx) other than throttling
            if last_attempt or response.status_code not in RETRYABLE_STATUS_CODES:
                raise UpstreamError(service, response.status_code, body)

        wait_time = backoff_seconds * (2 ** (attempt - 1))
        logger.info("retrying_request", service=service, url=url, wait_seconds=wait_time)
        if wait_time > 0:
            await asyncio.sleep(wait_time)

    raise AssertionError("unreachable")
