"""
Errors shared by the outbound API connectors.

Every error carries a stable ``code`` used in JSON error envelopes.
"""

from typing import Any, Optional


class ConnectorError(Exception):
    """Base class for failures talking to an external platform."""

    code = "connector_error"


class AuthRequired(ConnectorError):
    """Raised when no usable accounting token exists and the user must reconnect."""

    code = "auth_required"


class UpstreamError(ConnectorError):
    """
    Raised when an external API answers with a non-2xx status.

    Attributes:
        service: Which platform failed ("kledo", "xendit")
        status_code: HTTP status returned upstream
        body: Parsed JSON error body, or raw text when not JSON
    """

    code = "upstream_error"

    def __init__(self, service: str, status_code: int, body: Any, message: Optional[str] = None):
        self.service = service
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"{service} API returned {status_code}: {body}")


class MalformedResponse(UpstreamError):
    """
    Raised when an external API answers 2xx with a body that cannot be read.

    The request may have taken effect upstream even though its result is unknown.
    """

    code = "malformed_response"

    def __init__(
        self, service: str, body: Any, message: str, status_code: Optional[int] = None
    ):
        super().__init__(service, status_code, body, message=message)


class UpstreamTimeout(ConnectorError):
    """Raised when an external API does not answer within the configured timeout."""

    code = "upstream_timeout"

    def __init__(self, service: str, url: str):
        self.service = service
        self.url = url
        super().__init__(f"{service} API timed out calling {url}")


def parse_error_body(response) -> Any:
    """Return the JSON body of an error response, falling back to raw text."""
    try:
        return response.json()
    except ValueError:
        return response.text
