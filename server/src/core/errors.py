from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for failures raised while collecting fleet data."""


class TransportError(PipelineError):
    """An endpoint could not be reached or did not return usable JSON.

    Covers connection errors, timeouts, non-2xx HTTP statuses and bodies that
    fail to decode.
    """

    def __init__(self, endpoint: str, message: str) -> None:
        super().__init__(f"{endpoint}: {message}")
        self.endpoint = endpoint
        self.message = message


class RpcError(PipelineError):
    """A well-formed JSON-RPC envelope reported an error (or carried no result)."""

    def __init__(self, code: Optional[int], message: str, endpoint: Optional[str] = None) -> None:
        detail = f"RPC Error: {message} (Code: {code})"
        if endpoint:
            detail = f"{endpoint}: {detail}"
        super().__init__(detail)
        self.code = code
        self.message = message
        self.endpoint = endpoint


class EnrichmentFailure(PipelineError):
    """The credits or geolocation service was unreachable or answered garbage."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service} lookup failed: {message}")
        self.service = service
        self.message = message
