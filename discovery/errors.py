"""
Error taxonomy for discovery, enrichment and topology inference.

Discovery-phase errors abort the run and reach the caller.  Enrichment-phase
errors are caught per inspection step, logged, and skipped.
"""

from __future__ import annotations


class TopologyError(Exception):
    """Base class for every error raised by this project."""


class ConfigurationError(TopologyError):
    """Raised when signing input is malformed (empty credentials, region, ...)."""


class EmptyResultError(TopologyError):
    """Discovery finished but no architecturally significant resource matched."""

    def __init__(self, tag_key: str, tag_value: str, region: str) -> None:
        self.tag_key = tag_key
        self.tag_value = tag_value
        self.region = region
        super().__init__(
            f"No resources found with tag {tag_key}={tag_value} in {region}."
        )


class DiscoveryCancelled(TopologyError):
    """The caller abandoned the run; no partial result is returned."""


class EnrichmentConflictError(TopologyError):
    """Two dispatchers tried to write the same details key of one node."""


# ---------------------------------------------------------------------------
# Transport failures
# ---------------------------------------------------------------------------

class TransportError(TopologyError):
    """A signed request did not produce a usable payload."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class AuthError(TransportError):
    """The credentials were rejected or lack permission (401/403)."""


class RateLimitOrServerError(TransportError):
    """Throttling (429 or a throttling error code) or a 5xx response."""


class NetworkError(TransportError):
    """No response was received at all."""

    hint = (
        "Check that the AWS endpoint is reachable from this machine "
        "(proxy, firewall, DNS or VPC endpoint settings)."
    )


class RequestTimeoutError(NetworkError):
    """The request did not complete within its timeout."""


class MalformedResponseError(TransportError):
    """The response body could not be parsed."""


class ApiError(TransportError):
    """Any other client-side error response (404, validation errors, ...)."""
