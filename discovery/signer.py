"""
AWS Signature Version 4 request signing.

Produces the complete header set for an outbound request: the caller's
headers plus ``Host``, ``X-Amz-Date`` (and ``X-Amz-Security-Token`` when a
session token is present) and the ``Authorization`` header.  The SigV4
algorithm itself is botocore's ``SigV4Auth``; this module owns the request
shape, the input checks and the clock, which is injectable so a fixed
timestamp yields byte-identical output.
"""

from __future__ import annotations

import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Mapping

from botocore.auth import SIGV4_TIMESTAMP, SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import ReadOnlyCredentials

from discovery.errors import ConfigurationError
from topology.model import Credentials

ALGORITHM = "AWS4-HMAC-SHA256"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SigningRequest:
    """Everything needed to sign one HTTP request."""

    region: str
    service: str
    host: str
    method: str = "GET"
    path: str = "/"
    query: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str | bytes = ""

    @property
    def url(self) -> str:
        """The URL to send, path percent-encoded once, without the query."""
        return f"https://{self.host}{urllib.parse.quote(self.path or '/', safe='/-_.~')}"


@dataclass
class SignedRequest:
    url: str
    headers: dict[str, str]
    canonical_request: str
    string_to_sign: str
    signed_headers: list[str]
    signature: str
    query_string: str


class RequestSigner:
    """SigV4 signer bound to one credential pair.

    ``clock`` returns an aware ``datetime``; tests pass a fixed one.
    ``SigV4Auth.add_auth`` reads the system clock itself, so :meth:`sign`
    drives the same botocore steps with the timestamp taken from ``clock``.
    """

    def __init__(
        self,
        credentials: Credentials,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not credentials.access_key or not credentials.secret_key:
            raise ConfigurationError("AWS access key and secret key are required")
        self._credentials = ReadOnlyCredentials(
            credentials.access_key,
            credentials.secret_key,
            credentials.session_token or None,
        )
        self._clock = clock

    def sign(self, request: SigningRequest) -> SignedRequest:
        for name in ("region", "service", "host", "method"):
            if not getattr(request, name):
                raise ConfigurationError(f"Cannot sign a request without a {name}")

        body = request.body
        if isinstance(body, str):
            body = body.encode("utf-8")

        aws_request = AWSRequest(
            method=request.method.upper(),
            url=request.url,
            headers=dict(request.headers),
            data=body or None,
            params=dict(request.query),
        )
        amz_date = self._clock().astimezone(timezone.utc).strftime(SIGV4_TIMESTAMP)
        aws_request.context["timestamp"] = amz_date
        aws_request.headers["Host"] = request.host
        aws_request.headers["X-Amz-Date"] = amz_date
        if self._credentials.token:
            aws_request.headers["X-Amz-Security-Token"] = self._credentials.token

        auth = SigV4Auth(self._credentials, request.service, request.region)
        to_sign = auth.headers_to_sign(aws_request)
        signed_headers = auth.signed_headers(to_sign)
        canonical_request = auth.canonical_request(aws_request)
        string_to_sign = auth.string_to_sign(aws_request, canonical_request)
        signature = auth.signature(string_to_sign, aws_request)

        aws_request.headers["Authorization"] = (
            f"{ALGORITHM} Credential={auth.scope(aws_request)}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

        return SignedRequest(
            url=request.url,
            headers=dict(aws_request.headers.items()),
            canonical_request=canonical_request,
            string_to_sign=string_to_sign,
            signed_headers=signed_headers.split(";"),
            signature=signature,
            query_string=auth.canonical_query_string(aws_request),
        )
