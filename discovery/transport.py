"""
Signed HTTP transport for the AWS query, JSON and REST-XML protocols.

Every call is signed with :class:`~discovery.signer.RequestSigner`, sent
through one ``requests.Session`` with an explicit timeout, and either parsed
(JSON or XML) or classified into the error taxonomy in
:mod:`discovery.errors`.  There are no retries here.
"""

from __future__ import annotations

import json
import logging
import threading
import urllib.parse
import xml.etree.ElementTree as ET
from typing import Any, Mapping

import requests

from discovery.errors import (
    ApiError,
    AuthError,
    DiscoveryCancelled,
    MalformedResponseError,
    NetworkError,
    RateLimitOrServerError,
    RequestTimeoutError,
)
from discovery.signer import RequestSigner, SigningRequest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = (5.0, 20.0)  # (connect, read) seconds

_THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestThrottled",
    "RequestThrottledException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ProvisionedThroughputExceededException",
    "SlowDown",
})


def strip_namespaces(root: ET.Element) -> ET.Element:
    """Drop ``{namespace}`` prefixes in place so callers can use bare tags."""
    for elem in root.iter():
        if isinstance(elem.tag, str) and elem.tag.startswith("{"):
            elem.tag = elem.tag.split("}", 1)[1]
    return root


def _error_code(body: str) -> str | None:
    """Best-effort extraction of the AWS error code from an error body."""
    if not body:
        return None
    text = body.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return None
        code = data.get("__type") or data.get("code") or data.get("Code")
        if isinstance(code, str):
            return code.rsplit("#", 1)[-1]
        return None
    if text.startswith("<"):
        try:
            root = strip_namespaces(ET.fromstring(text))
        except ET.ParseError:
            return None
        code = root.find(".//Code")
        if code is not None and code.text:
            return code.text.strip()
    return None


class Transport:
    """Sends signed requests for one set of credentials.

    ``cancel_event`` is shared with the pipeline: once it is set, new calls
    raise :class:`DiscoveryCancelled` instead of reaching the network.
    """

    def __init__(
        self,
        signer: RequestSigner,
        session: requests.Session | None = None,
        timeout: float | tuple[float, float] = DEFAULT_TIMEOUT,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._signer = signer
        self._session = session or requests.Session()
        self._timeout = timeout
        self._cancel_event = cancel_event or threading.Event()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Core send
    # ------------------------------------------------------------------

    def send(
        self,
        *,
        region: str,
        service: str,
        host: str,
        method: str = "GET",
        path: str = "/",
        query: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        body: str = "",
    ) -> requests.Response:
        """Sign and send; return the response or raise a TransportError."""
        if self._cancel_event.is_set():
            raise DiscoveryCancelled("Discovery was cancelled")

        signed = self._signer.sign(SigningRequest(
            region=region,
            service=service,
            host=host,
            method=method,
            path=path,
            query=dict(query or {}),
            headers=dict(headers or {}),
            body=body,
        ))
        send_headers = {k: v for k, v in signed.headers.items() if k != "Host"}
        url = signed.url
        if signed.query_string:
            url = f"{url}?{signed.query_string}"

        logger.debug("%s %s (service=%s)", method, url, service)
        try:
            resp = self._session.request(
                method,
                url,
                headers=send_headers,
                data=body.encode("utf-8") if body else None,
                timeout=self._timeout,
            )
        except requests.exceptions.Timeout as exc:
            raise RequestTimeoutError(f"{service} request to {host} timed out: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise NetworkError(f"{service} request to {host} failed: {exc}") from exc

        if resp.status_code >= 400:
            self._raise_for_status(service, resp)
        return resp

    @staticmethod
    def _raise_for_status(service: str, resp: requests.Response) -> None:
        text = resp.text or ""
        code = _error_code(text)
        status = resp.status_code
        message = f"{service} returned HTTP {status}"
        if code:
            message = f"{message} ({code})"
        detail = text[:200].strip()
        if detail:
            message = f"{message}: {detail}"

        if status in (401, 403):
            raise AuthError(message, status_code=status, error_code=code)
        if status == 429 or status >= 500 or (code in _THROTTLING_CODES):
            raise RateLimitOrServerError(message, status_code=status, error_code=code)
        raise ApiError(message, status_code=status, error_code=code)

    # ------------------------------------------------------------------
    # Protocol helpers
    # ------------------------------------------------------------------

    def call_json(
        self,
        *,
        region: str,
        service: str,
        host: str,
        target: str,
        payload: dict,
        json_version: str = "1.1",
    ) -> dict:
        """AWS JSON protocol: POST with ``X-Amz-Target``."""
        resp = self.send(
            region=region,
            service=service,
            host=host,
            method="POST",
            path="/",
            headers={
                "Content-Type": f"application/x-amz-json-{json_version}",
                "X-Amz-Target": target,
            },
            body=json.dumps(payload, separators=(",", ":")),
        )
        return self._parse_json(service, resp)

    def get_json(
        self,
        *,
        region: str,
        service: str,
        host: str,
        path: str,
        query: Mapping[str, str] | None = None,
    ) -> dict:
        """REST-JSON GET (Lambda, API Gateway)."""
        resp = self.send(
            region=region,
            service=service,
            host=host,
            method="GET",
            path=path,
            query=query,
            headers={"Accept": "application/json"},
        )
        return self._parse_json(service, resp)

    def call_query(
        self,
        *,
        region: str,
        service: str,
        host: str,
        action: str,
        version: str,
        params: Mapping[str, str] | None = None,
    ) -> ET.Element:
        """AWS query protocol: form-encoded POST, XML response."""
        form = {"Action": action, "Version": version, **(params or {})}
        resp = self.send(
            region=region,
            service=service,
            host=host,
            method="POST",
            path="/",
            headers={"Content-Type": "application/x-www-form-urlencoded; charset=utf-8"},
            body=urllib.parse.urlencode(form),
        )
        return self._parse_xml(service, resp)

    def get_xml(
        self,
        *,
        region: str,
        service: str,
        host: str,
        path: str,
    ) -> ET.Element:
        """REST-XML GET (CloudFront)."""
        resp = self.send(region=region, service=service, host=host, method="GET", path=path)
        return self._parse_xml(service, resp)

    @staticmethod
    def _parse_json(service: str, resp: requests.Response) -> dict:
        if not resp.content:
            return {}
        try:
            data: Any = resp.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"{service} returned a body that is not JSON", status_code=resp.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"{service} returned JSON that is not an object", status_code=resp.status_code,
            )
        return data

    @staticmethod
    def _parse_xml(service: str, resp: requests.Response) -> ET.Element:
        try:
            root = ET.fromstring(resp.content)
        except ET.ParseError as exc:
            raise MalformedResponseError(
                f"{service} returned a body that is not XML", status_code=resp.status_code,
            ) from exc
        return strip_namespaces(root)
