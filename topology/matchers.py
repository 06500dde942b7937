"""
Reference matching strategies.

A *reference* is any string recovered by deep inspection (an ARN, a function
name, an integration URI, a DNS name, an environment variable value).  The
cascade tries each strategy in ``MATCHERS`` order and stops at the first one
that matches at least one candidate node.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Callable, Iterable, List

from discovery.classifier import extract_local_name, parse_arn
from topology.model import Node

# Free-text references shorter than this are too ambiguous to match.
MIN_REFERENCE_LENGTH = 4

_INVOCATION_RE = re.compile(r"/functions/(.+?)/invocations$")
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_QUALIFIER_RE = re.compile(r":(\$LATEST|\d+)$")

_DOMAIN_SUFFIXES = tuple(re.compile(p) for p in (
    r"\.s3-website[.-][a-z0-9-]+\.amazonaws\.com$",
    r"\.s3(\.dualstack)?(\.[a-z0-9-]+)?\.amazonaws\.com$",
    r"\.execute-api\.[a-z0-9-]+\.amazonaws\.com$",
    r"\.([a-z0-9-]+\.)?elb\.amazonaws\.com$",
    r"\.[a-z0-9-]+\.rds\.amazonaws\.com$",
    r"\.cloudfront\.net$",
    r"\.lambda-url\.[a-z0-9-]+\.on\.aws$",
    r"\.amazonaws\.com$",
))


def _strip_domain(host: str) -> str:
    for pattern in _DOMAIN_SUFFIXES:
        stripped = pattern.sub("", host)
        if stripped != host:
            return stripped
    return host


def _arn_core_name(arn: str) -> str:
    parsed = parse_arn(arn)
    if parsed is None:
        return arn
    if parsed.service == "lambda" and parsed.resource.startswith("function:"):
        return parsed.resource.split(":")[1]
    if parsed.service == "sqs" or parsed.service == "sns":
        return parsed.resource
    return extract_local_name(arn)


def normalize(reference: str) -> str:
    """Reduce a reference to a bare, lower-cased resource name."""
    text = (reference or "").strip()
    if not text:
        return ""

    invocation = _INVOCATION_RE.search(text)
    if invocation:
        text = invocation.group(1)

    if _SCHEME_RE.match(text):
        text = _SCHEME_RE.sub("", text)
        host, _, path = text.partition("/")
        segments = [s for s in path.split("/") if s]
        # sqs.<region>.amazonaws.com/<account>/<queue>
        if host.startswith("sqs.") and segments:
            text = segments[-1]
        else:
            text = host.split(":", 1)[0]

    if text.startswith("arn:"):
        text = _arn_core_name(text)
    else:
        text = _strip_domain(text)

    text = _QUALIFIER_RE.sub("", text)
    return text.strip("/").lower()


@lru_cache(maxsize=4096)
def _aliases(arn: str, node_id: str, label: str) -> frozenset:
    names = {normalize(arn), normalize(node_id), normalize(label)}
    parsed = parse_arn(arn)
    if parsed is not None and parsed.service == "elasticloadbalancing":
        # loadbalancer/app/<name>/<hash>, targetgroup/<name>/<hash>
        segments = parsed.resource.split("/")
        if len(segments) >= 3:
            names.add(segments[-2].lower())
    names.discard("")
    return frozenset(names)


def node_aliases(node: Node) -> frozenset:
    return _aliases(node.arn, node.id, node.label)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def exact_match(reference: str, node: Node) -> bool:
    arn = node.arn
    return bool(arn) and reference == arn


def normalized_match(reference: str, node: Node) -> bool:
    key = normalize(reference)
    return bool(key) and key in node_aliases(node)


def containment_match(reference: str, node: Node) -> bool:
    ref = reference.strip().lower()
    if len(ref) < MIN_REFERENCE_LENGTH:
        return False
    for candidate in {node.id.lower(), *node_aliases(node)}:
        if len(candidate) < MIN_REFERENCE_LENGTH:
            continue
        if candidate in ref or ref in candidate:
            return True
    return False


Matcher = Callable[[str, Node], bool]

MATCHERS: tuple = (
    ("exact", exact_match),
    ("normalized", normalized_match),
    ("containment", containment_match),
)


def resolve(reference: str, candidates: Iterable[Node], matchers: tuple = MATCHERS) -> List[Node]:
    """Return the nodes matched by the first strategy that matches any."""
    pool = list(candidates)
    if not reference or not reference.strip():
        return []
    for _name, matcher in matchers:
        hits = [node for node in pool if matcher(reference, node)]
        if hits:
            return hits
    return []
