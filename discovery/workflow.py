"""
Task-resource extraction from Step Functions (Amazon States Language)
definitions.

Two complementary passes:

1. a structural visitor over the parsed JSON that applies a rule table keyed
   by field name (``Resource`` and the invocation parameters nested under
   ``Parameters`` / ``Arguments``);
2. a textual scan for embedded ARNs, which catches references hidden inside
   string-typed fields (intrinsic functions, JSONata expressions, ...).
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)

# Service integrations are ``arn:aws:states:::service:action[.pattern]``; the
# resource that is actually touched lives in the task parameters.
SERVICE_INTEGRATION_PREFIX = "arn:aws:states:::"

ARN_PATTERN = re.compile(r"arn:aws[a-z-]*:[a-z0-9-]+:[a-z0-9-]*:\d*:[^\"'\s,}\]\\]+")

# Parameter fields that hold a reference to another resource.  Keys ending in
# ``.$`` are JSONPath expressions evaluated at runtime, so they are skipped.
PARAMETER_REFERENCE_FIELDS = frozenset({
    "FunctionName",
    "TopicArn",
    "QueueUrl",
    "TableName",
    "StateMachineArn",
    "Cluster",
    "TaskDefinition",
    "Bucket",
    "JobName",
    "ApiEndpoint",
    "EventBusName",
    "StreamName",
    "DeliveryStreamName",
})

PARAMETER_CONTAINERS = frozenset({"Parameters", "Arguments"})


def _visit_resource(value: Any) -> Iterator[str]:
    if isinstance(value, str) and value and not value.startswith(SERVICE_INTEGRATION_PREFIX):
        yield value


def _visit_parameters(value: Any) -> Iterator[str]:
    if not isinstance(value, dict):
        return
    for key, item in value.items():
        if key in PARAMETER_REFERENCE_FIELDS and isinstance(item, str) and item:
            yield item
        elif isinstance(item, (dict, list)):
            # nested payloads may carry their own parameter blocks
            for ref in walk(item):
                yield ref


# Field name -> extractor of reference strings from that field's value.
EXTRACTION_RULES: dict[str, Callable[[Any], Iterator[str]]] = {
    "Resource": _visit_resource,
    "Parameters": _visit_parameters,
    "Arguments": _visit_parameters,
}


def walk(value: Any, rules: dict[str, Callable[[Any], Iterator[str]]] | None = None) -> Iterator[str]:
    """Yield every reference found by *rules* anywhere under *value*."""
    rules = EXTRACTION_RULES if rules is None else rules
    if isinstance(value, dict):
        for key, item in value.items():
            rule = rules.get(key)
            if rule is not None:
                yield from rule(item)
                if key in PARAMETER_CONTAINERS:
                    continue
            if isinstance(item, (dict, list)):
                yield from walk(item, rules)
    elif isinstance(value, list):
        for item in value:
            yield from walk(item, rules)


def scan_arns(text: str) -> list[str]:
    return [m.group(0) for m in ARN_PATTERN.finditer(text or "")]


def extract_task_resources(definition: str) -> list[str]:
    """Return the de-duplicated references found in a definition string.

    Order is structural matches first, then textual matches, each in
    document order.
    """
    found: list[str] = []
    seen: set[str] = set()

    def _add(ref: str) -> None:
        ref = ref.strip()
        if ref and ref not in seen and not ref.startswith(SERVICE_INTEGRATION_PREFIX):
            seen.add(ref)
            found.append(ref)

    try:
        parsed = json.loads(definition)
    except (json.JSONDecodeError, TypeError):
        logger.debug("State machine definition is not valid JSON; using text scan only")
        parsed = None

    if parsed is not None:
        for ref in walk(parsed):
            _add(ref)
    for ref in scan_arns(definition):
        _add(ref)
    return found
