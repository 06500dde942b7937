"""
Deep inspection of discovered resources.

One dispatcher per service family.  Each dispatcher owns a fixed set of
reserved ``details`` keys and a list of inspection steps; a step issues one
or more signed calls for a single node and returns the keys it recovered.
All (dispatcher, node) inspections run concurrently in a bounded thread
pool.  Their results are collected as patches and merged into the nodes in
one sequential pass after every inspection has finished.

A failed step (auth, network, timeout, 404, malformed or unexpected body) is
logged and contributes nothing; the other steps and nodes are unaffected.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Mapping

from discovery import classifier
from discovery.classifier import parse_arn
from discovery.errors import DiscoveryCancelled, EnrichmentConflictError, TransportError
from discovery.transport import Transport
from discovery.workflow import extract_task_resources
from topology.model import (
    ENV_VARS_KEY,
    INTEGRATIONS_KEY,
    ORIGINS_KEY,
    PROTECTED_RESOURCES_KEY,
    ROUTES_KEY,
    RUNTIME_KEY,
    SUBSCRIPTION_PROTOCOLS_KEY,
    SUBSCRIPTIONS_KEY,
    TARGET_GROUPS_KEY,
    TARGETS_KEY,
    TASK_RESOURCES_KEY,
    TRIGGERS_KEY,
    WEB_ACL_KEY,
    DetailValue,
    Node,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8

LAMBDA_API_VERSION = "2015-03-31"
ELBV2_API_VERSION = "2015-12-01"
SNS_API_VERSION = "2010-03-31"
CLOUDFRONT_API_VERSION = "2020-05-31"

# Resource types a regional web ACL can be associated with.
WAF_RESOURCE_TYPES = (
    "APPLICATION_LOAD_BALANCER",
    "API_GATEWAY",
    "APPSYNC",
    "COGNITO_USER_POOL",
    "APP_RUNNER_SERVICE",
    "VERIFIED_ACCESS_INSTANCE",
)

NodePatch = Dict[str, DetailValue]
Patch = Dict[str, NodePatch]  # node id -> keys to add
Step = Callable[[Transport, Node, str], NodePatch]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _resource_path(node: Node) -> str:
    parsed = parse_arn(node.arn)
    return parsed.resource if parsed else ""


def _function_name_and_qualifier(node: Node) -> tuple[str, str | None]:
    """``function:name[:qualifier]`` -> ``(name, qualifier)``."""
    parts = _resource_path(node).split(":")
    if len(parts) >= 2 and parts[0] == "function":
        qualifier = parts[2] if len(parts) >= 3 and parts[2] else None
        return parts[1], qualifier
    return node.id, None


def _xml_texts(root, path: str) -> list[str]:
    return [el.text.strip() for el in root.findall(path) if el.text and el.text.strip()]


# ---------------------------------------------------------------------------
# function-compute (Lambda)
# ---------------------------------------------------------------------------

def inspect_lambda_configuration(transport: Transport, node: Node, region: str) -> NodePatch:
    """Runtime and environment variables from GetFunctionConfiguration."""
    name, qualifier = _function_name_and_qualifier(node)
    data = transport.get_json(
        region=region,
        service="lambda",
        host=f"lambda.{region}.amazonaws.com",
        path=f"/{LAMBDA_API_VERSION}/functions/{name}/configuration",
        query={"Qualifier": qualifier} if qualifier else None,
    )
    patch: NodePatch = {}
    if data.get("Runtime"):
        patch[RUNTIME_KEY] = str(data["Runtime"])
    variables = (data.get("Environment") or {}).get("Variables") or {}
    if variables:
        patch[ENV_VARS_KEY] = {str(k): str(v) for k, v in variables.items()}
    return patch


def inspect_lambda_triggers(transport: Transport, node: Node, region: str) -> NodePatch:
    """Event source ARNs from ListEventSourceMappings."""
    name, _ = _function_name_and_qualifier(node)
    sources: list[str] = []
    marker: str | None = None

    while True:
        query = {"FunctionName": name}
        if marker:
            query["Marker"] = marker
        data = transport.get_json(
            region=region,
            service="lambda",
            host=f"lambda.{region}.amazonaws.com",
            path=f"/{LAMBDA_API_VERSION}/event-source-mappings",
            query=query,
        )
        for mapping in data.get("EventSourceMappings") or []:
            source = mapping.get("EventSourceArn")
            if source and source not in sources:
                sources.append(source)
        marker = data.get("NextMarker")
        if not marker:
            break

    return {TRIGGERS_KEY: sources} if sources else {}


# ---------------------------------------------------------------------------
# routing / gateway (API Gateway v1 REST and v2 HTTP/WebSocket)
# ---------------------------------------------------------------------------

def _rest_api_integrations(transport: Transport, api_id: str, region: str) -> NodePatch:
    integrations: list[str] = []
    routes: dict[str, str] = {}
    position: str | None = None

    while True:
        query = {"embed": "methods", "limit": "500"}
        if position:
            query["position"] = position
        data = transport.get_json(
            region=region,
            service="apigateway",
            host=f"apigateway.{region}.amazonaws.com",
            path=f"/restapis/{api_id}/resources",
            query=query,
        )
        for resource in data.get("item") or data.get("items") or []:
            path = resource.get("path", "")
            for method, method_data in (resource.get("resourceMethods") or {}).items():
                integration = (method_data or {}).get("methodIntegration") or {}
                uri = integration.get("uri")
                if not uri:
                    continue
                routes[f"{method} {path}"] = uri
                if uri not in integrations:
                    integrations.append(uri)
        position = data.get("position")
        if not position:
            break

    patch: NodePatch = {}
    if integrations:
        patch[INTEGRATIONS_KEY] = integrations
        patch[ROUTES_KEY] = routes
    return patch


def _http_api_integrations(transport: Transport, api_id: str, region: str) -> NodePatch:
    host = f"apigateway.{region}.amazonaws.com"

    def _paged(path: str) -> list[dict]:
        items: list[dict] = []
        next_token: str | None = None
        while True:
            data = transport.get_json(
                region=region,
                service="apigateway",
                host=host,
                path=path,
                query={"nextToken": next_token} if next_token else None,
            )
            items.extend(data.get("items") or data.get("Items") or [])
            next_token = data.get("nextToken") or data.get("NextToken")
            if not next_token:
                return items

    by_id: dict[str, str] = {}
    for item in _paged(f"/v2/apis/{api_id}/integrations"):
        integration_id = item.get("integrationId") or item.get("IntegrationId")
        uri = item.get("integrationUri") or item.get("IntegrationUri")
        if integration_id and uri:
            by_id[integration_id] = uri

    routes: dict[str, str] = {}
    for item in _paged(f"/v2/apis/{api_id}/routes"):
        route_key = item.get("routeKey") or item.get("RouteKey")
        target = item.get("target") or item.get("Target") or ""
        integration_id = target.rsplit("/", 1)[-1]
        if route_key and integration_id in by_id:
            routes[route_key] = by_id[integration_id]

    patch: NodePatch = {}
    integrations = list(dict.fromkeys(by_id.values()))
    if integrations:
        patch[INTEGRATIONS_KEY] = integrations
    if routes:
        patch[ROUTES_KEY] = routes
    return patch


def inspect_gateway_integrations(transport: Transport, node: Node, region: str) -> NodePatch:
    """Route -> integration target bindings for either API generation."""
    segments = [s for s in _resource_path(node).split("/") if s]
    if len(segments) < 2:
        return {}
    kind, api_id = segments[0], segments[1]
    if kind == "restapis":
        return _rest_api_integrations(transport, api_id, region)
    if kind == "apis":
        return _http_api_integrations(transport, api_id, region)
    return {}


# ---------------------------------------------------------------------------
# load-balancing (ELBv2)
# ---------------------------------------------------------------------------

def inspect_load_balancer_targets(transport: Transport, node: Node, region: str) -> NodePatch:
    """Load balancer -> target groups -> registered targets (two chained calls)."""
    host = f"elasticloadbalancing.{region}.amazonaws.com"
    group_arns: list[str] = []
    marker: str | None = None

    while True:
        params = {"LoadBalancerArn": node.arn}
        if marker:
            params["Marker"] = marker
        root = transport.call_query(
            region=region,
            service="elasticloadbalancing",
            host=host,
            action="DescribeTargetGroups",
            version=ELBV2_API_VERSION,
            params=params,
        )
        for arn in _xml_texts(root, ".//TargetGroups/member/TargetGroupArn"):
            if arn not in group_arns:
                group_arns.append(arn)
        next_marker = root.find(".//NextMarker")
        marker = next_marker.text.strip() if next_marker is not None and next_marker.text else None
        if not marker:
            break

    targets: list[str] = []
    for group_arn in group_arns:
        try:
            root = transport.call_query(
                region=region,
                service="elasticloadbalancing",
                host=host,
                action="DescribeTargetHealth",
                version=ELBV2_API_VERSION,
                params={"TargetGroupArn": group_arn},
            )
        except TransportError as exc:
            logger.warning("DescribeTargetHealth failed for %s: %s", group_arn, exc)
            continue
        for target_id in _xml_texts(root, ".//TargetHealthDescriptions/member/Target/Id"):
            if target_id not in targets:
                targets.append(target_id)

    patch: NodePatch = {}
    if group_arns:
        patch[TARGET_GROUPS_KEY] = group_arns
    if targets:
        patch[TARGETS_KEY] = targets
    return patch


# ---------------------------------------------------------------------------
# workflow (Step Functions)
# ---------------------------------------------------------------------------

def inspect_state_machine(transport: Transport, node: Node, region: str) -> NodePatch:
    """Every task resource referenced by the state machine definition."""
    data = transport.call_json(
        region=region,
        service="states",
        host=f"states.{region}.amazonaws.com",
        target="AWSStepFunctions.DescribeStateMachine",
        payload={"stateMachineArn": node.arn},
        json_version="1.0",
    )
    resources = extract_task_resources(data.get("definition") or "")
    return {TASK_RESOURCES_KEY: resources} if resources else {}


# ---------------------------------------------------------------------------
# pub-sub (SNS)
# ---------------------------------------------------------------------------

def inspect_topic_subscriptions(transport: Transport, node: Node, region: str) -> NodePatch:
    endpoints: list[str] = []
    protocols: dict[str, str] = {}
    next_token: str | None = None

    while True:
        params = {"TopicArn": node.arn}
        if next_token:
            params["NextToken"] = next_token
        root = transport.call_query(
            region=region,
            service="sns",
            host=f"sns.{region}.amazonaws.com",
            action="ListSubscriptionsByTopic",
            version=SNS_API_VERSION,
            params=params,
        )
        for member in root.findall(".//Subscriptions/member"):
            endpoint = (member.findtext("Endpoint") or "").strip()
            if not endpoint:
                continue
            if endpoint not in endpoints:
                endpoints.append(endpoint)
            protocols[endpoint] = (member.findtext("Protocol") or "").strip()
        next_token = (root.findtext(".//NextToken") or "").strip() or None
        if not next_token:
            break

    patch: NodePatch = {}
    if endpoints:
        patch[SUBSCRIPTIONS_KEY] = endpoints
        patch[SUBSCRIPTION_PROTOCOLS_KEY] = protocols
    return patch


# ---------------------------------------------------------------------------
# web-application-firewall (WAFv2)
# ---------------------------------------------------------------------------

def inspect_web_acl(transport: Transport, node: Node, region: str) -> NodePatch:
    """Resources protected by a regional web ACL, one query per resource type.

    CloudFront-scoped ACLs (``global/webacl/...``) cannot be listed this way;
    their bindings come from the distribution side instead.
    """
    if _resource_path(node).startswith("global/"):
        return {}

    protected: list[str] = []
    for resource_type in WAF_RESOURCE_TYPES:
        try:
            data = transport.call_json(
                region=region,
                service="wafv2",
                host=f"wafv2.{region}.amazonaws.com",
                target="AWSWAF_20190729.ListResourcesForWebACL",
                payload={"WebACLArn": node.arn, "ResourceType": resource_type},
            )
        except TransportError as exc:
            logger.warning(
                "ListResourcesForWebACL(%s) failed for %s: %s", resource_type, node.id, exc,
            )
            continue
        for arn in data.get("ResourceArns") or []:
            if arn not in protected:
                protected.append(arn)

    return {PROTECTED_RESOURCES_KEY: protected} if protected else {}


# ---------------------------------------------------------------------------
# content-delivery (CloudFront)
# ---------------------------------------------------------------------------

def inspect_distribution(transport: Transport, node: Node, region: str) -> NodePatch:
    """Origin domains and the attached web ACL.  CloudFront is global."""
    distribution_id = node.arn.rsplit("/", 1)[-1] if node.arn else node.id
    root = transport.get_xml(
        region="us-east-1",
        service="cloudfront",
        host="cloudfront.amazonaws.com",
        path=f"/{CLOUDFRONT_API_VERSION}/distribution/{distribution_id}/config",
    )
    origins = list(dict.fromkeys(_xml_texts(root, ".//Origins/Items/Origin/DomainName")))
    web_acl = (root.findtext(".//WebACLId") or "").strip()

    patch: NodePatch = {}
    if origins:
        patch[ORIGINS_KEY] = origins
    if web_acl:
        patch[WEB_ACL_KEY] = web_acl
    return patch


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Dispatcher:
    name: str
    node_type: str
    keys: frozenset
    steps: tuple

    def owns(self, node: Node) -> bool:
        return node.type == self.node_type


DISPATCHERS: tuple[Dispatcher, ...] = (
    Dispatcher(
        name="lambda",
        node_type=classifier.LAMBDA,
        keys=frozenset({RUNTIME_KEY, ENV_VARS_KEY, TRIGGERS_KEY}),
        steps=(inspect_lambda_configuration, inspect_lambda_triggers),
    ),
    Dispatcher(
        name="apigateway",
        node_type=classifier.API_GATEWAY,
        keys=frozenset({INTEGRATIONS_KEY, ROUTES_KEY}),
        steps=(inspect_gateway_integrations,),
    ),
    Dispatcher(
        name="elbv2",
        node_type=classifier.LOAD_BALANCER,
        keys=frozenset({TARGET_GROUPS_KEY, TARGETS_KEY}),
        steps=(inspect_load_balancer_targets,),
    ),
    Dispatcher(
        name="states",
        node_type=classifier.STATES,
        keys=frozenset({TASK_RESOURCES_KEY}),
        steps=(inspect_state_machine,),
    ),
    Dispatcher(
        name="sns",
        node_type=classifier.SNS,
        keys=frozenset({SUBSCRIPTIONS_KEY, SUBSCRIPTION_PROTOCOLS_KEY}),
        steps=(inspect_topic_subscriptions,),
    ),
    Dispatcher(
        name="wafv2",
        node_type=classifier.WAF,
        keys=frozenset({PROTECTED_RESOURCES_KEY}),
        steps=(inspect_web_acl,),
    ),
    Dispatcher(
        name="cloudfront",
        node_type=classifier.CLOUDFRONT,
        keys=frozenset({ORIGINS_KEY, WEB_ACL_KEY}),
        steps=(inspect_distribution,),
    ),
)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

def inspect_node(
    dispatcher: Dispatcher,
    node: Node,
    transport: Transport,
    region: str,
    cancel_event: threading.Event | None = None,
) -> NodePatch:
    """Run every step of *dispatcher* for *node*; failed steps add nothing."""
    patch: NodePatch = {}
    for step in dispatcher.steps:
        if cancel_event is not None and cancel_event.is_set():
            raise DiscoveryCancelled("Discovery was cancelled")
        try:
            values = step(transport, node, region)
        except TransportError as exc:
            logger.warning("%s failed for %s: %s", step.__name__, node.id, exc)
            continue
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            # well-formed JSON/XML with an unexpected shape
            logger.warning(
                "%s got an unexpected response for %s: %s: %s",
                step.__name__, node.id, type(exc).__name__, exc,
            )
            continue
        stray = set(values) - dispatcher.keys
        if stray:
            raise EnrichmentConflictError(
                f"{dispatcher.name} wrote keys it does not own: {sorted(stray)}"
            )
        patch.update(values)
    return patch


def collect_patches(
    nodes: Iterable[Node],
    transport: Transport,
    region: str,
    *,
    dispatchers: tuple[Dispatcher, ...] = DISPATCHERS,
    max_workers: int = DEFAULT_MAX_WORKERS,
    cancel_event: threading.Event | None = None,
) -> dict[str, Patch]:
    """Inspect every owned node concurrently; return ``dispatcher -> patch``."""
    tasks = [(d, n) for d in dispatchers for n in nodes if d.owns(n)]
    patches: dict[str, Patch] = {d.name: {} for d in dispatchers}
    if not tasks:
        return patches

    workers = max(1, min(max_workers, len(tasks)))
    logger.info("Inspecting %d resources with %d workers", len(tasks), workers)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {
            pool.submit(inspect_node, d, n, transport, region, cancel_event): (d, n)
            for d, n in tasks
        }
        try:
            for future in as_completed(futures):
                dispatcher, node = futures[future]
                node_patch = future.result()
                if node_patch:
                    patches[dispatcher.name][node.id] = node_patch
        except DiscoveryCancelled:
            pool.shutdown(wait=False, cancel_futures=True)
            raise

    return patches


def merge_patches(nodes: Iterable[Node], patches: Mapping[str, Patch]) -> None:
    """Apply patches in dispatcher order.  Keys are only ever added."""
    by_id = {n.id: n for n in nodes}
    owners: dict[tuple[str, str], str] = {}

    for dispatcher_name, patch in patches.items():
        for node_id, values in patch.items():
            node = by_id.get(node_id)
            if node is None:
                logger.warning("Patch from %s targets unknown node %s", dispatcher_name, node_id)
                continue
            for key, value in values.items():
                owner = owners.get((node_id, key))
                if owner is not None and owner != dispatcher_name:
                    raise EnrichmentConflictError(
                        f"{dispatcher_name} and {owner} both wrote {node_id}.details[{key}]"
                    )
                owners[(node_id, key)] = dispatcher_name
                if key in node.details:
                    logger.debug("Enrichment key %s overrides a tag on %s", key, node_id)
                node.details[key] = value


def enrich_nodes(
    nodes: list[Node],
    transport: Transport,
    region: str,
    *,
    dispatchers: tuple[Dispatcher, ...] = DISPATCHERS,
    max_workers: int = DEFAULT_MAX_WORKERS,
    cancel_event: threading.Event | None = None,
) -> list[Node]:
    """Best-effort deep inspection; returns *nodes* with details added."""
    patches = collect_patches(
        nodes, transport, region,
        dispatchers=dispatchers, max_workers=max_workers, cancel_event=cancel_event,
    )
    merge_patches(nodes, patches)
    enriched = sum(len(p) for p in patches.values())
    logger.info("enrich_nodes completed: %d of %d nodes enriched", enriched, len(nodes))
    return nodes
