"""
Discovery pipeline: tagging query -> enrichment -> topology inference.

``discover`` pages through the Resource Groups Tagging API and turns every
significant ARN into a :class:`~topology.model.Node`.  ``run_discovery``
chains discovery, the enrichment dispatchers and the topology builder into
one cancellable run.  Discovery failures are fatal; enrichment failures are
not.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from discovery.classifier import classify, extract_local_name, is_significant
from discovery.enrichment import DEFAULT_MAX_WORKERS, enrich_nodes
from discovery.errors import DiscoveryCancelled, EmptyResultError
from discovery.signer import RequestSigner
from discovery.transport import DEFAULT_TIMEOUT, Transport
from topology.builder import build_topology
from topology.model import ARN_KEY, ArchitectureResult, Credentials, Node, TagFilter

logger = logging.getLogger(__name__)

TAGGING_SERVICE = "tagging"
TAGGING_TARGET = "ResourceGroupsTaggingAPI_20170126.GetResources"
RESOURCES_PER_PAGE = 50


def _tags_to_dict(tag_list: list | None) -> dict[str, str]:
    tags: dict[str, str] = {}
    for tag in tag_list or []:
        key = tag.get("Key")
        if key:
            tags[key] = tag.get("Value") or ""
    return tags


def _node_from_mapping(mapping: dict, used_ids: set[str]) -> Node | None:
    arn = mapping.get("ResourceARN") or ""
    if not is_significant(arn):
        return None

    tags = _tags_to_dict(mapping.get("Tags"))
    local_name = extract_local_name(arn)
    node_id = local_name if local_name and local_name not in used_ids else arn
    label = tags.get("Name") or tags.get("name") or local_name or arn

    details: dict = dict(tags)
    details[ARN_KEY] = arn
    return Node(id=node_id, label=label, type=classify(arn), details=details)


def discover(
    credentials: Credentials,
    region: str,
    tag_filter: TagFilter,
    *,
    transport: Transport | None = None,
    page_size: int = RESOURCES_PER_PAGE,
) -> list[Node]:
    """Return the significant resources tagged ``tag_filter`` in *region*.

    Any transport failure aborts discovery and propagates to the caller.
    Raises :class:`EmptyResultError` when nothing significant matched.  A
    transport created here is closed before returning.
    """
    if transport is not None:
        return _collect_tagged(transport, region, tag_filter, page_size)

    transport = Transport(RequestSigner(credentials))
    try:
        return _collect_tagged(transport, region, tag_filter, page_size)
    finally:
        transport.close()


def _collect_tagged(
    transport: Transport,
    region: str,
    tag_filter: TagFilter,
    page_size: int,
) -> list[Node]:
    host = f"tagging.{region}.amazonaws.com"
    nodes: list[Node] = []
    used_ids: set[str] = set()
    seen_arns: set[str] = set()
    pagination_token: str | None = None
    pages = 0
    skipped = 0

    while True:
        payload: dict = {
            "TagFilters": [{"Key": tag_filter.key, "Values": [tag_filter.value]}],
            "ResourcesPerPage": page_size,
        }
        if pagination_token:
            payload["PaginationToken"] = pagination_token

        response = transport.call_json(
            region=region,
            service=TAGGING_SERVICE,
            host=host,
            target=TAGGING_TARGET,
            payload=payload,
        )
        pages += 1

        for mapping in response.get("ResourceTagMappingList") or []:
            arn = mapping.get("ResourceARN") or ""
            if arn in seen_arns:
                continue
            seen_arns.add(arn)
            node = _node_from_mapping(mapping, used_ids)
            if node is None:
                skipped += 1
                continue
            used_ids.add(node.id)
            nodes.append(node)

        pagination_token = response.get("PaginationToken")
        if not pagination_token:
            break

    logger.info(
        "discover completed for %s=%s in %s: %d nodes (%d filtered) over %d pages",
        tag_filter.key, tag_filter.value, region, len(nodes), skipped, pages,
    )
    if not nodes:
        raise EmptyResultError(tag_filter.key, tag_filter.value, region)
    return nodes


def run_discovery(
    credentials: Credentials,
    region: str,
    tag_filter: TagFilter,
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
    timeout: float | tuple[float, float] = DEFAULT_TIMEOUT,
    fallback: bool = True,
    cancel_event: threading.Event | None = None,
    on_progress: Callable[[str], None] | None = None,
    transport: Transport | None = None,
) -> ArchitectureResult:
    """Discover, enrich and connect the resources tagged ``tag_filter``.

    Parameters
    ----------
    credentials:
        Static access key pair; held only for this call.
    region:
        AWS region to query.
    tag_filter:
        The key/value pair resources must carry.
    max_workers:
        Upper bound on concurrent inspection requests.
    timeout:
        Per-request timeout, seconds or ``(connect, read)``.
    fallback:
        Whether to add generic heuristic edges for unconnected nodes.
    cancel_event:
        Setting this event abandons the run; :class:`DiscoveryCancelled`
        is raised and nothing is returned.
    on_progress:
        Optional callback receiving phase names.

    Returns
    -------
    ArchitectureResult
    """
    cancel_event = cancel_event or threading.Event()
    owns_transport = transport is None
    if transport is None:
        transport = Transport(
            RequestSigner(credentials), timeout=timeout, cancel_event=cancel_event,
        )

    def _checkpoint() -> None:
        if cancel_event.is_set():
            raise DiscoveryCancelled("Discovery was cancelled")

    try:
        if on_progress:
            on_progress("Discovering tagged resources")
        nodes = discover(credentials, region, tag_filter, transport=transport)
        _checkpoint()

        if on_progress:
            on_progress("Inspecting service configuration")
        enrich_nodes(
            nodes, transport, region,
            max_workers=max_workers, cancel_event=cancel_event,
        )
        _checkpoint()

        if on_progress:
            on_progress("Building topology")
        edges = build_topology(nodes, fallback=fallback)
    finally:
        if owns_transport:
            transport.close()

    logger.info("run_discovery complete: %d nodes, %d edges", len(nodes), len(edges))
    return ArchitectureResult(nodes=nodes, edges=edges)
