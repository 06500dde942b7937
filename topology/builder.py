"""
Topology inference.

Turns enrichment metadata into a deduplicated, directed edge set.  Edges
derived from metadata are "verified"; generic fallback edges are only added
for nodes that ended up with no verified edge at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

from discovery import classifier
from topology.matchers import MIN_REFERENCE_LENGTH, resolve
from topology.model import (
    ENV_VARS_KEY,
    INTEGRATIONS_KEY,
    ORIGINS_KEY,
    PROTECTED_RESOURCES_KEY,
    ROUTES_KEY,
    SUBSCRIPTIONS_KEY,
    TARGET_GROUPS_KEY,
    TARGETS_KEY,
    TASK_RESOURCES_KEY,
    TRIGGERS_KEY,
    WEB_ACL_KEY,
    Edge,
    Node,
)

logger = logging.getLogger(__name__)

VERIFIED = "verified"
INFERRED = "inferred"


# ---------------------------------------------------------------------------
# Edge buffer
# ---------------------------------------------------------------------------

class EdgeSet:
    """Ordered edge buffer keyed by ``(source, target)``.

    Drops self-loops, edges to unknown nodes, and every edge after the first
    for a given ordered pair.
    """

    def __init__(self, node_ids: Iterable[str]) -> None:
        self._node_ids = set(node_ids)
        self._edges: dict[tuple[str, str], Edge] = {}
        self._connected: set[str] = set()

    def add(
        self,
        source: str,
        target: str,
        label: Optional[str] = None,
        style: Optional[str] = VERIFIED,
    ) -> bool:
        if source == target:
            return False
        if source not in self._node_ids or target not in self._node_ids:
            return False
        pair = (source, target)
        if pair in self._edges:
            return False
        self._edges[pair] = Edge(
            id=Edge.make_id(source, target),
            source=source,
            target=target,
            label=label or None,
            style=style,
        )
        if style == VERIFIED:
            self._connected.update(pair)
        return True

    def has_verified_edge(self, node_id: str) -> bool:
        return node_id in self._connected

    @property
    def edges(self) -> List[Edge]:
        return list(self._edges.values())

    def __len__(self) -> int:
        return len(self._edges)


# ---------------------------------------------------------------------------
# Relationship rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RelationshipRule:
    """Which details key of which node type yields edges, and how.

    ``label=None`` means the map key (e.g. the environment variable name)
    labels the edge.  ``free_text`` references are skipped below
    ``MIN_REFERENCE_LENGTH``.
    """

    node_type: str
    key: str
    label: Optional[str]
    outgoing: bool = True
    kind: str = "list"  # "list" | "map" | "text"
    free_text: bool = False


RELATIONSHIP_RULES: tuple = (
    RelationshipRule(classifier.LAMBDA, TRIGGERS_KEY, "Trigger", outgoing=False),
    RelationshipRule(classifier.LAMBDA, ENV_VARS_KEY, None, kind="map", free_text=True),
    RelationshipRule(classifier.API_GATEWAY, INTEGRATIONS_KEY, "Invokes"),
    RelationshipRule(classifier.API_GATEWAY, ROUTES_KEY, "Invokes", kind="map"),
    RelationshipRule(classifier.LOAD_BALANCER, TARGET_GROUPS_KEY, "Forwards"),
    RelationshipRule(classifier.LOAD_BALANCER, TARGETS_KEY, "Routes"),
    RelationshipRule(classifier.STATES, TASK_RESOURCES_KEY, "Invokes"),
    RelationshipRule(classifier.SNS, SUBSCRIPTIONS_KEY, "Publishes"),
    RelationshipRule(classifier.WAF, PROTECTED_RESOURCES_KEY, "Protects"),
    RelationshipRule(classifier.CLOUDFRONT, ORIGINS_KEY, "Origin"),
    RelationshipRule(classifier.CLOUDFRONT, WEB_ACL_KEY, "Protects", outgoing=False, kind="text"),
)


def _references(node: Node, rule: RelationshipRule) -> Iterator[tuple[Optional[str], str]]:
    """Yield ``(label, reference)`` pairs for *rule* on *node*."""
    if rule.key not in node.details:
        return
    if rule.kind == "map":
        for name, value in node.detail_map(rule.key).items():
            yield (rule.label or name), value
    elif rule.kind == "text":
        value = node.detail_text(rule.key)
        if value:
            yield rule.label, value
    else:
        for value in node.detail_list(rule.key):
            yield rule.label, value


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def build_topology(nodes: List[Node], *, fallback: bool = True) -> List[Edge]:
    """Infer the edge set for an enriched node list.

    Never mutates *nodes*.  Calling it twice on the same input returns equal
    edge lists.
    """
    edge_set = EdgeSet(n.id for n in nodes)

    for node in nodes:
        others = [n for n in nodes if n.id != node.id]
        for rule in RELATIONSHIP_RULES:
            if node.type != rule.node_type:
                continue
            for label, reference in _references(node, rule):
                reference = str(reference)
                if rule.free_text and len(reference.strip()) < MIN_REFERENCE_LENGTH:
                    continue
                for match in resolve(reference, others):
                    if rule.outgoing:
                        edge_set.add(node.id, match.id, label)
                    else:
                        edge_set.add(match.id, node.id, label)

    verified = len(edge_set)
    if fallback:
        _add_fallback_edges(nodes, edge_set)

    logger.info(
        "build_topology: %d verified edges, %d inferred edges",
        verified, len(edge_set) - verified,
    )
    return edge_set.edges


def _add_fallback_edges(nodes: List[Node], edge_set: EdgeSet) -> None:
    """Generic shapes for nodes deep inspection could not connect."""
    by_type: dict[str, List[Node]] = {}
    for node in nodes:
        by_type.setdefault(node.type, []).append(node)

    instances = by_type.get(classifier.EC2, [])
    functions = by_type.get(classifier.LAMBDA, [])
    databases = [n for n in nodes if n.type in classifier.DATABASE_TYPES]

    # Load balancer -> compute instances
    for lb in by_type.get(classifier.LOAD_BALANCER, []):
        if edge_set.has_verified_edge(lb.id):
            continue
        for instance in instances:
            edge_set.add(lb.id, instance.id, style=INFERRED)

    # Gateway -> functions
    for api in by_type.get(classifier.API_GATEWAY, []):
        if edge_set.has_verified_edge(api.id):
            continue
        for function in functions:
            edge_set.add(api.id, function.id, style=INFERRED)

    # Compute -> data
    for compute in instances + functions:
        if edge_set.has_verified_edge(compute.id):
            continue
        for database in databases:
            edge_set.add(compute.id, database.id, style=INFERRED)
