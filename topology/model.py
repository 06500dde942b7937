"""
Data model shared by discovery, enrichment and topology inference.

``Node.details`` holds a tagged variant per key: a plain string, a list of
strings, or a string-to-string mapping.  Node sets produced by other tools
may carry the list/map variants JSON-encoded inside strings; the accessors
accept both and treat malformed JSON as empty.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DetailValue = Union[str, List[str], Dict[str, str]]

# Reserved details keys.  ``arn`` is written by discovery, the rest by the
# enrichment dispatchers (one owner per key).
ARN_KEY = "arn"
RUNTIME_KEY = "runtime"
ENV_VARS_KEY = "envVars"
TRIGGERS_KEY = "triggers"
INTEGRATIONS_KEY = "integrations"
ROUTES_KEY = "routes"
TARGET_GROUPS_KEY = "targetGroups"
TARGETS_KEY = "targets"
TASK_RESOURCES_KEY = "taskResources"
SUBSCRIPTIONS_KEY = "subscriptions"
SUBSCRIPTION_PROTOCOLS_KEY = "subscriptionProtocols"
PROTECTED_RESOURCES_KEY = "protectedResources"
ORIGINS_KEY = "origins"
WEB_ACL_KEY = "webAcl"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Credentials:
    """Static, long-lived access key pair.  Never logged."""

    access_key: str
    secret_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class TagFilter:
    key: str
    value: str

    @classmethod
    def parse(cls, text: str) -> "TagFilter":
        """Parse ``KEY=VALUE`` (the value may itself contain ``=``)."""
        key, sep, value = text.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Tag filter must look like KEY=VALUE, got {text!r}")
        return cls(key=key.strip(), value=value.strip())


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

@dataclass
class Node:
    id: str
    label: str
    type: str
    details: Dict[str, DetailValue] = field(default_factory=dict)
    parent_id: Optional[str] = None

    @property
    def arn(self) -> str:
        return self.detail_text(ARN_KEY)

    def detail_text(self, key: str) -> str:
        value = self.details.get(key)
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value, sort_keys=True)

    def detail_list(self, key: str) -> List[str]:
        """Return a list-valued detail.

        Accepts a native list, a JSON array string, or a comma-separated
        string.
        """
        value = self.details.get(key)
        if value is None:
            return []
        if isinstance(value, list):
            return [str(v) for v in value]
        if isinstance(value, dict):
            return [str(v) for v in value.values()]
        text = value.strip()
        if text.startswith("["):
            decoded = _decode_json(self.id, key, text)
            if isinstance(decoded, list):
                return [str(v) for v in decoded if v is not None]
            return []
        return [part.strip() for part in text.split(",") if part.strip()]

    def detail_map(self, key: str) -> Dict[str, str]:
        value = self.details.get(key)
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, list):
            return {}
        decoded = _decode_json(self.id, key, value)
        if isinstance(decoded, dict):
            return {str(k): "" if v is None else str(v) for k, v in decoded.items()}
        return {}

    def to_dict(self) -> dict:
        """Flatten to the external ``mapping<string,string>`` shape."""
        return {
            "id": self.id,
            "label": self.label,
            "type": self.type,
            "details": {k: self.detail_text(k) for k in self.details},
            "parentId": self.parent_id,
        }


def _decode_json(node_id: str, key: str, text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Ignoring malformed JSON in %s.details[%s]", node_id, key)
        return None


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    target: str
    label: Optional[str] = None
    style: Optional[str] = None

    @staticmethod
    def make_id(source: str, target: str) -> str:
        # length prefix keeps ids apart when node ids contain "-"
        return f"e-{len(source)}-{source}-{target}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "label": self.label,
            "style": self.style,
        }


@dataclass
class ArchitectureResult:
    nodes: List[Node]
    edges: List[Edge]

    def to_dict(self) -> dict:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }
