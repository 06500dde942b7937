"""
Serialisers for an ArchitectureResult: JSON and a diagram-importable CSV
(``Id,Label,Type,ParentId,ConnectedTo`` with ``;``-joined targets).
"""

from __future__ import annotations

import csv
import io
import json

from topology.model import ArchitectureResult

CSV_HEADER = ("Id", "Label", "Type", "ParentId", "ConnectedTo")


def to_json(result: ArchitectureResult, indent: int | None = 2) -> str:
    return json.dumps(result.to_dict(), indent=indent, default=str)


def to_csv(result: ArchitectureResult) -> str:
    targets: dict[str, list[str]] = {}
    for edge in result.edges:
        targets.setdefault(edge.source, []).append(edge.target)

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for node in result.nodes:
        writer.writerow([
            node.id,
            node.label,
            node.type,
            node.parent_id or "",
            ";".join(targets.get(node.id, [])),
        ])
    return buf.getvalue()
