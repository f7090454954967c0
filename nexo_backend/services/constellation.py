"""
Constellation viewer payloads.

The 3D viewer draws one node per canonical issue (radius from ``energy``,
colour from ``consensus``) and one link per related pair. Node ``energy`` and
link ``weight`` are normalized to [0, 1] here so the viewer never has to know
absolute counts.
"""

from typing import Any, Collection, Dict, List, Sequence, Tuple


def _normalizer(values: Sequence[float]):
    peak = max(values) if values else 0.0
    if peak <= 0:
        return lambda value: 0.0
    return lambda value: round(float(value) / peak, 4)


def dominant_stance(histogram: Dict[str, int]) -> str:
    if not histogram:
        return ""
    # Highest count wins; ties go to the alphabetically first bucket.
    return sorted(histogram.items(), key=lambda item: (-int(item[1]), item[0]))[0][0]


def _member_label(count: int) -> str:
    return "1 person connects these" if count == 1 else f"{count} people connect these"


def build_shared_constellation(
    issues: Sequence[Dict[str, Any]],
    connections: Sequence[Dict[str, Any]],
    causal_pairs: Collection[Tuple[str, str]] = (),
) -> Dict[str, List[Dict[str, Any]]]:
    """Build the shared view from aggregate issue and connection payloads."""
    energy = _normalizer([issue["energy_score"] for issue in issues])
    nodes = [
        {
            "id": issue["canonical_issue_id"],
            "name": issue["name"],
            "energy": energy(issue["energy_score"]),
            "consensus": float(issue["consensus_score"]),
            "members": int(issue["total_users"]),
            "stance": dominant_stance(issue.get("stance_histogram") or {}),
        }
        for issue in issues
    ]
    node_ids = {node["id"] for node in nodes}

    visible = [
        connection for connection in connections
        if connection["issue_a_id"] in node_ids and connection["issue_b_id"] in node_ids
    ]
    weight = _normalizer([connection["total_weight"] for connection in visible])
    causal = set(causal_pairs)
    links = [
        {
            "a": connection["issue_a_id"],
            "b": connection["issue_b_id"],
            "weight": weight(connection["total_weight"]),
            "type": "causal" if (connection["issue_a_id"], connection["issue_b_id"]) in causal else "co_occurrence",
            "label": _member_label(int(connection["user_count"])),
        }
        for connection in visible
    ]
    return {"nodes": nodes, "links": links}


def build_personal_constellation(
    issues: Sequence[Dict[str, Any]],
    connections: Sequence[Dict[str, Any]],
) -> Dict[str, List[Dict[str, Any]]]:
    """Build one user's view; *connections* must be newest first."""
    nodes = [
        {
            "id": issue["canonical_issue_id"],
            "name": issue["name"],
            "energy": float(issue["intensity"]),
            "consensus": 1.0,
            "members": 1,
            "stance": issue["stance"],
        }
        for issue in issues
    ]
    node_ids = {node["id"] for node in nodes}

    pairs: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for connection in connections:
        key = (connection["issue_a_id"], connection["issue_b_id"])
        if key[0] not in node_ids or key[1] not in node_ids:
            continue
        if key not in pairs:
            pairs[key] = {
                "count": 0,
                "type": connection["connection_type"],
                "label": connection.get("evidence") or "",
            }
        pairs[key]["count"] += 1

    weight = _normalizer([entry["count"] for entry in pairs.values()])
    links = [
        {
            "a": a,
            "b": b,
            "weight": weight(entry["count"]),
            "type": entry["type"],
            "label": entry["label"],
        }
        for (a, b), entry in pairs.items()
    ]
    return {"nodes": nodes, "links": links}
