from nexo_backend.services.constellation import (
    build_personal_constellation,
    build_shared_constellation,
    dominant_stance,
)


def _aggregate(issue_id, name, energy, users=1, consensus=1.0, histogram=None):
    return {
        "canonical_issue_id": issue_id,
        "name": name,
        "description": None,
        "total_users": users,
        "energy_score": energy,
        "consensus_score": consensus,
        "stance_histogram": histogram or {},
    }


def _aggregate_link(a, b, weight, users):
    return {"id": f"{a}-{b}", "issue_a_id": a, "issue_b_id": b, "issue_a": a, "issue_b": b,
            "total_weight": weight, "user_count": users}


def test_dominant_stance_prefers_highest_count_then_name():
    assert dominant_stance({}) == ""
    assert dominant_stance({"supports": 1, "opposes": 3}) == "opposes"
    assert dominant_stance({"supports": 2, "opposes": 2}) == "opposes"


def test_shared_energy_and_weight_are_normalized():
    issues = [
        _aggregate("i1", "Housing", 4.0, users=3, consensus=0.67, histogram={"supports": 2, "opposes": 1}),
        _aggregate("i2", "Transit", 2.0),
    ]
    links = [_aggregate_link("i1", "i2", 4, 2)]

    view = build_shared_constellation(issues, links)

    assert [node["energy"] for node in view["nodes"]] == [1.0, 0.5]
    assert view["nodes"][0]["stance"] == "supports"
    assert view["nodes"][0]["members"] == 3
    assert view["links"] == [
        {"a": "i1", "b": "i2", "weight": 1.0, "type": "co_occurrence", "label": "2 people connect these"}
    ]


def test_shared_marks_causal_pairs_and_drops_dangling_links():
    issues = [_aggregate("i1", "Housing", 1.0), _aggregate("i2", "Transit", 1.0)]
    links = [_aggregate_link("i1", "i2", 1, 1), _aggregate_link("i1", "gone", 5, 5)]

    view = build_shared_constellation(issues, links, causal_pairs={("i1", "i2")})

    assert len(view["links"]) == 1
    assert view["links"][0]["type"] == "causal"
    assert view["links"][0]["weight"] == 1.0
    assert view["links"][0]["label"] == "1 person connects these"


def test_shared_empty_inputs():
    assert build_shared_constellation([], []) == {"nodes": [], "links": []}


def test_personal_groups_repeated_pairs_using_newest_evidence():
    issues = [
        {"canonical_issue_id": "i1", "name": "Housing", "stance": "Build more", "intensity": 0.8},
        {"canonical_issue_id": "i2", "name": "Transit", "stance": "Fund buses", "intensity": 0.4},
        {"canonical_issue_id": "i3", "name": "Tax", "stance": "Lower", "intensity": 0.2},
    ]
    connections = [
        {"issue_a_id": "i1", "issue_b_id": "i2", "connection_type": "causal", "evidence": "newest"},
        {"issue_a_id": "i1", "issue_b_id": "i2", "connection_type": "co_occurrence", "evidence": "older"},
        {"issue_a_id": "i2", "issue_b_id": "i3", "connection_type": "co_occurrence", "evidence": None},
    ]

    view = build_personal_constellation(issues, connections)

    assert view["nodes"][0] == {
        "id": "i1", "name": "Housing", "energy": 0.8, "consensus": 1.0, "members": 1, "stance": "Build more",
    }
    by_pair = {(link["a"], link["b"]): link for link in view["links"]}
    assert by_pair[("i1", "i2")] == {"a": "i1", "b": "i2", "weight": 1.0, "type": "causal", "label": "newest"}
    assert by_pair[("i2", "i3")]["weight"] == 0.5
    assert by_pair[("i2", "i3")]["label"] == ""
