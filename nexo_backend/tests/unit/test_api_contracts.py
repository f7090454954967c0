import importlib
import sys
import types
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

from fastapi import FastAPI
from fastapi.testclient import TestClient

from nexo_backend.auth import get_current_user_id
from nexo_backend.services.errors import AuthFailure
from nexo_backend.services.refresh_orchestrator import RefreshResult, RefreshState

USER_ID = "user-1"


def _load_router_module(monkeypatch, name):
    async def dummy_get_async_session():
        yield object()

    dummy_db_session = types.ModuleType("nexo_backend.db_session")
    dummy_db_session.get_async_session = dummy_get_async_session

    monkeypatch.setitem(sys.modules, "nexo_backend.db_session", dummy_db_session)
    sys.modules.pop(f"nexo_backend.{name}", None)
    return importlib.import_module(f"nexo_backend.{name}")


def _client(module, authenticated=True, overrides=None):
    app = FastAPI()
    app.include_router(module.router)
    if authenticated:
        app.dependency_overrides[get_current_user_id] = lambda: USER_ID
    for dependency, replacement in (overrides or {}).items():
        app.dependency_overrides[dependency] = replacement
    return TestClient(app, raise_server_exceptions=False)


class _Orchestrator:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.users = []

    async def run(self, user_id):
        self.users.append(user_id)
        if self.error is not None:
            raise self.error
        return self.result


def test_refresh_success_returns_result(monkeypatch):
    refresh_api = _load_router_module(monkeypatch, "refresh_api")
    orchestrator = _Orchestrator(RefreshResult(
        success=True,
        state=RefreshState.DONE,
        issues_extracted=2,
        connections_extracted=1,
        messages_processed=4,
        reflection_prompt="What would change your mind?",
    ))
    client = _client(refresh_api, overrides={refresh_api.get_refresh_orchestrator: lambda: orchestrator})

    resp = client.post("/api/refresh")

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["state"] == "Done"
    assert body["issues_extracted"] == 2
    assert body["reflection_prompt"] == "What would change your mind?"
    assert orchestrator.users == [USER_ID]


def test_refresh_retryable_failure_is_502(monkeypatch):
    refresh_api = _load_router_module(monkeypatch, "refresh_api")
    orchestrator = _Orchestrator(RefreshResult(
        success=False,
        state=RefreshState.ABORTED,
        retryable=True,
        message="Analysis failed. Please try again.",
    ))
    client = _client(refresh_api, overrides={refresh_api.get_refresh_orchestrator: lambda: orchestrator})

    resp = client.post("/api/refresh")

    assert resp.status_code == 502
    assert resp.json()["retryable"] is True
    assert resp.json()["success"] is False


def test_refresh_without_token_is_401(monkeypatch):
    refresh_api = _load_router_module(monkeypatch, "refresh_api")
    orchestrator = _Orchestrator(RefreshResult(success=True, state=RefreshState.DONE))
    client = _client(
        refresh_api,
        authenticated=False,
        overrides={refresh_api.get_refresh_orchestrator: lambda: orchestrator},
    )

    resp = client.post("/api/refresh")

    assert resp.status_code == 401
    assert resp.json() == {"detail": "Unauthorized"}
    assert orchestrator.users == []


def test_refresh_auth_failure_from_orchestrator_is_401(monkeypatch):
    refresh_api = _load_router_module(monkeypatch, "refresh_api")
    orchestrator = _Orchestrator(error=AuthFailure("no user"))
    client = _client(refresh_api, overrides={refresh_api.get_refresh_orchestrator: lambda: orchestrator})

    assert client.post("/api/refresh").status_code == 401


def test_refresh_unexpected_error_is_generic_500(monkeypatch):
    refresh_api = _load_router_module(monkeypatch, "refresh_api")
    orchestrator = _Orchestrator(error=RuntimeError("connection string leaked here"))
    client = _client(refresh_api, overrides={refresh_api.get_refresh_orchestrator: lambda: orchestrator})

    resp = client.post("/api/refresh")

    assert resp.status_code == 500
    assert "leaked" not in resp.text


def _aggregate_rows():
    housing = SimpleNamespace(id=uuid.uuid4(), name="Housing affordability", description="Cost of homes")
    transit = SimpleNamespace(id=uuid.uuid4(), name="Public transit", description=None)
    aggregates = [
        (SimpleNamespace(total_users=3, energy_score=2.4, consensus_score=0.67,
                         stance_histogram={"supports": 2, "opposes": 1}), housing),
        (SimpleNamespace(total_users=1, energy_score=0.6, consensus_score=1.0,
                         stance_histogram={"supports": 1}), transit),
    ]
    connection = SimpleNamespace(id=uuid.uuid4(), issue_a_id=housing.id, issue_b_id=transit.id,
                                 total_weight=2, user_count=2)
    return aggregates, [(connection, housing.name, transit.name)]


def _patch_shared_loaders(monkeypatch, issues_api, rows=None, causal=None):
    aggregates, connections = rows or _aggregate_rows()

    async def load_aggregate_issues(db):
        return aggregates

    async def load_aggregate_connections(db):
        return connections

    async def load_causal_pairs(db):
        return causal or set()

    monkeypatch.setattr(issues_api, "load_aggregate_issues", load_aggregate_issues)
    monkeypatch.setattr(issues_api, "load_aggregate_connections", load_aggregate_connections)
    monkeypatch.setattr(issues_api, "load_causal_pairs", load_causal_pairs)
    return aggregates, connections


def test_shared_issues_reports_largest_membership(monkeypatch):
    issues_api = _load_router_module(monkeypatch, "issues_api")
    _patch_shared_loaders(monkeypatch, issues_api)

    resp = _client(issues_api).get("/api/issues/shared")

    assert resp.status_code == 200
    body = resp.json()
    assert body["total_users"] == 3
    assert [issue["name"] for issue in body["issues"]] == ["Housing affordability", "Public transit"]
    assert body["connections"][0]["user_count"] == 2


def test_shared_constellation_payload(monkeypatch):
    issues_api = _load_router_module(monkeypatch, "issues_api")
    aggregates, connections = _aggregate_rows()
    housing_id = str(aggregates[0][1].id)
    transit_id = str(aggregates[1][1].id)
    _patch_shared_loaders(monkeypatch, issues_api, (aggregates, connections), causal={(housing_id, transit_id)})

    resp = _client(issues_api).get("/api/constellation?scope=shared")

    assert resp.status_code == 200
    body = resp.json()
    assert body["scope"] == "shared"
    assert body["nodes"][0]["energy"] == 1.0
    assert body["nodes"][0]["stance"] == "supports"
    assert body["links"][0] == {
        "a": housing_id,
        "b": transit_id,
        "weight": 1.0,
        "type": "causal",
        "label": "2 people connect these",
    }


def test_personal_constellation_payload(monkeypatch):
    issues_api = _load_router_module(monkeypatch, "issues_api")
    canonical = SimpleNamespace(id=uuid.uuid4(), name="Housing affordability")
    user_issue = SimpleNamespace(id=uuid.uuid4(), stance="Build more homes", intensity=0.8,
                                 confidence="high", quotes=["we need homes"], updated_at=None)
    seen_users = []

    async def load_user_issues(db, user_id):
        seen_users.append(user_id)
        return [(user_issue, canonical)]

    async def load_user_connections(db, user_id):
        return []

    monkeypatch.setattr(issues_api, "load_user_issues", load_user_issues)
    monkeypatch.setattr(issues_api, "load_user_connections", load_user_connections)

    resp = _client(issues_api).get("/api/constellation?scope=mine")

    assert resp.status_code == 200
    assert resp.json()["nodes"] == [{
        "id": str(canonical.id),
        "name": "Housing affordability",
        "energy": 0.8,
        "consensus": 1.0,
        "members": 1,
        "stance": "Build more homes",
    }]
    assert seen_users == [USER_ID]


def test_constellation_rejects_unknown_scope(monkeypatch):
    issues_api = _load_router_module(monkeypatch, "issues_api")

    assert _client(issues_api).get("/api/constellation?scope=everyone").status_code == 400


def test_my_issues_requires_auth(monkeypatch):
    issues_api = _load_router_module(monkeypatch, "issues_api")

    assert _client(issues_api, authenticated=False).get("/api/issues/mine").status_code == 401


def test_my_issues_payload(monkeypatch):
    issues_api = _load_router_module(monkeypatch, "issues_api")
    canonical = SimpleNamespace(id=uuid.uuid4(), name="Housing affordability")
    user_issue = SimpleNamespace(id=uuid.uuid4(), stance="Build more", intensity=0.7,
                                 confidence="medium", quotes=None, updated_at=None)
    refreshed = datetime(2026, 1, 5, tzinfo=timezone.utc)

    async def load_user_issues(db, user_id):
        return [(user_issue, canonical)]

    async def load_user_connections(db, user_id):
        return []

    async def load_last_refresh_at(db, user_id):
        return refreshed

    monkeypatch.setattr(issues_api, "load_user_issues", load_user_issues)
    monkeypatch.setattr(issues_api, "load_user_connections", load_user_connections)
    monkeypatch.setattr(issues_api, "load_last_refresh_at", load_last_refresh_at)

    body = _client(issues_api).get("/api/issues/mine").json()

    assert body["issues"][0]["quotes"] == []
    assert body["issues"][0]["confidence"] == "medium"
    assert body["connections"] == []
    assert body["last_refresh_at"].startswith("2026-01-05")


def _message(conversation_id, role="user", content="hello"):
    return SimpleNamespace(
        id=uuid.uuid4(),
        conversation_id=conversation_id,
        role=role,
        content=content,
        included_in_refresh=False,
        created_at=None,
    )


def test_save_message_validates_body(monkeypatch):
    conversations_api = _load_router_module(monkeypatch, "conversations_api")
    client = _client(conversations_api)
    conversation_id = str(uuid.uuid4())

    assert client.post("/api/messages", json={"conversation_id": conversation_id, "role": "system",
                                              "content": "hi"}).status_code == 422
    assert client.post("/api/messages", json={"conversation_id": conversation_id, "role": "user",
                                              "content": ""}).status_code == 422
    assert client.post("/api/messages", json={"conversation_id": conversation_id, "role": "user",
                                              "content": "x" * 2001}).status_code == 422


def test_save_message_maps_service_errors(monkeypatch):
    conversations_api = _load_router_module(monkeypatch, "conversations_api")

    async def append_message(db, user_id, conversation_id, role, content):
        if conversation_id == "bad":
            raise ValueError("Invalid UUID for conversation_id: bad")
        raise LookupError("missing")

    monkeypatch.setattr(conversations_api, "append_message", append_message)
    client = _client(conversations_api)

    bad = client.post("/api/messages", json={"conversation_id": "bad", "role": "user", "content": "hi"})
    missing = client.post("/api/messages", json={"conversation_id": str(uuid.uuid4()), "role": "user",
                                                 "content": "hi"})

    assert bad.status_code == 400
    assert missing.status_code == 404
    assert missing.json() == {"detail": "Conversation not found"}


def test_save_and_list_messages(monkeypatch):
    conversations_api = _load_router_module(monkeypatch, "conversations_api")
    conversation_id = uuid.uuid4()
    stored = []

    async def append_message(db, user_id, cid, role, content):
        message = _message(conversation_id, role, content)
        stored.append(message)
        return message

    async def list_messages(db, user_id, cid):
        return list(stored)

    monkeypatch.setattr(conversations_api, "append_message", append_message)
    monkeypatch.setattr(conversations_api, "list_messages", list_messages)
    client = _client(conversations_api)

    saved = client.post("/api/messages", json={"conversation_id": str(conversation_id), "role": "user",
                                               "content": "Rent is too high"})
    listed = client.get(f"/api/messages?conversation_id={conversation_id}")

    assert saved.status_code == 200
    assert saved.json()["included_in_refresh"] is False
    assert listed.json()["count"] == 1
    assert listed.json()["messages"][0]["content"] == "Rent is too high"


def test_current_conversation_is_null_when_none(monkeypatch):
    conversations_api = _load_router_module(monkeypatch, "conversations_api")

    async def get_active_conversation(db, user_id):
        return None

    monkeypatch.setattr(conversations_api, "get_active_conversation", get_active_conversation)

    resp = _client(conversations_api).get("/api/conversations")

    assert resp.status_code == 200
    assert resp.json() is None


def test_start_conversation(monkeypatch):
    conversations_api = _load_router_module(monkeypatch, "conversations_api")
    conversation = SimpleNamespace(id=uuid.uuid4(), is_active=True, created_at=None)

    async def create_conversation(db, user_id):
        assert user_id == USER_ID
        return conversation

    monkeypatch.setattr(conversations_api, "create_conversation", create_conversation)

    resp = _client(conversations_api).post("/api/conversations")

    assert resp.status_code == 200
    assert resp.json()["id"] == str(conversation.id)
    assert resp.json()["is_active"] is True
