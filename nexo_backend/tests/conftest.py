"""
Pytest configuration and shared fixtures for Nexo tests.

This module provides:
- An in-memory IssueStore that can simulate concurrent writers
- A scripted stand-in for the LLM client
- Prompt manager and message factories
"""

import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from nexo_backend.services.errors import CanonicalIssueConflict
from nexo_backend.services.issue_aggregation import (
    AggregateConnectionState,
    AggregateIssueState,
)
from nexo_backend.services.issue_store import CanonicalIssueRecord, IssueStore, StoredMessage
from nexo_backend.services.prompt_manager import PromptManager


# ============================================================================
# In-memory store
# ============================================================================

class InMemoryIssueStore(IssueStore):
    """
    Dict-backed IssueStore.

    Concurrency knobs:
    - ``concurrent_creates``: names another cycle creates just before ours,
      so our insert hits the unique-name violation.
    - ``interleaved_issue_writes`` / ``interleaved_connection_writes``: number
      of times a foreign writer bumps an aggregate row between our read and
      our compare-and-swap write.
    - ``failing_upserts``: canonical ids whose user-issue upsert raises.
    """

    def __init__(self):
        self.messages: Dict[str, List[StoredMessage]] = {}
        self.processed: set = set()
        self.canonical: Dict[str, CanonicalIssueRecord] = {}
        self.user_issues: Dict[Tuple[str, str], dict] = {}
        self.aggregate_issues: Dict[str, AggregateIssueState] = {}
        self.aggregate_connections: Dict[Tuple[str, str], AggregateConnectionState] = {}
        self.user_connections: List[dict] = []
        self.profiles: Dict[str, dict] = {}
        self.reflection_prompts: List[Tuple[str, str]] = []

        self.concurrent_creates: set = set()
        self.interleaved_issue_writes = 0
        self.interleaved_connection_writes = 0
        self.failing_upserts: set = set()
        self.calls: List[str] = []

    # -- seeding helpers --------------------------------------------------

    def add_message(self, user_id: str, role: str, content: str) -> StoredMessage:
        existing = self.messages.setdefault(user_id, [])
        created_at = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=len(existing))
        message = StoredMessage(id=str(uuid.uuid4()), role=role, content=content, created_at=created_at)
        existing.append(message)
        return message

    def add_canonical_issue(self, name: str, aliases: Sequence[str] = (), description: Optional[str] = None) -> str:
        issue_id = str(uuid.uuid4())
        self.canonical[issue_id] = CanonicalIssueRecord(
            id=issue_id, name=name, description=description, aliases=list(aliases)
        )
        return issue_id

    def canonical_by_name(self, name: str) -> Optional[CanonicalIssueRecord]:
        for record in self.canonical.values():
            if record.name.lower() == name.lower():
                return record
        return None

    # -- IssueStore -------------------------------------------------------

    async def get_unprocessed_messages(self, user_id):
        self.calls.append("get_unprocessed_messages")
        return [m for m in self.messages.get(user_id, []) if m.id not in self.processed]

    async def mark_processed(self, message_ids):
        self.calls.append("mark_processed")
        self.processed.update(message_ids)

    async def get_active_canonical_issues(self):
        self.calls.append("get_active_canonical_issues")
        return [replace(record, aliases=list(record.aliases)) for record in self.canonical.values()]

    async def find_canonical_issue_by_name(self, name):
        record = self.canonical_by_name(name.strip())
        return replace(record, aliases=list(record.aliases)) if record else None

    async def create_canonical_issue(self, name, description=None):
        self.calls.append("create_canonical_issue")
        if name.lower() in {n.lower() for n in self.concurrent_creates}:
            self.concurrent_creates = {n for n in self.concurrent_creates if n.lower() != name.lower()}
            self.add_canonical_issue(name)
        if self.canonical_by_name(name) is not None:
            raise CanonicalIssueConflict(name)
        return self.add_canonical_issue(name, description=description)

    async def update_canonical_issue_aliases(self, issue_id, aliases):
        self.canonical[issue_id].aliases = list(aliases)

    async def upsert_user_issue(self, user_id, canonical_issue_id, stance, intensity, confidence, quotes):
        self.calls.append("upsert_user_issue")
        if canonical_issue_id in self.failing_upserts:
            raise RuntimeError("database unavailable")
        self.user_issues[(user_id, canonical_issue_id)] = {
            "stance": stance,
            "intensity": intensity,
            "confidence": confidence,
            "quotes": list(quotes),
        }

    async def get_aggregate_issue(self, canonical_issue_id):
        state = self.aggregate_issues.get(canonical_issue_id)
        return replace(state, stance_histogram=dict(state.stance_histogram)) if state else None

    async def put_aggregate_issue(self, state, expected_version):
        if self.interleaved_issue_writes > 0:
            self.interleaved_issue_writes -= 1
            current = self.aggregate_issues.get(state.canonical_issue_id)
            if current is None:
                self.aggregate_issues[state.canonical_issue_id] = AggregateIssueState(
                    canonical_issue_id=state.canonical_issue_id,
                    total_users=1,
                    energy_score=0.5,
                    stance_histogram={"foreign": 1},
                    consensus_score=1.0,
                    version=1,
                )
            else:
                current.version += 1

        current = self.aggregate_issues.get(state.canonical_issue_id)
        if expected_version is None:
            if current is not None:
                return False
        elif current is None or current.version != expected_version:
            return False
        self.aggregate_issues[state.canonical_issue_id] = state
        return True

    async def append_user_connection(self, user_id, issue_a_id, issue_b_id, connection_type, evidence):
        self.user_connections.append({
            "user_id": user_id,
            "issue_a_id": issue_a_id,
            "issue_b_id": issue_b_id,
            "connection_type": connection_type,
            "evidence": evidence,
        })

    async def get_aggregate_connection(self, issue_a_id, issue_b_id):
        state = self.aggregate_connections.get((issue_a_id, issue_b_id))
        return replace(state) if state else None

    async def put_aggregate_connection(self, state, expected_version):
        key = (state.issue_a_id, state.issue_b_id)
        if self.interleaved_connection_writes > 0:
            self.interleaved_connection_writes -= 1
            current = self.aggregate_connections.get(key)
            if current is None:
                self.aggregate_connections[key] = AggregateConnectionState(
                    issue_a_id=key[0], issue_b_id=key[1], total_weight=1, user_count=1, version=1
                )
            else:
                current.version += 1

        current = self.aggregate_connections.get(key)
        if expected_version is None:
            if current is not None:
                return False
        elif current is None or current.version != expected_version:
            return False
        self.aggregate_connections[key] = state
        return True

    async def touch_profile_refresh(self, user_id):
        self.calls.append("touch_profile_refresh")
        profile = self.profiles.setdefault(user_id, {"total_refreshes": 0, "last_refresh_at": None})
        profile["total_refreshes"] += 1
        profile["last_refresh_at"] = datetime.now(timezone.utc)

    async def save_reflection_prompt(self, user_id, prompt_text):
        self.reflection_prompts.append((user_id, prompt_text))


@pytest.fixture
def issue_store():
    return InMemoryIssueStore()


# ============================================================================
# Scripted LLM
# ============================================================================

class ScriptedLLM:
    """Replays queued replies; queued exceptions are raised instead."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls: List[dict] = []

    def queue(self, *replies):
        self.replies.extend(replies)

    async def complete(self, prompt, *, system=None, max_tokens=1024, temperature=0.3):
        self.calls.append({"prompt": prompt, "system": system, "max_tokens": max_tokens})
        if not self.replies:
            raise AssertionError(f"Unexpected LLM call: {prompt[:80]!r}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def scripted_llm():
    return ScriptedLLM()


@pytest.fixture
def prompt_manager():
    return PromptManager()


# ============================================================================
# Pytest Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
