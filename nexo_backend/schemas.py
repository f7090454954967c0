"""Shared Pydantic request/response models used across multiple routers."""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from nexo_backend.config import MAX_MESSAGE_LENGTH


class RefreshResponse(BaseModel):
    success: bool
    state: str
    issues_extracted: int = 0
    connections_extracted: int = 0
    messages_processed: int = 0
    failed_issues: List[str] = []
    reflection_prompt: Optional[str] = None
    retryable: bool = False
    message: Optional[str] = None


class UserIssueResponse(BaseModel):
    id: str
    canonical_issue_id: str
    name: str
    stance: str
    intensity: float
    confidence: str
    quotes: List[str]
    updated_at: Optional[str] = None


class UserConnectionResponse(BaseModel):
    id: str
    issue_a_id: str
    issue_b_id: str
    issue_a: str
    issue_b: str
    connection_type: str
    evidence: str
    created_at: Optional[str] = None


class MyIssuesResponse(BaseModel):
    issues: List[UserIssueResponse]
    connections: List[UserConnectionResponse]
    last_refresh_at: Optional[datetime] = None


class AggregateIssueResponse(BaseModel):
    canonical_issue_id: str
    name: str
    description: Optional[str] = None
    total_users: int
    energy_score: float
    consensus_score: float
    stance_histogram: Dict[str, int]


class AggregateConnectionResponse(BaseModel):
    id: str
    issue_a_id: str
    issue_b_id: str
    issue_a: str
    issue_b: str
    total_weight: int
    user_count: int


class SharedIssuesResponse(BaseModel):
    issues: List[AggregateIssueResponse]
    connections: List[AggregateConnectionResponse]
    total_users: int


class ConstellationNode(BaseModel):
    id: str
    name: str
    energy: float
    consensus: float
    members: int
    stance: str


class ConstellationLink(BaseModel):
    a: str
    b: str
    weight: float
    type: str
    label: str


class ConstellationResponse(BaseModel):
    scope: str
    nodes: List[ConstellationNode]
    links: List[ConstellationLink]


class ConversationOut(BaseModel):
    id: str
    is_active: bool
    created_at: Optional[datetime] = None


class CreateMessageRequest(BaseModel):
    conversation_id: str
    role: Literal["user", "assistant"]
    content: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: str
    included_in_refresh: bool
    created_at: Optional[datetime] = None


class MessagesResponse(BaseModel):
    messages: List[MessageOut]
    count: int
