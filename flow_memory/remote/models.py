"""Pydantic request schemas for the knowledge service API.

Field names follow the wire format (camelCase).
"""

from typing import Optional

from pydantic import BaseModel, Field


class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class MemberAdd(BaseModel):
    userId: str = Field(..., min_length=1)
    role: str = "member"


class ProposalCreate(BaseModel):
    rule: str = Field(..., max_length=10_000)
    category: Optional[str] = None
    rationale: Optional[str] = None
    sourceContext: Optional[str] = None
    localId: Optional[str] = None


class VoteCast(BaseModel):
    vote: str
    comment: Optional[str] = Field(None, max_length=2_000)


class Decision(BaseModel):
    decision: str
    reason: Optional[str] = Field(None, max_length=2_000)


class KnowledgeCreate(BaseModel):
    """Direct knowledge entry added by an admin."""

    fact: str = Field(..., max_length=10_000)
    category: Optional[str] = None
    modelSpecific: Optional[str] = None


class SharedFact(BaseModel):
    factId: Optional[str] = None
    fact: Optional[str] = None
    category: Optional[str] = None
    relevanceScore: Optional[float] = None
    scope: Optional[str] = None
    source: Optional[str] = None
    tags: list[str] = []


class MemoryPush(BaseModel):
    facts: list[SharedFact] = Field(default_factory=list, max_length=500)


class SyncRequest(BaseModel):
    """Combined push-then-pull round trip."""

    proposals: list[ProposalCreate] = Field(default_factory=list, max_length=500)
    facts: list[SharedFact] = Field(default_factory=list, max_length=500)
    since: Optional[str] = None
