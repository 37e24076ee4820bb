"""FastAPI application exposing the knowledge service over HTTP."""

import logging
import os

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from flow_memory.errors import (
    FlowMemoryError,
    Forbidden,
    InvalidState,
    NotFound,
    ProposalClosed,
    ValidationError,
)
from flow_memory.remote.auth import get_current_user
from flow_memory.remote.models import (
    Decision,
    KnowledgeCreate,
    MemberAdd,
    MemoryPush,
    ProposalCreate,
    SyncRequest,
    TeamCreate,
    VoteCast,
)
from flow_memory.remote.service import KnowledgeService

logger = logging.getLogger(__name__)

STATUS_CODES = {
    Forbidden: 403,
    NotFound: 404,
    ProposalClosed: 409,
    InvalidState: 409,
    ValidationError: 400,
}

router = APIRouter(prefix="/teams", tags=["teams"])


def get_service(request: Request) -> KnowledgeService:
    return request.app.state.service


@router.post("", status_code=201)
def create_team(
    body: TeamCreate,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    """Create a team; the caller becomes its admin."""
    return service.create_team(user, body.name)


@router.post("/{team_id}/members", status_code=201)
def add_member(
    team_id: str,
    body: MemberAdd,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    return service.add_member(user, team_id, body.userId, body.role)


@router.get("/{team_id}/knowledge")
def list_knowledge(
    team_id: str,
    since: str | None = None,
    category: str | None = None,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    knowledge = service.list_knowledge(user, team_id, since=since, category=category)
    return {"knowledge": knowledge, "count": len(knowledge)}


@router.post("/{team_id}/knowledge", status_code=201)
def add_knowledge(
    team_id: str,
    body: KnowledgeCreate,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    """Add knowledge directly (admin only)."""
    return service.add_knowledge(user, team_id, body.fact, body.category, body.modelSpecific)


@router.get("/{team_id}/proposals")
def list_proposals(
    team_id: str,
    status: str | None = None,
    since: str | None = None,
    decided: bool = False,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    proposals = service.list_proposals(user, team_id, status=status, since=since, decided=decided)
    return {"proposals": proposals, "count": len(proposals)}


@router.post("/{team_id}/proposals")
def create_proposal(
    team_id: str,
    body: ProposalCreate,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    """Create a proposal; a repeated ``localId`` returns the existing one with 200."""
    proposal, created = service.create_proposal(user, team_id, body.model_dump())
    return JSONResponse(
        status_code=201 if created else 200,
        content={"proposal": proposal, "created": created},
    )


@router.get("/{team_id}/proposals/{proposal_id}")
def get_proposal(
    team_id: str,
    proposal_id: str,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    return service.get_proposal(user, team_id, proposal_id)


@router.post("/{team_id}/proposals/{proposal_id}/vote")
def cast_vote(
    team_id: str,
    proposal_id: str,
    body: VoteCast,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    return service.cast_vote(user, team_id, proposal_id, body.vote, body.comment)


@router.post("/{team_id}/proposals/{proposal_id}/decide")
def decide(
    team_id: str,
    proposal_id: str,
    body: Decision,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    return service.decide(user, team_id, proposal_id, body.decision, body.reason)


@router.get("/{team_id}/memory")
def pull_memory(
    team_id: str,
    since: str | None = None,
    category: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    return service.pull_memory(user, team_id, since=since, category=category, limit=limit)


@router.post("/{team_id}/memory")
def push_memory(
    team_id: str,
    body: MemoryPush,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    facts = [fact.model_dump() for fact in body.facts]
    return service.push_memory(user, team_id, facts)


@router.post("/{team_id}/memory/sync")
def sync(
    team_id: str,
    body: SyncRequest,
    user: str = Depends(get_current_user),
    service: KnowledgeService = Depends(get_service),
):
    """Push local proposals and facts, then pull everything newer than ``since``."""
    return service.sync(
        user,
        team_id,
        proposals=[p.model_dump() for p in body.proposals],
        facts=[f.model_dump() for f in body.facts],
        since=body.since,
    )


async def _handle_service_error(request: Request, exc: FlowMemoryError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in STATUS_CODES.items() if isinstance(exc, error_type)),
        500,
    )
    if status_code == 500:
        logger.error("Unhandled service error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "code": exc.code},
    )


def create_app(service: KnowledgeService | None = None) -> FastAPI:
    """Build the API application.

    Args:
        service: Service instance to serve; defaults to a SQLite database at
            ``FLOW_MEMORY_REMOTE_DB`` (in-memory if unset).
    """
    app = FastAPI(title="flow-memory knowledge service")
    app.state.service = service or KnowledgeService(os.getenv("FLOW_MEMORY_REMOTE_DB", ":memory:"))
    app.include_router(router)
    app.add_exception_handler(FlowMemoryError, _handle_service_error)
    return app
