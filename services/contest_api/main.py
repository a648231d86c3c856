"""
FastAPI application for the contest voting API.

Serves heart votes with one-vote-per-voter enforcement, the vote status read,
the global and per-team chat logs, and the administrator operations.
"""
import hmac
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Histogram, generate_latest
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from services.shared import ChatScope, get_current_timestamp, get_origin_address

from .chat import ChatService
from .config import settings
from .errors import AdminRequired, ContestError, StoreUnavailable, TransientWriteConflict
from .models import (
    CastVoteRequest,
    CastVoteResponse,
    ChatListResponse,
    ChatMessageRequest,
    ChatMessageResponse,
    ChatStatsResponse,
    DeleteTeamsResponse,
    EditPermissionUpdate,
    ErrorResponse,
    HealthResponse,
    PurgeResponse,
    ReconcileResponse,
    ResetVotesResponse,
    TallyDrift,
    TeamCreateRequest,
    TeamOrderResponse,
    TeamOrderUpdate,
    TeamResponse,
    TeamStatusUpdate,
    TeamUpdateRequest,
    VoteStatusRequest,
    VoteStatusResponse,
    VotedTeamResponse,
    VotingSettingsResponse,
    VotingSettingsUpdate,
)
from .store import create_store
from .teams import TeamService
from .voting import VoteService

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

API_PREFIX = f"/api/{settings.API_VERSION}"

# Prometheus metrics
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

database = create_store()
vote_service = VoteService(database)
chat_service = ChatService(database)
team_service = TeamService(database)

# Redis client backing the rate limiter
redis_client: Optional[redis.Redis] = None

# Rate limiter
limiter = Limiter(key_func=get_remote_address, storage_uri=settings.rate_limit_storage_uri)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    logger.info(f"Starting {settings.SERVICE_NAME} service...")

    try:
        if settings.REDIS_ENABLED:
            global redis_client
            redis_client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await redis_client.ping()
            logger.info("Redis connection established")

        await database.initialize()

        logger.info(f"{settings.SERVICE_NAME} started successfully")

    except Exception as e:
        logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
        raise

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.SERVICE_NAME} service...")

    try:
        if redis_client:
            await redis_client.close()
        await database.close()
        logger.info(f"{settings.SERVICE_NAME} shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI app
app = FastAPI(
    title="Contest Voting API",
    description="Heart votes, vote status and chat for a team contest",
    version=settings.API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ContestError)
async def contest_error_handler(request: Request, exc: ContestError):
    """Render domain errors as {"error", "message", "details"}."""
    if isinstance(exc, (StoreUnavailable, TransientWriteConflict)):
        logger.error(f"{exc.error} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Middleware to track request duration."""
    start = time.perf_counter()
    response = await call_next(request)

    route = request.scope.get("route")
    request_duration.labels(
        method=request.method,
        endpoint=getattr(route, "path", request.url.path),
        status=response.status_code
    ).observe(time.perf_counter() - start)

    return response


def _origin(request: Request) -> str:
    return get_origin_address(request.headers, request.client.host if request.client else None)


def is_admin(token: Optional[str]) -> bool:
    """Constant-time check of the admin token. An unset ADMIN_TOKEN admits nobody."""
    if not settings.ADMIN_TOKEN or not token:
        return False
    return hmac.compare_digest(token.encode(), settings.ADMIN_TOKEN.encode())


async def require_admin(x_admin_token: Optional[str] = Header(default=None)):
    """Dependency guarding administrator endpoints."""
    if not is_admin(x_admin_token):
        logger.warning("Rejected admin request without a valid token")
        raise AdminRequired()


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Error {action}: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error"
    )


# ═══════════════════════════════════════════════════════════════════
# VOTING ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@app.post(
    f"{API_PREFIX}/teams/{{team_id}}/vote",
    response_model=CastVoteResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid vote"},
        403: {"model": ErrorResponse, "description": "Voting is closed"},
        404: {"model": ErrorResponse, "description": "Team not found"},
        409: {"model": ErrorResponse, "description": "Already voted"},
        429: {"description": "Rate limit exceeded"},
        503: {"model": ErrorResponse, "description": "Store unavailable, retry"}
    }
)
@limiter.limit(settings.RATE_LIMIT)
async def cast_vote(request: Request, team_id: str, vote: CastVoteRequest) -> CastVoteResponse:
    """
    Cast one heart vote for a team.

    - **voter_identity**: Opaque token persisted by the client
    - **comment**: Optional text appended to the team's comments

    A voter (identity or network origin) can vote for one team only.
    """
    try:
        team = await vote_service.cast_vote(
            team_id,
            vote.voter_identity,
            _origin(request),
            vote.comment
        )
        return CastVoteResponse(team=TeamResponse.from_team(team))

    except ContestError:
        raise
    except Exception as e:
        raise _internal_error(f"casting vote for team {team_id}", e)


@app.post(
    f"{API_PREFIX}/vote-status",
    response_model=VoteStatusResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid voter identity"}}
)
@limiter.limit(settings.RATE_LIMIT)
async def vote_status(request: Request, body: VoteStatusRequest) -> VoteStatusResponse:
    """Report whether the caller already voted, and for which team."""
    try:
        result = await vote_service.check_status(body.voter_identity, _origin(request))
        voted_team = None
        if result.voted_team is not None:
            voted_team = VotedTeamResponse(**result.voted_team.to_dict())
        return VoteStatusResponse(has_voted=result.has_voted, voted_team=voted_team)

    except ContestError:
        raise
    except Exception as e:
        raise _internal_error("checking vote status", e)


# ═══════════════════════════════════════════════════════════════════
# CHAT ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

async def _list_chat(scope: ChatScope, since: Optional[datetime], limit: Optional[int]) -> ChatListResponse:
    try:
        messages = await chat_service.list_messages(scope, since, limit)
        data = [ChatMessageResponse.from_message(m) for m in messages]
        return ChatListResponse(data=data, count=len(data))
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error(f"listing {scope} chat", e)


async def _post_chat(request: Request, scope: ChatScope, body: ChatMessageRequest) -> ChatMessageResponse:
    try:
        message = await chat_service.post_message(
            scope,
            body.text,
            body.author_label,
            _origin(request),
            body.author_identity
        )
        return ChatMessageResponse.from_message(message)
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error(f"posting {scope} chat message", e)


async def _purge_chat(scope: ChatScope) -> PurgeResponse:
    try:
        return PurgeResponse(deleted_count=await chat_service.purge_all(scope))
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error(f"purging {scope} chat", e)


async def _chat_stats(scope: ChatScope) -> ChatStatsResponse:
    try:
        stats = await chat_service.stats(scope)
        return ChatStatsResponse(
            total_messages=stats["total_messages"],
            oldest=ChatMessageResponse.from_message(stats["oldest"]) if stats["oldest"] else None,
            newest=ChatMessageResponse.from_message(stats["newest"]) if stats["newest"] else None,
            can_reset=stats["can_reset"]
        )
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error(f"reading {scope} chat stats", e)


@app.get(f"{API_PREFIX}/chat", response_model=ChatListResponse)
async def list_global_chat(
    since: Optional[datetime] = Query(default=None, description="Only messages newer than this"),
    limit: Optional[int] = Query(default=None, description="Maximum messages (clamped to 100)")
) -> ChatListResponse:
    """Global chat messages, oldest first."""
    return await _list_chat(ChatScope.global_scope(), since, limit)


@app.post(
    f"{API_PREFIX}/chat",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Invalid message"}}
)
@limiter.limit(settings.RATE_LIMIT)
async def post_global_chat(request: Request, body: ChatMessageRequest) -> ChatMessageResponse:
    """Post a message to the global chat."""
    return await _post_chat(request, ChatScope.global_scope(), body)


@app.delete(
    f"{API_PREFIX}/chat",
    response_model=PurgeResponse,
    dependencies=[Depends(require_admin)]
)
async def purge_global_chat() -> PurgeResponse:
    """Delete every global chat message (admin)."""
    return await _purge_chat(ChatScope.global_scope())


@app.get(f"{API_PREFIX}/chat/stats", response_model=ChatStatsResponse)
async def global_chat_stats() -> ChatStatsResponse:
    return await _chat_stats(ChatScope.global_scope())


@app.get(
    f"{API_PREFIX}/teams/{{team_id}}/chat",
    response_model=ChatListResponse
)
async def list_team_chat(
    team_id: str,
    since: Optional[datetime] = Query(default=None, description="Only messages newer than this"),
    limit: Optional[int] = Query(default=None, description="Maximum messages (clamped to 100)")
) -> ChatListResponse:
    """One team's chat messages, oldest first."""
    return await _list_chat(ChatScope.for_team(team_id), since, limit)


@app.post(
    f"{API_PREFIX}/teams/{{team_id}}/chat",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid message"},
        404: {"model": ErrorResponse, "description": "Team not found"}
    }
)
@limiter.limit(settings.RATE_LIMIT)
async def post_team_chat(request: Request, team_id: str, body: ChatMessageRequest) -> ChatMessageResponse:
    """Post a message to one team's chat."""
    return await _post_chat(request, ChatScope.for_team(team_id), body)


@app.delete(
    f"{API_PREFIX}/teams/{{team_id}}/chat",
    response_model=PurgeResponse,
    dependencies=[Depends(require_admin)]
)
async def purge_team_chat(team_id: str) -> PurgeResponse:
    """Delete every chat message of one team (admin)."""
    return await _purge_chat(ChatScope.for_team(team_id))


@app.get(f"{API_PREFIX}/teams/{{team_id}}/chat/stats", response_model=ChatStatsResponse)
async def team_chat_stats(team_id: str) -> ChatStatsResponse:
    return await _chat_stats(ChatScope.for_team(team_id))


# ═══════════════════════════════════════════════════════════════════
# TEAM ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@app.get(f"{API_PREFIX}/teams", response_model=List[TeamResponse])
async def list_teams() -> List[TeamResponse]:
    """All teams ranked by hearts."""
    try:
        teams = await team_service.list_teams()
        return [TeamResponse.from_team(team) for team in teams]
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error("listing teams", e)


@app.get(
    f"{API_PREFIX}/teams/{{team_id}}",
    response_model=TeamResponse,
    responses={404: {"model": ErrorResponse, "description": "Team not found"}}
)
async def get_team(team_id: str) -> TeamResponse:
    try:
        return TeamResponse.from_team(await team_service.get_team(team_id))
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error(f"getting team {team_id}", e)


@app.put(
    f"{API_PREFIX}/teams/{{team_id}}",
    response_model=TeamResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Editing is disabled"},
        404: {"model": ErrorResponse, "description": "Team not found"}
    }
)
async def update_team(
    team_id: str,
    body: TeamUpdateRequest,
    x_admin_token: Optional[str] = Header(default=None)
) -> TeamResponse:
    """
    Edit a team's descriptive fields.

    Allowed while the team's editing permission is on; admins may always edit.
    """
    try:
        team = await team_service.update_team(
            team_id,
            body.model_dump(exclude_unset=True),
            is_admin=is_admin(x_admin_token)
        )
        return TeamResponse.from_team(team)
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error(f"updating team {team_id}", e)


@app.put(
    f"{API_PREFIX}/teams/{{team_id}}/status",
    response_model=TeamResponse,
    dependencies=[Depends(require_admin)]
)
async def set_team_status(team_id: str, body: TeamStatusUpdate) -> TeamResponse:
    try:
        return TeamResponse.from_team(await team_service.set_status(team_id, body.status))
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error(f"setting status of team {team_id}", e)


@app.put(
    f"{API_PREFIX}/teams/{{team_id}}/edit-permission",
    response_model=TeamResponse,
    dependencies=[Depends(require_admin)]
)
async def set_edit_permission(team_id: str, body: EditPermissionUpdate) -> TeamResponse:
    try:
        team = await team_service.set_editing_allowed(team_id, body.editing_allowed)
        return TeamResponse.from_team(team)
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error(f"setting edit permission of team {team_id}", e)


# ═══════════════════════════════════════════════════════════════════
# ADMIN ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@app.post(
    f"{API_PREFIX}/admin/teams",
    response_model=TeamResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
    responses={409: {"model": ErrorResponse, "description": "Team already exists"}}
)
async def create_team(body: TeamCreateRequest) -> TeamResponse:
    try:
        return TeamResponse.from_team(await team_service.create_team(body.to_team()))
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error("creating team", e)


@app.delete(
    f"{API_PREFIX}/admin/teams",
    response_model=DeleteTeamsResponse,
    dependencies=[Depends(require_admin)]
)
async def delete_all_teams() -> DeleteTeamsResponse:
    """Delete every team and its votes."""
    try:
        return DeleteTeamsResponse(deleted_count=await team_service.delete_all_teams())
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error("deleting teams", e)


@app.get(
    f"{API_PREFIX}/admin/teams",
    response_model=List[TeamResponse],
    dependencies=[Depends(require_admin)]
)
async def list_teams_for_admin() -> List[TeamResponse]:
    """Teams in admin display order (sort_order, then creation order)."""
    try:
        return [TeamResponse.from_team(t) for t in await team_service.list_teams_by_sort_order()]
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error("listing teams by sort order", e)


@app.put(
    f"{API_PREFIX}/admin/teams/order",
    response_model=TeamOrderResponse,
    dependencies=[Depends(require_admin)],
    responses={400: {"model": ErrorResponse, "description": "Invalid order data"}}
)
async def set_team_order(body: TeamOrderUpdate) -> TeamOrderResponse:
    """Bulk-assign sort positions; unknown team ids are skipped."""
    try:
        updated = await team_service.set_order([(entry.id, entry.sort_order) for entry in body.order])
        return TeamOrderResponse(updated_count=updated)
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error("updating team order", e)


@app.post(
    f"{API_PREFIX}/admin/reset-votes",
    response_model=ResetVotesResponse,
    dependencies=[Depends(require_admin)]
)
async def reset_votes() -> ResetVotesResponse:
    """Clear every vote and zero every tally."""
    try:
        votes_deleted, teams_updated = await team_service.reset_votes()
        return ResetVotesResponse(votes_deleted=votes_deleted, teams_updated=teams_updated)
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error("resetting votes", e)


@app.post(
    f"{API_PREFIX}/admin/reconcile-tallies",
    response_model=ReconcileResponse,
    dependencies=[Depends(require_admin)]
)
async def reconcile_tallies() -> ReconcileResponse:
    """Recompute hearts from the vote ledger and report what changed."""
    try:
        drifted = await team_service.reconcile_tallies()
        return ReconcileResponse(repaired=[
            TallyDrift(team_id=team_id, stored_hearts=stored, ledger_count=actual)
            for team_id, (stored, actual) in sorted(drifted.items())
        ])
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error("reconciling tallies", e)


@app.get(f"{API_PREFIX}/voting-settings", response_model=VotingSettingsResponse)
async def get_voting_settings() -> VotingSettingsResponse:
    try:
        return VotingSettingsResponse.from_settings(await team_service.get_voting_settings())
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error("reading voting settings", e)


@app.put(
    f"{API_PREFIX}/admin/voting-settings",
    response_model=VotingSettingsResponse,
    dependencies=[Depends(require_admin)]
)
async def update_voting_settings(body: VotingSettingsUpdate) -> VotingSettingsResponse:
    """Open or close voting."""
    try:
        voting = await team_service.set_voting_open(body.is_voting_open)
        return VotingSettingsResponse.from_settings(voting)
    except ContestError:
        raise
    except Exception as e:
        raise _internal_error("updating voting settings", e)


# ═══════════════════════════════════════════════════════════════════
# OPERATIONS
# ═══════════════════════════════════════════════════════════════════

@app.get(
    f"{API_PREFIX}/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check() -> HealthResponse:
    """
    Check health of the service and its dependencies.

    Verifies the store and, when enabled, Redis.
    """
    services = {}

    try:
        store_healthy = await database.check_health()
        services[settings.STORAGE_BACKEND] = "connected" if store_healthy else "disconnected"
    except Exception as e:
        logger.error(f"Store health check error: {e}")
        services[settings.STORAGE_BACKEND] = "error"

    if settings.REDIS_ENABLED:
        try:
            await redis_client.ping()
            services["redis"] = "connected"
        except Exception as e:
            logger.error(f"Redis health check error: {e}")
            services["redis"] = "disconnected"

    all_healthy = all(state == "connected" for state in services.values())

    overall_status = "healthy" if all_healthy else "unhealthy"
    status_code = status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE

    response = HealthResponse(
        status=overall_status,
        services=services,
        timestamp=get_current_timestamp()
    )

    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(mode="json")
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "endpoints": {
            "cast_vote": f"{API_PREFIX}/teams/{{team_id}}/vote",
            "vote_status": f"{API_PREFIX}/vote-status",
            "teams": f"{API_PREFIX}/teams",
            "global_chat": f"{API_PREFIX}/chat",
            "team_chat": f"{API_PREFIX}/teams/{{team_id}}/chat",
            "voting_settings": f"{API_PREFIX}/voting-settings",
            "health": f"{API_PREFIX}/health",
            "metrics": "/metrics"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.contest_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
