"""FastAPI backend for rushvote."""

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import config, publication
from .auth import AUTH_ENABLED, Voter, get_optional_voter, require_admin, require_voter
from .bus import ALL_TOPICS, EventStream
from .errors import PermissionDenied, RushVoteError
from .logging_config import set_correlation_id, set_current_voter, setup_logging
from .services import Services, build_services
from .shutdown import shutdown_coordinator
from .telemetry import instrument_app, setup_telemetry
from .version import get_version_info

logger = logging.getLogger(__name__)


# =============================================================================
# Request models
# =============================================================================


class CreateRoundRequest(BaseModel):
    """Request to create a round."""
    name: str
    archetype: str = Field(..., description="scored, interaction or deliberation")
    open: bool = False
    scheduledAt: Optional[datetime] = None
    confirm: bool = False


class TransitionRequest(BaseModel):
    """Body for open/reopen. Opening over another open round needs confirm."""
    confirm: bool = False


class OverrideRequest(BaseModel):
    """Administrative open/close override."""
    action: str = Field(..., pattern="^(open|close)$")
    confirm: bool = False


class RoundControlRequest(BaseModel):
    """Partial update of a deliberation round's live state."""
    roundId: str
    currentPnmId: Optional[str] = None
    votingOpen: Optional[bool] = None
    resultsRevealed: Optional[bool] = None
    sealedPnmIds: Optional[List[str]] = None
    sealedResults: Optional[Dict[str, Dict[str, Any]]] = None


class CandidateRequest(BaseModel):
    """Identifies a candidate within a deliberation round."""
    pnmId: str


class DecisionRequest(BaseModel):
    """Yes/no decision for the active deliberation candidate."""
    pnmId: str
    roundId: str
    decision: bool


class InteractionRequest(BaseModel):
    """Did-interact record for an interaction round."""
    pnmId: str
    roundId: str
    interacted: bool


class VoteRequest(BaseModel):
    """Score for a candidate in a scored round."""
    pnmId: str
    roundId: str
    score: int


class PublishRequest(BaseModel):
    """Toggle for a publication flag."""
    published: bool


# Round-control body fields -> DeliberationService.apply_control keywords
CONTROL_FIELDS = {
    "currentPnmId": "current_candidate_id",
    "votingOpen": "voting_open",
    "resultsRevealed": "results_revealed",
    "sealedPnmIds": "sealed_candidate_ids",
    "sealedResults": "sealed_results",
}


# =============================================================================
# Application
# =============================================================================


def get_services(request: Request) -> Services:
    return request.app.state.services


async def _advance_rounds_periodically(services: Services, interval: float) -> None:
    """Open scheduled rounds as their start time passes."""
    while True:
        await asyncio.sleep(interval)
        try:
            await services.rounds.advance_due()
        except RushVoteError as e:
            logger.warning("Scheduled round advance failed: %s", e.message)
        except Exception:
            logger.exception("Scheduled round advance crashed; retrying next tick")


def create_app(
    services: Optional[Services] = None,
    advance_interval: Optional[float] = None,
) -> FastAPI:
    """Build the API application.

    Args:
        services: Pre-built components (tests); built from config when None
        advance_interval: Seconds between scheduled-round checks (0 disables)
    """
    interval = config.ADVANCE_INTERVAL if advance_interval is None else advance_interval

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        shutdown_coordinator.reset()
        app.state.services = services or build_services()

        scheduler = None
        if interval > 0:
            scheduler = asyncio.create_task(
                _advance_rounds_periodically(app.state.services, interval)
            )
        try:
            yield
        finally:
            shutdown_coordinator.initiate_shutdown()
            try:
                if scheduler:
                    scheduler.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await scheduler
            finally:
                await app.state.services.aclose()

    app = FastAPI(title="rushvote API", lifespan=lifespan)
    if setup_telemetry():
        instrument_app(app)

    # Enable CORS for local development (when running frontend separately)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        set_current_voter(None)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.exception_handler(RushVoteError)
    async def rushvote_error_handler(request: Request, exc: RushVoteError):
        if exc.status_code >= 500:
            logger.error("Unhandled core error: %s", exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__, **exc.details},
        )

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": "rushvote API"}

    @app.get("/api/version")
    async def version():
        """Build and version information."""
        return get_version_info().to_dict()

    @app.get("/api/config")
    async def get_config():
        """Feature availability for clients."""
        return {
            "auth_enabled": AUTH_ENABLED,
            "relay_configured": bool(config.RELAY_URL),
            "score_range": [config.MIN_SCORE, config.MAX_SCORE],
            "prior_weight": config.PRIOR_WEIGHT,
        }

    @app.post("/api/config/reload")
    async def reload_config_endpoint(
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        """Re-read .env and apply the new statistics settings."""
        result = config.reload_config()
        services.apply_config()
        logger.info("Configuration reloaded by %s", admin.voter_id)
        return result

    @app.get("/api/user")
    async def get_user_info(voter: Optional[Voter] = Depends(get_optional_voter)):
        """Current voter from auth headers."""
        if not voter:
            return {"authenticated": False}
        return {
            "authenticated": True,
            "voter_id": voter.voter_id,
            "email": voter.email,
            "display_name": voter.display_name,
            "is_admin": voter.is_admin,
        }

    # -------------------------------------------------------------------------
    # Rounds
    # -------------------------------------------------------------------------

    @app.get("/api/rounds")
    def list_rounds(services: Services = Depends(get_services)):
        """All rounds in creation order."""
        return [r.to_dict() for r in services.rounds.list_rounds()]

    @app.get("/api/rounds/current")
    def current_round(services: Services = Depends(get_services)):
        """The open round, or null."""
        round_ = services.rounds.current()
        return {"round": round_.to_dict() if round_ else None}

    @app.get("/api/rounds/{round_id}")
    def get_round(round_id: str, services: Services = Depends(get_services)):
        return services.rounds.get(round_id).to_dict()

    @app.post("/api/rounds", status_code=201)
    async def create_round(
        request: CreateRoundRequest,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        """Create a round, optionally opening it straight away."""
        round_ = await services.rounds.create(
            request.name,
            request.archetype,
            open_now=request.open,
            scheduled_at=request.scheduledAt,
            confirm=request.confirm,
        )
        return round_.to_dict()

    @app.post("/api/rounds/advance")
    async def advance_rounds(
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        """Open the latest scheduled round that is due, if any."""
        round_ = await services.rounds.advance_due()
        return {"opened": round_.to_dict() if round_ else None}

    @app.post("/api/rounds/{round_id}/open")
    async def open_round(
        round_id: str,
        request: Optional[TransitionRequest] = None,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        """Open a round. 409 with the displaced round unless confirmed."""
        confirm = request.confirm if request else False
        return (await services.rounds.open(round_id, confirm=confirm)).to_dict()

    @app.post("/api/rounds/{round_id}/reopen")
    async def reopen_round(
        round_id: str,
        request: Optional[TransitionRequest] = None,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        """Reopen a closed round."""
        confirm = request.confirm if request else False
        return (await services.rounds.reopen(round_id, confirm=confirm)).to_dict()

    @app.post("/api/rounds/{round_id}/close")
    async def close_round(
        round_id: str,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        return (await services.rounds.close(round_id)).to_dict()

    @app.post("/api/rounds/{round_id}/override")
    async def override_round(
        round_id: str,
        request: OverrideRequest,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        """Administrative open/close in one endpoint."""
        if request.action == "open":
            round_ = await services.rounds.open(round_id, confirm=request.confirm)
        else:
            round_ = await services.rounds.close(round_id)
        return {
            "success": True,
            "message": f"Round {'opened' if request.action == 'open' else 'closed'} successfully",
            "round": round_.to_dict(),
        }

    @app.delete("/api/rounds/{round_id}")
    async def delete_round(
        round_id: str,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        """Delete a round and every ballot cast in it."""
        await services.rounds.delete(round_id)
        return {"status": "ok", "id": round_id}

    # -------------------------------------------------------------------------
    # Deliberation
    # -------------------------------------------------------------------------

    @app.patch("/api/round-control")
    async def round_control(
        request: RoundControlRequest,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        """Apply a partial update to a deliberation round's live state."""
        supplied = request.model_dump(exclude_unset=True)
        supplied.pop("roundId", None)
        changes = {CONTROL_FIELDS[key]: value for key, value in supplied.items()}
        round_ = await services.delibs.apply_control(request.roundId, **changes)
        return round_.to_dict()

    @app.post("/api/delibs/{round_id}/seal")
    async def seal_candidate(
        round_id: str,
        request: CandidateRequest,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        snapshot = await services.delibs.seal(round_id, request.pnmId)
        return {"pnm_id": request.pnmId, "sealed": snapshot.to_dict()}

    @app.post("/api/delibs/{round_id}/unseal")
    async def unseal_candidate(
        round_id: str,
        request: CandidateRequest,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        return (await services.delibs.unseal(round_id, request.pnmId)).to_dict()

    @app.post("/api/delibs/{round_id}/clear")
    async def clear_candidate(
        round_id: str,
        request: CandidateRequest,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        """Delete every decision recorded for a candidate."""
        removed = await services.delibs.clear_decisions(round_id, request.pnmId)
        return {"success": True, "removed": removed}

    @app.get("/api/delibs/{round_id}/tally")
    def candidate_tally(
        round_id: str,
        pnmId: str = Query(...),
        voter: Voter = Depends(require_voter),
        services: Services = Depends(get_services),
    ):
        """Live tally for admins; the visible result for everyone else."""
        if voter.is_admin:
            return {"pnm_id": pnmId, **services.delibs.tally(round_id, pnmId).to_dict()}
        return services.delibs.public_result(round_id, pnmId).to_dict()

    @app.get("/api/delibs/{round_id}/non-majority")
    def non_majority(
        round_id: str,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        """Sealed candidates without a majority yes."""
        return {"pnm_ids": services.delibs.non_majority(round_id)}

    @app.get("/api/delibs/{round_id}/decisions")
    def candidate_decisions(
        round_id: str,
        pnmId: str = Query(...),
        voter: Voter = Depends(require_voter),
        services: Services = Depends(get_services),
    ):
        """Individual decisions (administrators only)."""
        return {"decisions": services.delibs.decisions(round_id, pnmId, is_admin=voter.is_admin)}

    # -------------------------------------------------------------------------
    # Ballots
    # -------------------------------------------------------------------------

    @app.post("/api/delibs/vote")
    async def submit_decision(
        request: DecisionRequest,
        voter: Voter = Depends(require_voter),
        services: Services = Depends(get_services),
    ):
        await services.ballots.submit_decision(
            voter.voter_id, request.pnmId, request.roundId, request.decision
        )
        return {"success": True}

    @app.post("/api/interaction")
    async def submit_interaction(
        request: InteractionRequest,
        voter: Voter = Depends(require_voter),
        services: Services = Depends(get_services),
    ):
        return await services.ballots.submit_interaction(
            voter.voter_id, request.pnmId, request.roundId, request.interacted
        )

    @app.post("/api/vote")
    async def submit_vote(
        request: VoteRequest,
        voter: Voter = Depends(require_voter),
        services: Services = Depends(get_services),
    ):
        return await services.ballots.submit_vote(
            voter.voter_id, request.pnmId, request.roundId, request.score
        )

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def _require_published(services: Services, voter: Voter, key: str) -> None:
        if not voter.is_admin and not publication.is_published(services.db, key):
            raise PermissionDenied("Statistics have not been published")

    @app.get("/api/candidates/rankings")
    def candidate_rankings(
        voter: Voter = Depends(require_voter),
        services: Services = Depends(get_services),
    ):
        """Every voted-on candidate, best shrunk score first."""
        _require_published(services, voter, config.STATS_PUBLISHED_KEY)
        return [s.to_dict() for s in services.aggregator.rank_candidates()]

    @app.get("/api/candidates/{pnm_id}/stats")
    def candidate_stats(
        pnm_id: str,
        voter: Voter = Depends(require_voter),
        services: Services = Depends(get_services),
    ):
        _require_published(services, voter, config.STATS_PUBLISHED_KEY)
        return services.aggregator.compute_vote_stats(pnm_id).to_dict()

    @app.get("/api/candidates/{pnm_id}/interactions")
    def candidate_interactions(
        pnm_id: str,
        voter: Voter = Depends(require_voter),
        services: Services = Depends(get_services),
    ):
        _require_published(services, voter, config.INTERACTION_STATS_PUBLISHED_KEY)
        return services.aggregator.compute_interaction_stats(pnm_id).to_dict()

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    @app.get("/api/settings/stats-published")
    def get_stats_published(services: Services = Depends(get_services)):
        return {"published": publication.is_published(services.db, config.STATS_PUBLISHED_KEY)}

    @app.post("/api/settings/stats-published")
    async def set_stats_published(
        request: PublishRequest,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        published = await publication.set_published(
            services.db, services.bus, config.STATS_PUBLISHED_KEY, request.published
        )
        return {"success": True, "published": published}

    @app.get("/api/settings/interaction-stats-published")
    def get_interaction_stats_published(services: Services = Depends(get_services)):
        return {
            "published": publication.is_published(
                services.db, config.INTERACTION_STATS_PUBLISHED_KEY
            )
        }

    @app.post("/api/settings/interaction-stats-published")
    async def set_interaction_stats_published(
        request: PublishRequest,
        admin: Voter = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        published = await publication.set_published(
            services.db, services.bus, config.INTERACTION_STATS_PUBLISHED_KEY, request.published
        )
        return {"success": True, "published": published}

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    @app.get("/api/events")
    async def event_stream(
        topics: str = Query(ALL_TOPICS, description="Comma-separated topics"),
        services: Services = Depends(get_services),
    ):
        """Stream bus events as Server-Sent Events.

        Each frame is a hint to re-read; clients must fetch the entity it
        names rather than trust the payload.
        """
        topic_list = [t.strip() for t in topics.split(",") if t.strip()] or [ALL_TOPICS]
        stream = EventStream(services.bus, topic_list)

        async def event_generator():
            shutdown_coordinator.register(stream)
            try:
                async for frame in stream.frames():
                    yield frame
                if shutdown_coordinator.is_shutting_down:
                    yield shutdown_coordinator.shutdown_sse_event()
            finally:
                stream.close()
                shutdown_coordinator.unregister(stream)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
