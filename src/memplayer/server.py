import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from memplayer.application.config import AppConfig, resolve_config
from memplayer.application.factory import get_reconciler, open_vault, save_vault
from memplayer.application.queue_builder import select_session
from memplayer.application.sync_service import SyncReconciler, utc_now
from memplayer.application.vault_service import VaultService
from memplayer.consts import VERSION
from memplayer.domain.errors import (
    AmbiguousReviewError,
    CardNotFoundError,
    InvalidRatingError,
    NoteNotFoundError,
    RemoteSyncError,
)
from memplayer.domain.models import Card, CardKey

# Setup logging
logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")
logger = logging.getLogger("memplayer.server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"memplayer server v{VERSION} starting up...")
    config = resolve_config()
    vault = open_vault(config, utc_now())
    app.state.config = config
    app.state.vault = vault
    app.state.reconciler = get_reconciler(config, vault)
    yield
    # Shutdown
    logger.info("memplayer server shutting down...")
    app.state.reconciler.cancel()
    await app.state.reconciler.close()
    save_vault(config, vault)


app = FastAPI(
    title="memplayer server",
    description="Review queue, grading and sync for a markdown vault.",
    version=VERSION,
    lifespan=lifespan,
)

start_time = time.time()


def _services(request: Request) -> tuple[AppConfig, VaultService, SyncReconciler]:
    state = request.app.state
    return state.config, state.vault, state.reconciler


# ---------- Error mapping ----------


def _error(status: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@app.exception_handler(NoteNotFoundError)
@app.exception_handler(CardNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return _error(404, exc)


@app.exception_handler(InvalidRatingError)
async def invalid_rating_handler(request: Request, exc: InvalidRatingError):
    return _error(422, exc)


@app.exception_handler(RemoteSyncError)
async def remote_error_handler(request: Request, exc: RemoteSyncError):
    logger.error(f"Remote store failure: {exc}")
    return _error(502, exc)


@app.exception_handler(AmbiguousReviewError)
async def ambiguous_review_handler(request: Request, exc: AmbiguousReviewError):
    logger.warning(f"Ambiguous review: {exc}")
    return _error(504, exc)


# ---------- Models ----------


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    pending_sync: int


class QueueEntry(BaseModel):
    note_id: str
    file: str
    cloze_index: int
    due: datetime


class QueueResponse(BaseModel):
    counts: dict[str, int]
    session: list[QueueEntry]


class ReviewRequest(BaseModel):
    rating: int


class CardResponse(BaseModel):
    note_id: str
    cloze_index: int
    state: int
    due: datetime
    stability: float
    difficulty: float
    reps: int
    lapses: int
    suspended: bool = False
    leech: bool = False


class SuspendRequest(BaseModel):
    suspended: bool = True


class SyncRequest(BaseModel):
    pull: bool = True


class SyncStatsResponse(BaseModel):
    synced: int
    failed: int
    pulled: int
    success: bool


def _card_response(card: Card, leech: bool = False) -> CardResponse:
    return CardResponse(
        note_id=card.note_id,
        cloze_index=card.cloze_index,
        state=int(card.state),
        due=card.due,
        stability=card.stability,
        difficulty=card.difficulty,
        reps=card.reps,
        lapses=card.lapses,
        suspended=card.suspended,
        leech=leech,
    )


# ---------- Endpoints ----------


@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Simple health check to verify server is reachable.
    """
    _, vault, _ = _services(request)
    return HealthResponse(
        status="ok",
        version=VERSION,
        uptime_seconds=time.time() - start_time,
        pending_sync=vault.pending_sync_count,
    )


@app.get("/version")
async def get_version():
    return {"version": VERSION}


@app.get("/queue", response_model=QueueResponse)
async def get_queue(request: Request):
    config, vault, _ = _services(request)
    review_queue = vault.build_queue(utc_now())
    session = select_session(review_queue, config.new_cards_per_day, config.reviews_per_day)
    return QueueResponse(
        counts=review_queue.counts(),
        session=[
            QueueEntry(note_id=i.note_id, file=i.filepath, cloze_index=i.cloze_index, due=i.due)
            for i in session
        ],
    )


@app.get("/forecast")
async def get_forecast(request: Request, days: int = Query(default=7, ge=1, le=365)):
    _, vault, _ = _services(request)
    return vault.forecast(utc_now(), days)


@app.post("/notes/{note_id}/cards/{cloze_index}/review", response_model=CardResponse)
async def submit_review(request: Request, note_id: str, cloze_index: int, req: ReviewRequest):
    """Grade a card. A 504 means the outcome is unknown: refresh before retrying."""
    config, vault, reconciler = _services(request)
    outcome = await reconciler.submit_review(CardKey(note_id, cloze_index), req.rating)
    save_vault(config, vault)
    return _card_response(outcome.card, outcome.leech)


@app.post("/notes/{note_id}/cards/{cloze_index}/refresh", response_model=CardResponse)
async def refresh_card(request: Request, note_id: str, cloze_index: int):
    """Re-read a card's scheduling state from the remote store."""
    config, vault, reconciler = _services(request)
    card = await reconciler.refresh_card(CardKey(note_id, cloze_index))
    save_vault(config, vault)
    return _card_response(card)


@app.post("/sync", response_model=SyncStatsResponse)
async def trigger_sync(request: Request, req: SyncRequest | None = None):
    """
    Rescan the vault and push every pending note.
    """
    req = req or SyncRequest()
    config, vault, reconciler = _services(request)
    logger.info(f"Sync requested via API: {req}")

    vault.scan(utc_now())
    bulk = await reconciler.sync_all_pending()
    pulled = await reconciler.pull_states() if req.pull else 0
    save_vault(config, vault)

    return SyncStatsResponse(
        synced=bulk.retried_count,
        failed=bulk.error_count,
        pulled=pulled,
        success=bulk.error_count == 0,
    )


@app.post("/notes/{note_id}/cards/{cloze_index}/suspend", response_model=CardResponse)
async def suspend_card(
    request: Request, note_id: str, cloze_index: int, req: SuspendRequest | None = None
):
    """Suspend a card, or unsuspend it with {"suspended": false}."""
    req = req or SuspendRequest()
    config, vault, reconciler = _services(request)
    card = await reconciler.suspend_card(CardKey(note_id, cloze_index), req.suspended)
    save_vault(config, vault)
    return _card_response(card)


@app.post("/notes/{note_id}/cards/{cloze_index}/reset", response_model=CardResponse)
async def reset_card(request: Request, note_id: str, cloze_index: int):
    """Forget a card's progress; it returns as a New card due now."""
    config, vault, reconciler = _services(request)
    card = await reconciler.reset_card(CardKey(note_id, cloze_index))
    save_vault(config, vault)
    return _card_response(card)
