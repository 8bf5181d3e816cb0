"""
Remote Store Factory
Centralizes the logic for selecting the remote store adapter.
"""

import logging
from datetime import datetime

from memplayer.application.config import AppConfig
from memplayer.application.scheduler import Scheduler
from memplayer.application.sync_service import SyncReconciler
from memplayer.application.vault_service import VaultService
from memplayer.domain.interfaces import RemoteStore
from memplayer.domain.rows import card_to_content_row, card_to_state_row, note_to_row
from memplayer.infrastructure.adapters.memory_store import MemoryStore
from memplayer.infrastructure.adapters.postgrest_store import PostgrestStore
from memplayer.infrastructure.local_store import LocalStateStore

logger = logging.getLogger(__name__)


def get_remote_store(config: AppConfig) -> RemoteStore:
    """
    Returns the RemoteStore implementation selected by config.backend.

    Raises:
        ValueError: postgrest selected without remote_url / remote_key.
    """
    if config.backend == "postgrest":
        if not config.remote_url or not config.remote_key:
            raise ValueError("backend 'postgrest' needs remote_url and remote_key")
        logger.debug(f"Backend: PostgREST at {config.remote_url}")
        return PostgrestStore(
            url=config.remote_url,
            key=config.remote_key,
            timeout=config.request_timeout,
            chunk_size=config.chunk_size,
        )

    logger.debug("Backend: in-memory store")
    return MemoryStore()


def open_vault(config: AppConfig, now: datetime) -> VaultService:
    """Restore local state from the state file, then scan the vault."""
    vault = VaultService(root=config.vault_root, occurrence_threshold=config.occurrence_warning_threshold)
    state = LocalStateStore(config.state_file).load()
    vault.restore(state.cards, state.sync, state.logs, now)
    vault.scan(now)
    return vault


def save_vault(config: AppConfig, vault: VaultService) -> None:
    cards, sync, logs = vault.snapshot()
    LocalStateStore(config.state_file).save(cards, sync, logs)


def get_reconciler(config: AppConfig, vault: VaultService) -> SyncReconciler:
    store = get_remote_store(config)
    if isinstance(store, MemoryStore):
        # Offline: the local state is the only copy, mirror it into the store
        notes = [
            note_to_row(n).model_copy(
                update={
                    "content_hash": vault.get_sync_state(n.id).synced_hash,
                    "is_deleted": vault.get_sync_state(n.id).remote_deleted,
                }
            )
            for n in vault.notes()
        ]
        cards = [(card_to_content_row(c), card_to_state_row(c)) for c in vault.cards(include_orphaned=True)]
        store.seed(notes, cards)
    return SyncReconciler(
        vault,
        store,
        scheduler=Scheduler(config.scheduler_params()),
        timeout=config.request_timeout,
        concurrency=config.sync_concurrency,
    )
