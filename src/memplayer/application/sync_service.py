"""
Two-way reconciliation between the local vault and the remote store.

Content syncs push note text and content-derived card fields only; the
remote scheduling columns are never part of that payload. Reviews are a
separate, narrower write scoped to one card.

Concurrency rules:
- one in-flight content sync per note; edits arriving meanwhile are coalesced
  into one follow-up run against the latest text
- reviews of the same card are serialized by a per-card lock, and the grade
  is computed inside the lock from the card state left by the previous review
- bulk syncs run with bounded concurrency and isolate failures per note
- every remote call has a finite timeout
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import TypeVar

from memplayer.application.scheduler import Scheduler
from memplayer.application.vault_service import VaultService
from memplayer.domain.constants import REQUEST_TIMEOUT, SYNC_CONCURRENCY
from memplayer.domain.errors import (
    AmbiguousReviewError,
    CardNotFoundError,
    NoteNotFoundError,
    RemoteSyncError,
    RemoteTimeoutError,
)
from memplayer.domain.interfaces import RemoteStore
from memplayer.domain.models import (
    BulkSyncResult,
    Card,
    CardKey,
    Rating,
    ReviewOutcome,
    SyncResult,
)
from memplayer.domain.rows import (
    card_to_content_row,
    card_to_state_row,
    log_to_row,
    note_to_row,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncReconciler:
    def __init__(
        self,
        vault: VaultService,
        store: RemoteStore,
        scheduler: Scheduler | None = None,
        timeout: float = REQUEST_TIMEOUT,
        concurrency: int = SYNC_CONCURRENCY,
        clock: Callable[[], datetime] = utc_now,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.vault = vault
        self.store = store
        self.scheduler = scheduler or Scheduler()
        self.timeout = timeout
        self.concurrency = concurrency
        self.clock = clock

        self._card_locks: defaultdict[CardKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._card_ids: dict[CardKey, str] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._dirty: set[str] = set()
        self._generation = 0

    @property
    def pending_sync_count(self) -> int:
        return self.vault.pending_sync_count

    async def _call(self, awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"{what} timed out after {self.timeout}s")
            raise RemoteTimeoutError(f"{what} timed out after {self.timeout}s") from e

    # ---------- Content sync ----------

    async def sync_note(self, note_id: str) -> SyncResult:
        """
        Push one note's content, coalescing with a sync already in flight.

        If a sync for this note is running, the call waits for it; the running
        sync then makes one more pass with the latest text instead of every
        intermediate edit being sent.

        A note whose file was removed pushes its deletion instead.

        Raises:
            NoteNotFoundError: the note is neither loaded nor removed.
        """
        if not self.vault.has_tombstone(note_id):
            self.vault.get_note(note_id)

        task = self._inflight.get(note_id)
        if task is None or task.done():
            task = asyncio.create_task(self._run_note(note_id))
            self._inflight[note_id] = task
            task.add_done_callback(lambda t: self._forget_task(note_id, t))
        else:
            logger.debug(f"Coalescing sync of {note_id} into the in-flight request")
            self._dirty.add(note_id)
        return await asyncio.shield(task)

    def _forget_task(self, note_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(note_id) is task:
            del self._inflight[note_id]

    async def _run_note(self, note_id: str) -> SyncResult:
        while True:
            self._dirty.discard(note_id)
            result = await self._push_note(note_id)
            if note_id not in self._dirty or not result.ok or result.discarded:
                return result

    async def _push_note(self, note_id: str) -> SyncResult:
        generation = self._generation
        if self.vault.has_tombstone(note_id):
            return await self._push_tombstone(note_id, generation)
        try:
            note = self.vault.get_note(note_id)
        except NoteNotFoundError:
            # Removed while queued
            return SyncResult(note_id, skipped=True)

        cards = self.vault.note_cards(note_id)
        now = self.clock()
        updated = 0
        try:
            if self.vault.get_sync_state(note_id).remote_deleted:
                await self._call(self.store.restore_note(note_id), f"restore of {note_id}")
            remote_hash = await self._call(self.store.get_note_hash(note_id), f"hash lookup for {note_id}")
            skipped = remote_hash == note.content_hash
            if skipped:
                await self._call(self.store.touch_note(note_id, now), f"touch of {note_id}")
            else:
                if remote_hash is None:
                    # Cards reference the note row, so it must exist before them
                    await self._call(
                        self.store.upsert_note(note_to_row(note, now, placeholder=True)),
                        f"note placeholder {note_id}",
                    )
                updated = await self._call(
                    self.store.upsert_cards([card_to_content_row(c) for c in cards]),
                    f"card upsert for {note_id}",
                )
                # The hash is written last: a remote hash that matches means the cards landed
                await self._call(self.store.upsert_note(note_to_row(note, now)), f"note upsert {note_id}")
        except RemoteSyncError as e:
            # Pending flag stays set so a later sync retries; local content is untouched
            logger.error(f"Sync of {note.filepath or note_id} failed: {e}")
            return SyncResult(note_id, failed=1, error=str(e))

        if generation != self._generation:
            logger.info(f"Discarding superseded sync result for {note_id}")
            return SyncResult(note_id, updated=updated, skipped=skipped, discarded=True)

        self.vault.mark_synced(note_id, note.content_hash, now)
        logger.debug(f"Synced {note_id}: {updated} card(s), skipped={skipped}")
        return SyncResult(note_id, updated=updated, skipped=skipped)

    async def _push_tombstone(self, note_id: str, generation: int) -> SyncResult:
        now = self.clock()
        try:
            await self._call(self.store.soft_delete_note(note_id), f"soft delete of {note_id}")
        except RemoteSyncError as e:
            logger.error(f"Deletion of {note_id} failed: {e}")
            return SyncResult(note_id, failed=1, error=str(e))

        if generation != self._generation:
            logger.info(f"Discarding superseded deletion of {note_id}")
            return SyncResult(note_id, deleted=True, discarded=True)

        self.vault.mark_remote_deleted(note_id, now)
        for key in [k for k in self._card_ids if k.note_id == note_id]:
            del self._card_ids[key]
        logger.info(f"Soft-deleted {note_id} on the remote")
        return SyncResult(note_id, deleted=True)

    async def sync_all_pending(self) -> BulkSyncResult:
        """Sync every pending note and deletion with bounded concurrency; one failure never stops the rest."""
        targets = [(n.id, n.filepath) for n in self.vault.pending_notes()]
        targets += [(note_id, note_id) for note_id in self.vault.pending_deletions()]
        semaphore = asyncio.Semaphore(self.concurrency)

        async def one(note_id: str) -> SyncResult:
            async with semaphore:
                return await self.sync_note(note_id)

        outcomes = await asyncio.gather(*(one(note_id) for note_id, _ in targets), return_exceptions=True)

        bulk = BulkSyncResult()
        for (note_id, label), outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(f"Sync of {label} raised: {outcome!r}")
                outcome = SyncResult(note_id, failed=1, error=str(outcome))
            bulk.results.append(outcome)
            if outcome.ok:
                bulk.retried_count += 1
            else:
                bulk.error_count += 1

        logger.info(f"Bulk sync: {bulk.summary()}")
        return bulk

    async def pull_states(self, note_id: str | None = None) -> int:
        """Overlay remote scheduling state onto local cards; returns how many were applied."""
        generation = self._generation
        rows = await self._call(self.store.fetch_cards(note_id), "card state fetch")
        if generation != self._generation:
            logger.info("Discarding superseded card state fetch")
            return 0

        applied = 0
        for row in rows:
            key = CardKey(row.note_id, row.cloze_index)
            if row.id:
                self._card_ids[key] = row.id
            try:
                self.vault.apply_remote_state(row)
            except CardNotFoundError:
                logger.debug(f"Remote card {key.note_id} c{key.cloze_index} has no local note")
                continue
            applied += 1
        return applied

    # ---------- Reviews ----------

    async def _card_id(self, key: CardKey) -> str:
        card_id = self._card_ids.get(key)
        if card_id is None:
            card_id = await self._call(
                self.store.find_card_id(key.note_id, key.cloze_index),
                f"card id lookup for {key.note_id} c{key.cloze_index}",
            )
            if card_id is None:
                raise CardNotFoundError(key.note_id, key.cloze_index)
            self._card_ids[key] = card_id
        return card_id

    async def submit_review(
        self, key: CardKey, rating: Rating | int, now: datetime | None = None
    ) -> ReviewOutcome:
        """
        Grade a card and write the result remotely, then locally.

        Raises:
            InvalidRatingError: rating outside 1..4.
            CardNotFoundError: no such card locally or remotely.
            AmbiguousReviewError: the write timed out; call refresh_card before retrying.
            RemoteSyncError: the write failed; nothing was applied.
        """
        rating = Rating.parse(rating)
        key = CardKey(*key)
        async with self._card_locks[key]:
            generation = self._generation
            card = self.vault.get_card(key)
            outcome = self.scheduler.grade(card, rating, now or self.clock())
            card_id = await self._card_id(key)
            try:
                await self._call(
                    self.store.submit_review(
                        card_id, card_to_state_row(outcome.card, card_id), log_to_row(outcome.log)
                    ),
                    f"review of {key.note_id} c{key.cloze_index}",
                )
            except RemoteTimeoutError as e:
                raise AmbiguousReviewError(
                    f"Review of {key.note_id} c{key.cloze_index} may or may not have been "
                    "saved; refresh the card before retrying"
                ) from e

            if generation != self._generation:
                logger.info(f"Review of {key.note_id} c{key.cloze_index} acknowledged after cancel")
                return outcome
            self.vault.record_review(outcome)
            return outcome

    async def refresh_card(self, key: CardKey) -> Card:
        """Re-derive a card's scheduling state from the remote; required before retrying a review."""
        key = CardKey(*key)
        async with self._card_locks[key]:
            row = await self._call(
                self.store.fetch_card(key.note_id, key.cloze_index),
                f"fetch of {key.note_id} c{key.cloze_index}",
            )
            if row is None:
                raise CardNotFoundError(key.note_id, key.cloze_index)
            if row.id:
                self._card_ids[key] = row.id
            return self.vault.apply_remote_state(row)

    # ---------- Card maintenance ----------

    async def suspend_card(self, key: CardKey, suspended: bool = True) -> Card:
        """
        Suspend or unsuspend a card remotely, then locally.

        Raises:
            CardNotFoundError: no such card locally or remotely.
            RemoteSyncError: the write failed; nothing was applied.
        """
        key = CardKey(*key)
        async with self._card_locks[key]:
            generation = self._generation
            card = self.vault.get_card(key)
            card_id = await self._card_id(key)
            await self._call(
                self.store.set_card_suspended(card_id, suspended),
                f"suspend of {key.note_id} c{key.cloze_index}",
            )
            if generation != self._generation:
                return replace(card, suspended=suspended)
            return self.vault.suspend_card(key, suspended)

    async def reset_card(self, key: CardKey, now: datetime | None = None) -> Card:
        """
        Forget a card's progress remotely, then locally. Review history is kept.

        Raises:
            CardNotFoundError: no such card locally or remotely.
            RemoteSyncError: the write failed; nothing was applied.
        """
        key = CardKey(*key)
        async with self._card_locks[key]:
            generation = self._generation
            reset = self.scheduler.reset(self.vault.get_card(key), now or self.clock())
            card_id = await self._card_id(key)
            await self._call(
                self.store.reset_card(card_id, card_to_state_row(reset, card_id)),
                f"reset of {key.note_id} c{key.cloze_index}",
            )
            if generation != self._generation:
                return reset
            return self.vault.replace_card(reset)

    # ---------- Lifecycle ----------

    def cancel(self) -> None:
        """Stop applying results of work already started (e.g. the vault changed)."""
        self._generation += 1
        self._card_ids.clear()
        logger.debug(f"Sync generation bumped to {self._generation}")

    async def close(self) -> None:
        await self.store.close()
