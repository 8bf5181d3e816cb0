import logging
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError

from memplayer.domain.constants import CHUNK_SIZE, REQUEST_TIMEOUT
from memplayer.domain.errors import RemoteSyncError, RemoteTimeoutError
from memplayer.domain.interfaces import RemoteStore
from memplayer.domain.rows import CardContentRow, CardStateRow, NoteRow, ReviewLogRow

MERGE_DUPLICATES = "resolution=merge-duplicates,return=minimal"


class PostgrestStore(RemoteStore):
    """
    Adapter for a Supabase / PostgREST backend (HTTP API).

    Tables: `notes` (keyed by id), `cards` (unique on note_id, cloze_index)
    and `review_logs`. Reviews go through the `submit_review` RPC so the card
    update and the log insert commit in one transaction.
    """

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = REQUEST_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
        client: httpx.AsyncClient | None = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.base_url = url.rstrip("/") + "/rest/v1"
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }
        self._client = client
        self.logger.debug(f"PostgrestStore initialized with url={self.base_url}")

    async def _invoke(
        self,
        method: str,
        path: str,
        params: Any = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            resp = await self._client.request(
                method, f"{self.base_url}/{path}", params=params, json=json, headers=headers
            )
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            self.logger.error(f"PostgREST {method} {path} timed out: {e}")
            raise RemoteTimeoutError(f"{method} {path} timed out") from e
        except httpx.HTTPStatusError as e:
            self.logger.error(
                f"PostgREST {method} {path} failed: {e.response.status_code} {e.response.text}"
            )
            raise RemoteSyncError(f"{method} {path} failed with {e.response.status_code}") from e
        except httpx.HTTPError as e:
            self.logger.error(f"PostgREST {method} {path} failed: {e}")
            raise RemoteSyncError(f"{method} {path} failed: {e}") from e

        if not resp.content:
            return None
        return resp.json()

    async def get_note_hash(self, note_id: str) -> str | None:
        rows = await self._invoke(
            "GET", "notes", params={"id": f"eq.{note_id}", "select": "content_hash"}
        )
        return rows[0]["content_hash"] if rows else None

    async def touch_note(self, note_id: str, at: datetime) -> None:
        await self._patch("notes", note_id, {"last_sync_at": at.isoformat()})

    async def upsert_note(self, row: NoteRow) -> None:
        await self._invoke(
            "POST",
            "notes",
            params={"on_conflict": "id"},
            json=row.model_dump(mode="json"),
            prefer=MERGE_DUPLICATES,
        )

    async def upsert_cards(self, rows: list[CardContentRow]) -> int:
        # Only content columns are sent, so merge-duplicates leaves scheduling columns alone
        written = 0
        for i in range(0, len(rows), self.chunk_size):
            chunk = rows[i : i + self.chunk_size]
            await self._invoke(
                "POST",
                "cards",
                params={"on_conflict": "note_id,cloze_index"},
                json=[r.model_dump(mode="json") for r in chunk],
                prefer=MERGE_DUPLICATES,
            )
            written += len(chunk)
        return written

    async def _patch(self, table: str, row_id: str, fields: dict) -> None:
        await self._invoke(
            "PATCH", table, params={"id": f"eq.{row_id}"}, json=fields, prefer="return=minimal"
        )

    async def soft_delete_note(self, note_id: str) -> None:
        await self._patch("notes", note_id, {"is_deleted": True})

    async def restore_note(self, note_id: str) -> None:
        await self._patch("notes", note_id, {"is_deleted": False})

    async def set_card_suspended(self, card_id: str, suspended: bool) -> None:
        await self._patch("cards", card_id, {"is_suspended": suspended})

    async def reset_card(self, card_id: str, card: CardStateRow) -> None:
        await self._patch(
            "cards",
            card_id,
            card.model_dump(mode="json", exclude={"id", "note_id", "cloze_index", "is_suspended"}),
        )

    async def find_card_id(self, note_id: str, cloze_index: int) -> str | None:
        rows = await self._invoke(
            "GET",
            "cards",
            params={
                "note_id": f"eq.{note_id}",
                "cloze_index": f"eq.{cloze_index}",
                "select": "id",
            },
        )
        return str(rows[0]["id"]) if rows else None

    def _parse_cards(self, rows: list[dict] | None) -> list[CardStateRow]:
        parsed = []
        for row in rows or []:
            try:
                parsed.append(CardStateRow.model_validate(row))
            except ValidationError as e:
                self.logger.warning(
                    f"Skipping corrupt remote card {row.get('note_id')} "
                    f"c{row.get('cloze_index')}: {e.error_count()} error(s)"
                )
        return parsed

    async def fetch_card(self, note_id: str, cloze_index: int) -> CardStateRow | None:
        rows = await self._invoke(
            "GET",
            "cards",
            params={
                "note_id": f"eq.{note_id}",
                "cloze_index": f"eq.{cloze_index}",
                "select": "*",
            },
        )
        parsed = self._parse_cards(rows)
        return parsed[0] if parsed else None

    async def fetch_cards(self, note_id: str | None = None) -> list[CardStateRow]:
        params = {"select": "*", "order": "note_id.asc,cloze_index.asc"}
        if note_id is not None:
            params["note_id"] = f"eq.{note_id}"
        return self._parse_cards(await self._invoke("GET", "cards", params=params))

    async def submit_review(self, card_id: str, card: CardStateRow, log: ReviewLogRow) -> None:
        await self._invoke(
            "POST",
            "rpc/submit_review",
            json={
                "p_card_id": card_id,
                "p_card_update": card.model_dump(
                    mode="json", exclude={"id", "note_id", "cloze_index", "is_suspended"}
                ),
                "p_review_log": log.model_dump(mode="json", exclude={"note_id", "cloze_index"}),
            },
        )

    async def get_review_history(self, start: datetime, end: datetime) -> list[ReviewLogRow]:
        rows = await self._invoke(
            "GET",
            "review_logs",
            params=[
                ("select", "*,cards(note_id,cloze_index)"),
                ("reviewed_at", f"gte.{start.isoformat()}"),
                ("reviewed_at", f"lte.{end.isoformat()}"),
                ("order", "reviewed_at.asc"),
            ],
        )
        logs = []
        for row in rows or []:
            card = row.pop("cards", None) or {}
            logs.append(ReviewLogRow.model_validate({**card, **row}))
        return logs

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
