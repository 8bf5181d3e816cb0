import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from memplayer.domain.errors import RemoteSyncError, RemoteTimeoutError
from memplayer.domain.rows import CardContentRow, CardStateRow, NoteRow, ReviewLogRow
from memplayer.infrastructure.adapters.postgrest_store import PostgrestStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _store(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PostgrestStore("https://db.example.com/", "secret", client=client, **kwargs)


def _card_row(**overrides):
    row = {
        "id": "c-1",
        "note_id": "n",
        "cloze_index": 1,
        "state": 2,
        "due": NOW.isoformat(),
        "stability": 4.0,
        "difficulty": 5.0,
        "reps": 3,
        "lapses": 0,
        "answer_text": "ignored",
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_get_note_hash_sends_auth_and_filter():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{"content_hash": "abc"}])

    store = _store(handler)
    assert await store.get_note_hash("n1") == "abc"

    request = seen[0]
    assert request.url.path == "/rest/v1/notes"
    assert request.url.params["id"] == "eq.n1"
    assert request.headers["apikey"] == "secret"
    assert request.headers["authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_get_note_hash_missing():
    store = _store(lambda request: httpx.Response(200, json=[]))
    assert await store.get_note_hash("n1") is None


@pytest.mark.asyncio
async def test_upsert_note_merges_on_id():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201)

    store = _store(handler)
    await store.upsert_note(NoteRow(id="n", relative_path="a.md", content_hash="h"))

    request = seen[0]
    assert request.method == "POST"
    assert request.url.params["on_conflict"] == "id"
    assert "resolution=merge-duplicates" in request.headers["prefer"]
    assert json.loads(request.content)["content_hash"] == "h"


@pytest.mark.asyncio
async def test_touch_note_patches_last_sync():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    store = _store(handler)
    await store.touch_note("n", NOW)

    assert seen[0].method == "PATCH"
    assert json.loads(seen[0].content) == {"last_sync_at": NOW.isoformat()}


@pytest.mark.asyncio
async def test_upsert_cards_chunks_and_sends_content_only():
    bodies = []

    def handler(request):
        assert request.url.params["on_conflict"] == "note_id,cloze_index"
        bodies.append(json.loads(request.content))
        return httpx.Response(201)

    store = _store(handler, chunk_size=2)
    rows = [CardContentRow(note_id="n", cloze_index=i, answer_text=f"a{i}") for i in range(1, 6)]

    assert await store.upsert_cards(rows) == 5
    assert [len(b) for b in bodies] == [2, 2, 1]
    sent_keys = set(bodies[0][0])
    assert sent_keys == {"note_id", "cloze_index", "answer_text", "section_path", "tags"}


@pytest.mark.asyncio
async def test_fetch_cards_skips_corrupt_rows():
    def handler(request):
        assert request.url.params["note_id"] == "eq.n"
        return httpx.Response(
            200, json=[_card_row(), _card_row(cloze_index=2, stability=-1.0), _card_row(cloze_index=3, state=7)]
        )

    store = _store(handler)
    rows = await store.fetch_cards("n")
    assert [r.cloze_index for r in rows] == [1]
    assert rows[0].id == "c-1"


@pytest.mark.asyncio
async def test_fetch_card_and_find_card_id():
    def handler(request):
        if request.url.params["select"] == "id":
            return httpx.Response(200, json=[{"id": 42}])
        return httpx.Response(200, json=[_card_row()])

    store = _store(handler)
    assert await store.find_card_id("n", 1) == "42"
    row = await store.fetch_card("n", 1)
    assert row.reps == 3


@pytest.mark.asyncio
async def test_fetch_card_missing():
    store = _store(lambda request: httpx.Response(200, json=[]))
    assert await store.fetch_card("n", 1) is None
    assert await store.find_card_id("n", 1) is None


@pytest.mark.asyncio
async def test_submit_review_calls_rpc():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    store = _store(handler)
    card = CardStateRow(
        id="c-1", note_id="n", cloze_index=1, state=2, due=NOW, stability=4.0, difficulty=5.0, reps=4
    )
    log = ReviewLogRow(
        note_id="n", cloze_index=1, grade=3, state=2, due=NOW, stability=3.0, difficulty=5.0,
        reviewed_at=NOW,
    )
    await store.submit_review("c-1", card, log)

    request = seen[0]
    assert request.url.path == "/rest/v1/rpc/submit_review"
    body = json.loads(request.content)
    assert body["p_card_id"] == "c-1"
    assert body["p_card_update"]["reps"] == 4
    assert "note_id" not in body["p_card_update"]
    assert "is_suspended" not in body["p_card_update"]
    assert body["p_review_log"]["grade"] == 3


@pytest.mark.asyncio
async def test_fetch_cards_reads_suspension_and_rejects_low_stability():
    def handler(request):
        return httpx.Response(
            200, json=[_card_row(is_suspended=True), _card_row(cloze_index=2, stability=0.05)]
        )

    rows = await _store(handler).fetch_cards()
    assert [(r.cloze_index, r.is_suspended) for r in rows] == [(1, True)]


@pytest.mark.asyncio
async def test_fetch_cards_skips_naive_timestamps():
    naive = NOW.replace(tzinfo=None).isoformat()
    store = _store(lambda request: httpx.Response(200, json=[_card_row(due=naive)]))
    assert await store.fetch_cards() == []


@pytest.mark.asyncio
async def test_get_review_history_flattens_card_join():
    def handler(request):
        assert request.url.params.get_list("reviewed_at") == [
            f"gte.{(NOW - timedelta(days=1)).isoformat()}",
            f"lte.{NOW.isoformat()}",
        ]
        return httpx.Response(
            200,
            json=[
                {
                    "grade": 4,
                    "state": 2,
                    "due": NOW.isoformat(),
                    "stability": 4.0,
                    "difficulty": 5.0,
                    "reviewed_at": NOW.isoformat(),
                    "cards": {"note_id": "n", "cloze_index": 2},
                }
            ],
        )

    store = _store(handler)
    (log,) = await store.get_review_history(NOW - timedelta(days=1), NOW)
    assert (log.note_id, log.cloze_index, log.grade) == ("n", 2, 4)


@pytest.mark.asyncio
async def test_http_error_becomes_remote_sync_error():
    store = _store(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(RemoteSyncError, match="500"):
        await store.get_note_hash("n")


@pytest.mark.asyncio
async def test_timeout_becomes_remote_timeout_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    store = _store(handler)
    with pytest.raises(RemoteTimeoutError):
        await store.get_note_hash("n")


@pytest.mark.asyncio
async def test_connection_error_becomes_remote_sync_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    store = _store(handler)
    with pytest.raises(RemoteSyncError):
        await store.get_note_hash("n")
    await store.close()
    assert store._client is None


@pytest.fixture
def patches():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    return seen, _store(handler)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "call, table, body",
    [
        (lambda s: s.soft_delete_note("n"), "notes", {"is_deleted": True}),
        (lambda s: s.restore_note("n"), "notes", {"is_deleted": False}),
        (lambda s: s.set_card_suspended("n", True), "cards", {"is_suspended": True}),
    ],
)
async def test_flag_updates_patch_one_row(patches, call, table, body):
    seen, store = patches
    await call(store)

    request = seen[0]
    assert request.method == "PATCH"
    assert request.url.path == f"/rest/v1/{table}"
    assert request.url.params["id"] == "eq.n"
    assert request.headers["prefer"] == "return=minimal"
    assert json.loads(request.content) == body


@pytest.mark.asyncio
async def test_reset_card_patches_scheduling_columns(patches):
    seen, store = patches
    fresh = CardStateRow(
        id="c-1", note_id="n", cloze_index=1, state=0, due=NOW, stability=0, difficulty=0,
        is_suspended=True,
    )
    await store.reset_card("c-1", fresh)

    request = seen[0]
    assert request.method == "PATCH"
    assert request.url.params["id"] == "eq.c-1"
    body = json.loads(request.content)
    assert body["state"] == 0 and body["reps"] == 0 and body["last_review"] is None
    assert not {"id", "note_id", "cloze_index", "is_suspended"} & set(body)
