"""
Unit Tests — DocumentRepository (in-memory and SQL backends)
═════════════════════════════════════════════════════════════
Every test taking `any_repository` runs once per backend, so the lifecycle
rules are proven identical for InMemoryDocumentRepository and
SqlDocumentRepository (SQLite in memory).

Coverage targets:
  ✅ create → uploading, progress 0, one upload_start event (sequence 1)
  ✅ Happy path uploading → parsing → processing → generating → completed
  ✅ Entry events per status; same-status writes record `progress`
  ✅ Backward / skipping edges raise InvalidTransitionError, nothing written
  ✅ Writes to completed / failed documents are ignored (None returned)
  ✅ Progress never decreases, caps at 99 until completed, frozen on failure
  ✅ failed always carries a non-empty error
  ✅ recent_events newest first, limited, capped by event_history_cap
  ✅ Ownership enforcement on get / get_content
  ✅ Content round-trip (text + chunks)
  ✅ search_content: case-insensitive substring, index order, limit, ownership
  ✅ list_by_owner newest first; list_stale; stats
  ✅ Listeners see events in sequence order under concurrent writers
  ✅ Per-document locks are released once idle
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from docflow.core.errors import InvalidTransitionError, NotFoundError, OwnershipError
from docflow.processing.chunking import Chunk, chunk_text
from docflow.repository.base import KeyedLock, generate_document_id, utcnow
from docflow.schemas.documents import DocumentContent, DocumentStatus, EventKind

S = DocumentStatus


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

async def _walk_to(repository, document_id: str, target: DocumentStatus) -> None:
    for status in (S.PARSING, S.PROCESSING, S.GENERATING, S.COMPLETED):
        await repository.set_status(document_id, status)
        if status is target:
            return


_SEARCH_PARAGRAPHS = [
    "Invoice total is due on receipt.",
    "Shipping address is on file.",
    "The INVOICE number is printed above.",
    "Payment terms are thirty days.",
    "Keep a copy of this invoice.",
]


def _searchable_content(document_id: str) -> DocumentContent:
    text = "\n\n".join(_SEARCH_PARAGRAPHS)
    chunks, start = [], 0
    for index, paragraph in enumerate(_SEARCH_PARAGRAPHS):
        chunks.append(Chunk(index, paragraph, start, start + len(paragraph)))
        start += len(paragraph) + 2
    return DocumentContent(document_id, text, chunks)


# ─────────────────────────────────────────────────────────────────────────────
# Creation & identifiers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.repository
class TestCreate:

    async def test_create_starts_in_uploading(self, any_repository, make_new_document, owner_id):
        document = await any_repository.create(make_new_document())

        assert document.status is S.UPLOADING
        assert document.progress == 0
        assert document.owner_id == owner_id
        assert document.error is None
        assert document.created_at.tzinfo is not None

    async def test_create_records_upload_start(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document(size=321))
        events = await any_repository.recent_events(document.id, 10)

        assert len(events) == 1
        assert events[0].event is EventKind.UPLOAD_START
        assert events[0].sequence == 1
        assert events[0].status is S.UPLOADING
        assert events[0].data == {"name": "Quarterly report", "size_bytes": 321}

    async def test_get_round_trips(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document(kind="pdf", filename="a.pdf"))
        fetched = await any_repository.get(document.id)
        assert fetched == document

    def test_document_id_format(self):
        document_id = generate_document_id("alice")
        owner, millis, suffix = document_id.split("_")
        assert owner == "alice"
        assert millis.isdigit()
        assert len(suffix) == 9
        assert suffix.isalnum() and suffix == suffix.lower()

    def test_document_ids_are_unique(self):
        assert len({generate_document_id("o") for _ in range(500)}) == 500


# ─────────────────────────────────────────────────────────────────────────────
# State machine
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.repository
class TestTransitions:

    async def test_happy_path_with_entry_events(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())

        expected = [
            (S.PARSING,    EventKind.PARSE_START,     25),
            (S.PROCESSING, EventKind.PARSE_COMPLETE,  50),
            (S.GENERATING, EventKind.EMBEDDING_START, 75),
            (S.COMPLETED,  EventKind.COMPLETE,        100),
        ]
        for status, _, progress in expected:
            updated = await any_repository.set_status(document.id, status)
            assert updated.status is status
            assert updated.progress == progress

        events = list(reversed(await any_repository.recent_events(document.id, 10)))
        assert [e.sequence for e in events] == [1, 2, 3, 4, 5]
        assert [e.event for e in events[1:]] == [kind for _, kind, _ in expected]

    async def test_same_status_write_records_progress(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        await any_repository.set_status(document.id, S.PARSING)

        updated = await any_repository.set_status(document.id, S.PARSING, 40)
        latest = (await any_repository.recent_events(document.id, 1))[0]

        assert updated.progress == 40
        assert latest.event is EventKind.PROGRESS
        assert latest.progress == 40

    async def test_status_accepts_plain_strings(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        updated = await any_repository.set_status(document.id, "parsing")
        assert updated.status is S.PARSING

    @pytest.mark.parametrize(
        "start,target",
        [
            (S.PARSING,    S.UPLOADING),
            (S.PROCESSING, S.PARSING),
            (S.GENERATING, S.UPLOADING),
            (S.UPLOADING,  S.PROCESSING),
            (S.UPLOADING,  S.COMPLETED),
            (S.PARSING,    S.GENERATING),
        ],
    )
    async def test_illegal_edges_rejected(self, any_repository, make_new_document, start, target):
        document = await any_repository.create(make_new_document())
        if start is not S.UPLOADING:
            await _walk_to(any_repository, document.id, start)
        before = await any_repository.get(document.id)
        events_before = await any_repository.recent_events(document.id, 10)

        with pytest.raises(InvalidTransitionError):
            await any_repository.set_status(document.id, target)

        assert await any_repository.get(document.id) == before
        assert await any_repository.recent_events(document.id, 10) == events_before

    @pytest.mark.parametrize("terminal", [S.COMPLETED, S.FAILED])
    async def test_terminal_documents_ignore_writes(self, any_repository, make_new_document, terminal):
        document = await any_repository.create(make_new_document())
        if terminal is S.COMPLETED:
            await _walk_to(any_repository, document.id, S.COMPLETED)
        else:
            await any_repository.mark_failed(document.id, "boom")
        before = await any_repository.get(document.id)
        events_before = await any_repository.recent_events(document.id, 10)

        for status in (S.PARSING, S.FAILED, terminal):
            assert await any_repository.set_status(document.id, status) is None

        assert await any_repository.get(document.id) == before
        assert await any_repository.recent_events(document.id, 10) == events_before

    async def test_unknown_document_raises(self, any_repository):
        with pytest.raises(NotFoundError):
            await any_repository.set_status("nobody_0_missing00", S.PARSING)

    async def test_unknown_fields_rejected(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        with pytest.raises(ValueError):
            await any_repository.set_status(document.id, S.PARSING, owner_id="someone-else")

    async def test_completion_writes_derived_fields(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        await _walk_to(any_repository, document.id, S.GENERATING)

        done = await any_repository.set_status(
            document.id, S.COMPLETED,
            word_count=50, chunk_count=1, text_preview="word0 word1", page_count=1,
        )
        fetched = await any_repository.get(document.id)

        assert done.word_count == fetched.word_count == 50
        assert fetched.chunk_count == 1
        assert fetched.text_preview == "word0 word1"
        assert fetched.page_count == 1

    async def test_updated_at_never_moves_backwards(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        stamps = [document.updated_at]
        for status in (S.PARSING, S.PROCESSING, S.GENERATING, S.COMPLETED):
            stamps.append((await any_repository.set_status(document.id, status)).updated_at)
        assert stamps == sorted(stamps)


# ─────────────────────────────────────────────────────────────────────────────
# Progress & failure
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.repository
class TestProgressAndFailure:

    async def test_progress_never_decreases(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        await any_repository.set_status(document.id, S.PARSING, 45)

        updated = await any_repository.set_status(document.id, S.PARSING, 10)
        assert updated.progress == 45

        # stage default (50) is still respected going forward
        updated = await any_repository.set_status(document.id, S.PROCESSING)
        assert updated.progress == 50

    async def test_progress_capped_below_100_until_completed(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        await any_repository.set_status(document.id, S.PARSING)

        updated = await any_repository.set_status(document.id, S.PARSING, 100)
        assert updated.progress == 99
        assert updated.status is S.PARSING

    async def test_failed_freezes_progress(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        await any_repository.set_status(document.id, S.PARSING)
        await any_repository.set_status(document.id, S.PROCESSING)

        failed = await any_repository.set_status(document.id, S.FAILED, 90, error="disk on fire")
        assert failed.progress == 50
        assert failed.error == "disk on fire"

    @pytest.mark.parametrize("start", [S.UPLOADING, S.PARSING, S.PROCESSING, S.GENERATING])
    async def test_any_non_terminal_state_may_fail(self, any_repository, make_new_document, start):
        document = await any_repository.create(make_new_document())
        if start is not S.UPLOADING:
            await _walk_to(any_repository, document.id, start)

        failed = await any_repository.mark_failed(document.id, "bad bytes")
        latest = (await any_repository.recent_events(document.id, 1))[0]

        assert failed.status is S.FAILED
        assert latest.event is EventKind.ERROR
        assert latest.error == "bad bytes"

    @pytest.mark.parametrize("error", [None, ""])
    async def test_failed_always_has_an_error(self, any_repository, make_new_document, error):
        document = await any_repository.create(make_new_document())
        failed = await any_repository.set_status(document.id, S.FAILED, error=error)
        assert failed.error == "Processing failed"
        assert (await any_repository.get(document.id)).error == "Processing failed"


# ─────────────────────────────────────────────────────────────────────────────
# Event history
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.repository
class TestEventHistory:

    async def test_recent_events_newest_first_and_limited(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        await any_repository.set_status(document.id, S.PARSING)
        for pct in (30, 35, 40):
            await any_repository.set_status(document.id, S.PARSING, pct)

        events = await any_repository.recent_events(document.id, 3)
        assert [e.sequence for e in events] == [5, 4, 3]

    @pytest.mark.parametrize("limit", [0, -1])
    async def test_non_positive_limit_returns_nothing(self, any_repository, make_new_document, limit):
        document = await any_repository.create(make_new_document())
        assert await any_repository.recent_events(document.id, limit) == []

    async def test_events_carry_custom_data(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        await any_repository.set_status(document.id, S.PARSING, data={"attempt": 2})
        latest = (await any_repository.recent_events(document.id, 1))[0]
        assert latest.data == {"attempt": 2}

    async def test_memory_history_capped(self, make_new_document):
        from docflow.repository.memory import InMemoryDocumentRepository

        repository = InMemoryDocumentRepository(event_history_cap=3)
        await self._assert_capped(repository, make_new_document)

    async def test_sql_history_capped(self, make_new_document):
        from docflow.repository.sql import SqlDocumentRepository

        repository = SqlDocumentRepository("sqlite+aiosqlite://", event_history_cap=3)
        await repository.initialize()
        try:
            await self._assert_capped(repository, make_new_document)
        finally:
            await repository.close()

    @staticmethod
    async def _assert_capped(repository, make_new_document):
        document = await repository.create(make_new_document())
        await repository.set_status(document.id, S.PARSING)
        for pct in range(30, 40):
            await repository.set_status(document.id, S.PARSING, pct)

        events = await repository.recent_events(document.id, 100)
        assert [e.sequence for e in events] == [12, 11, 10]


# ─────────────────────────────────────────────────────────────────────────────
# Ownership, content & queries
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.repository
class TestReads:

    async def test_get_enforces_ownership(self, any_repository, make_new_document, other_owner_id):
        document = await any_repository.create(make_new_document())
        with pytest.raises(OwnershipError):
            await any_repository.get(document.id, other_owner_id)

    async def test_get_unknown_raises(self, any_repository):
        with pytest.raises(NotFoundError):
            await any_repository.get("missing")

    async def test_content_round_trip(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        text = "\n\n".join(f"Paragraph {i}. " + "alpha beta gamma " * 30 for i in range(8))
        content = DocumentContent(document.id, text, chunk_text(text, 1000, 200))

        await any_repository.set_content(document.id, content)
        stored = await any_repository.get_content(document.id)

        assert stored.full_text == text
        assert stored.chunks == content.chunks

    async def test_content_missing_until_stored(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        with pytest.raises(NotFoundError):
            await any_repository.get_content(document.id)

    async def test_content_checks_ownership(self, any_repository, make_new_document, other_owner_id):
        document = await any_repository.create(make_new_document())
        await any_repository.set_content(document.id, DocumentContent(document.id, "hi", []))
        with pytest.raises(OwnershipError):
            await any_repository.get_content(document.id, other_owner_id)

    async def test_set_content_unknown_document(self, any_repository):
        with pytest.raises(NotFoundError):
            await any_repository.set_content("missing", DocumentContent("missing", "x", []))

    async def test_search_content_case_insensitive_in_index_order(
        self, any_repository, make_new_document, owner_id,
    ):
        document = await any_repository.create(make_new_document())
        await any_repository.set_content(document.id, _searchable_content(document.id))

        matches = await any_repository.search_content(document.id, "invoice", owner_id=owner_id)

        assert [c.index for c in matches] == [0, 2, 4]
        assert [c.content for c in matches] == [
            "Invoice total is due on receipt.",
            "The INVOICE number is printed above.",
            "Keep a copy of this invoice.",
        ]

    async def test_search_content_respects_limit(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        await any_repository.set_content(document.id, _searchable_content(document.id))

        assert [c.index for c in await any_repository.search_content(document.id, "INVOICE", limit=2)] == [0, 2]
        assert await any_repository.search_content(document.id, "invoice", limit=0) == []

    async def test_search_content_no_match_or_no_content(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        assert await any_repository.search_content(document.id, "invoice") == []

        await any_repository.set_content(document.id, _searchable_content(document.id))
        assert await any_repository.search_content(document.id, "refund") == []

    async def test_search_content_checks_ownership(self, any_repository, make_new_document, other_owner_id):
        document = await any_repository.create(make_new_document())
        await any_repository.set_content(document.id, _searchable_content(document.id))

        with pytest.raises(OwnershipError):
            await any_repository.search_content(document.id, "invoice", owner_id=other_owner_id)
        with pytest.raises(NotFoundError):
            await any_repository.search_content("missing", "invoice")

    async def test_list_by_owner_newest_first(self, any_repository, make_new_document, other_owner_id):
        ids = []
        for n in range(3):
            ids.append((await any_repository.create(make_new_document(name=f"doc {n}"))).id)
            await asyncio.sleep(0.002)
        await any_repository.create(make_new_document(owner=other_owner_id))

        listed = await any_repository.list_by_owner(make_new_document().owner_id)
        assert [d.id for d in listed] == list(reversed(ids))
        assert await any_repository.count_by_owner(other_owner_id) == 1
        assert await any_repository.list_by_owner("nobody") == []

    async def test_list_stale_skips_terminal(self, any_repository, make_new_document):
        waiting = await any_repository.create(make_new_document(name="waiting"))
        done = await any_repository.create(make_new_document(name="done"))
        await _walk_to(any_repository, done.id, S.COMPLETED)

        future = utcnow() + timedelta(seconds=5)
        past = utcnow() - timedelta(hours=1)

        assert [d.id for d in await any_repository.list_stale(future)] == [waiting.id]
        assert await any_repository.list_stale(past) == []

    async def test_stats(self, any_repository, make_new_document, other_owner_id):
        first = await any_repository.create(make_new_document())
        await any_repository.create(make_new_document())
        await any_repository.create(make_new_document(owner=other_owner_id))
        await any_repository.mark_failed(first.id, "nope")

        stats = await any_repository.stats()
        assert stats["total_documents"] == 3
        assert stats["owners"] == 2
        assert stats["by_status"]["uploading"] == 2
        assert stats["by_status"]["failed"] == 1
        assert stats["by_status"]["completed"] == 0
        assert set(stats["by_status"]) == {s.value for s in DocumentStatus}


# ─────────────────────────────────────────────────────────────────────────────
# Listeners & concurrency
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.repository
class TestListenersAndConcurrency:

    async def test_listener_sees_every_write(self, any_repository, make_new_document):
        seen = []
        any_repository.add_listener(lambda doc, event: seen.append((doc.status, event.event)))

        document = await any_repository.create(make_new_document())
        await _walk_to(any_repository, document.id, S.COMPLETED)

        assert seen == [
            (S.UPLOADING,  EventKind.UPLOAD_START),
            (S.PARSING,    EventKind.PARSE_START),
            (S.PROCESSING, EventKind.PARSE_COMPLETE),
            (S.GENERATING, EventKind.EMBEDDING_START),
            (S.COMPLETED,  EventKind.COMPLETE),
        ]

    async def test_concurrent_writers_keep_sequences_ordered(self, any_repository, make_new_document):
        document = await any_repository.create(make_new_document())
        await any_repository.set_status(document.id, S.PARSING)

        sequences = []
        any_repository.add_listener(
            lambda doc, event: sequences.append(event.sequence) if doc.id == document.id else None
        )

        await asyncio.gather(
            *(any_repository.set_status(document.id, S.PARSING, 26 + n) for n in range(20))
        )

        assert sequences == list(range(3, 23))
        final = await any_repository.get(document.id)
        assert final.progress == 45

    async def test_failing_listener_does_not_break_writes(self, any_repository, make_new_document):
        calls = []

        def broken(doc, event):
            raise RuntimeError("listener bug")

        any_repository.add_listener(broken)
        any_repository.add_listener(lambda doc, event: calls.append(event.sequence))

        document = await any_repository.create(make_new_document())
        await any_repository.set_status(document.id, S.PARSING)

        assert calls == [1, 2]

    async def test_removed_listener_is_not_called(self, any_repository, make_new_document):
        calls = []
        listener = lambda doc, event: calls.append(event)  # noqa: E731
        any_repository.add_listener(listener)
        any_repository.remove_listener(listener)
        any_repository.remove_listener(listener)

        await any_repository.create(make_new_document())
        assert calls == []

    async def test_different_documents_do_not_share_locks(self, memory_repository, make_new_document):
        first = await memory_repository.create(make_new_document())
        second = await memory_repository.create(make_new_document())

        async with memory_repository._locks.hold(first.id):
            # would deadlock if the lock were global
            updated = await asyncio.wait_for(
                memory_repository.set_status(second.id, S.PARSING), timeout=1.0
            )
        assert updated.status is S.PARSING


@pytest.mark.unit
@pytest.mark.repository
class TestKeyedLock:

    async def test_entries_dropped_when_idle(self):
        locks = KeyedLock()
        async with locks.hold("a"):
            async with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0

    async def test_same_key_is_mutually_exclusive(self):
        locks = KeyedLock()
        order = []

        async def worker(name: str) -> None:
            async with locks.hold("doc"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("one"), worker("two"))

        assert order in (
            ["one-in", "one-out", "two-in", "two-out"],
            ["two-in", "two-out", "one-in", "one-out"],
        )
        assert len(locks) == 0
