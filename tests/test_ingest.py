from __future__ import annotations

import json
import threading
import time

import pytest
from sqlalchemy import create_engine, text

from lexicon_contracts.entries import LexicalEntries
from lexicon_core.db.session import session_scope
from lexicon_core.store import LexicalStore
from lexicon_pipeline.corpus.repository import Line
from lexicon_pipeline.backup import backup_path_for
from lexicon_pipeline.errors import ConfigurationError
from lexicon_pipeline.ingest import run as ingest_run
from lexicon_pipeline.ingest.run import (
    BatchIngestor,
    IngestOptions,
    ingest_books,
    plan_batches,
    process_lines,
    strip_html,
)

from conftest import StubLLM

EMPTY = '{"entries": []}'


def entries_json(*entries: dict) -> str:
    return json.dumps({"entries": list(entries)}, ensure_ascii=False)


def respond_with(mapping: dict[str, str], default: str = EMPTY):
    return lambda prompt: mapping.get(prompt, default)


class TestStripHtml:
    def test_strips_tags_and_collapses_whitespace(self):
        assert strip_html("<b>בראשית</b>   <i>ברא</i>") == "בראשית ברא"

    def test_plain_text(self):
        assert strip_html("  שלום\n עולם ") == "שלום עולם"

    def test_only_markup_is_blank(self):
        assert strip_html("<br/>") == ""


class TestPlanBatches:
    def test_groups_pending_lines(self):
        lines = [Line(id=i, content=f"שורה {i}") for i in range(1, 6)]
        batches, blank, already = plan_batches(1, lines, set(), batch_size=2)
        assert [[l.id for l in b.lines] for b in batches] == [[1, 2], [3, 4], [5]]
        assert [b.index for b in batches] == [0, 1, 2]
        assert (blank, already) == (0, 0)

    def test_processed_line_closes_batch(self):
        lines = [Line(id=i, content=f"שורה {i}") for i in range(1, 6)]
        batches, _, already = plan_batches(1, lines, {3}, batch_size=10)
        assert [[l.id for l in b.lines] for b in batches] == [[1, 2], [4, 5]]
        assert already == 1

    def test_blank_lines_dropped(self):
        lines = [Line(id=1, content="<p></p>"), Line(id=2, content="א"), Line(id=3, content="  ")]
        batches, blank, _ = plan_batches(1, lines, set(), batch_size=10)
        assert [[l.id for l in b.lines] for b in batches] == [[2]]
        assert blank == 2

    def test_batch_text_joins_lines(self):
        lines = [Line(id=1, content="<b>א</b>"), Line(id=2, content="ב")]
        batches, _, _ = plan_batches(1, lines, set(), batch_size=10)
        assert batches[0].text == "א\nב"


class TestIngestOptions:
    @pytest.mark.parametrize("concurrency", [0, 251])
    def test_concurrency_bounds(self, concurrency):
        with pytest.raises(ConfigurationError):
            IngestOptions(max_concurrency=concurrency).check()

    def test_batch_size_positive(self):
        with pytest.raises(ConfigurationError):
            IngestOptions(batch_size=0).check()

    def test_defaults_valid(self):
        IngestOptions(max_concurrency=250).check()


class TestIngestBooks:
    @pytest.mark.asyncio
    async def test_end_to_end_two_lines(self, store, corpus):
        corpus.add_book(1, "בראשית", ["בּרֵאשִׁית", "בָּרָא"])
        llm = StubLLM(
            respond_with(
                {"בּרֵאשִׁית": entries_json({"surface": "בּרֵאשִׁית", "base": "ראשית", "variants": ["ראשית"]})}
            )
        )

        report = await ingest_books(
            corpus=corpus, store=store, llm=llm, book_ids=[1], options=IngestOptions(batch_size=1)
        )

        surface = store.find_surface("בּרֵאשִׁית")
        assert store.base_for_surface(surface) == "ראשית"
        assert store.variants_for_surface(surface) == ["ראשית"]
        assert store.processed_line_ids(1) == {1, 2}
        assert report.books[0].processed_count == 2
        assert report.books[0].batches_committed == 2

    @pytest.mark.asyncio
    async def test_truncated_response_isolated(self, store, corpus, tmp_path):
        corpus.add_book(1, "ספר", ["א", "ב", "ג"])
        llm = StubLLM(
            respond_with(
                {
                    "א": entries_json({"surface": "א", "base": "א", "variants": []}),
                    "ב": '{"entries": [{"surface":"x"',
                }
            )
        )
        options = IngestOptions(batch_size=1, invalid_responses_dir=tmp_path / "invalid")

        report = await ingest_books(corpus=corpus, store=store, llm=llm, book_ids=[1], options=options)

        assert store.processed_line_ids(1) == {1, 3}
        assert store.find_surface("א") is not None
        assert report.batches_failed == 1
        artifacts = list((tmp_path / "invalid").iterdir())
        assert len(artifacts) == 1
        assert artifacts[0].read_text(encoding="utf-8") == '{"entries": [{"surface":"x"'

    @pytest.mark.asyncio
    async def test_resume_sends_only_unprocessed_lines(self, store, corpus):
        corpus.add_book(1, "ספר", ["א", "ב", "ג"])
        first = StubLLM(respond_with({"ב": ""}))
        await ingest_books(corpus=corpus, store=store, llm=first, book_ids=[1], options=IngestOptions(batch_size=1))
        assert store.processed_line_ids(1) == {1, 3}

        second = StubLLM(respond_with({}))
        report = await ingest_books(
            corpus=corpus, store=store, llm=second, book_ids=[1], options=IngestOptions(batch_size=1)
        )
        assert second.prompts == ["ב"]
        assert report.books[0].lines_already_processed == 2
        assert store.processed_line_ids(1) == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_processed_entries_unchanged_on_rerun(self, store, corpus):
        corpus.add_book(1, "ספר", ["א"])
        entry = entries_json({"surface": "א", "base": "אב", "variants": [], "notes": "n"})
        await ingest_books(
            corpus=corpus, store=store, llm=StubLLM(lambda p: entry), book_ids=[1], options=IngestOptions()
        )
        other = entries_json({"surface": "א", "base": "אחר", "variants": ["ו"]})
        await ingest_books(
            corpus=corpus, store=store, llm=StubLLM(lambda p: other), book_ids=[1], options=IngestOptions()
        )
        surface = store.find_surface("א")
        assert store.base_for_surface(surface) == "אב"
        assert store.counts().variants == 0

    @pytest.mark.asyncio
    async def test_client_exception_skips_batch(self, store, corpus):
        corpus.add_book(1, "ספר", ["א", "ב"])

        def responder(prompt: str) -> str:
            if prompt == "א":
                raise RuntimeError("network down")
            return EMPTY

        report = await ingest_books(
            corpus=corpus, store=store, llm=StubLLM(responder), book_ids=[1], options=IngestOptions(batch_size=1)
        )
        assert store.processed_line_ids(1) == {2}
        assert report.batches_failed == 1

    @pytest.mark.asyncio
    async def test_blank_lines_never_marked(self, store, corpus):
        corpus.add_book(1, "ספר", ["<br>", "א"])
        llm = StubLLM(respond_with({}))
        await ingest_books(corpus=corpus, store=store, llm=llm, book_ids=[1], options=IngestOptions())
        assert store.processed_line_ids(1) == {2}
        assert llm.prompts == ["א"]

    @pytest.mark.asyncio
    async def test_missing_book_reported(self, store, corpus):
        report = await ingest_books(
            corpus=corpus, store=store, llm=StubLLM(respond_with({})), book_ids=[42], options=IngestOptions()
        )
        assert report.missing_book_ids == [42]
        assert report.books == []

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, store, corpus):
        contents = [f"מילה{i}" for i in range(40)]
        corpus.add_book(1, "ספר", contents)
        active = 0
        peak = 0
        lock = threading.Lock()

        def responder(prompt: str) -> str:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with lock:
                active -= 1
            return entries_json({"surface": prompt, "base": "מילה", "variants": [prompt + "א"]})

        report = await ingest_books(
            corpus=corpus,
            store=store,
            llm=StubLLM(responder),
            book_ids=[1],
            options=IngestOptions(batch_size=1, max_concurrency=5),
        )

        assert peak <= 5
        assert report.books[0].lines_processed == 40
        counts = store.counts()
        assert (counts.bases, counts.surfaces, counts.variants, counts.links) == (1, 40, 40, 40)
        assert store.count_processed_lines(1) == 40

    @pytest.mark.asyncio
    async def test_backup_written_and_extended(self, store, corpus, tmp_path):
        corpus.add_book(1, "Genesis: part 1", ["א", "ב"])
        backup_dir = tmp_path / "backups"
        first = StubLLM(
            respond_with({"א": entries_json({"surface": "א", "base": "א", "variants": []}), "ב": ""})
        )
        options = IngestOptions(batch_size=1, backup_dir=backup_dir)
        await ingest_books(corpus=corpus, store=store, llm=first, book_ids=[1], options=options)

        path = backup_dir / "book-1-Genesis-part-1.json"
        assert [e.surface for e in LexicalEntries.from_json(path.read_text(encoding="utf-8")).entries] == ["א"]

        second = StubLLM(respond_with({"ב": entries_json({"surface": "ב", "base": "ב", "variants": []})}))
        await ingest_books(corpus=corpus, store=store, llm=second, book_ids=[1], options=options)
        entries = LexicalEntries.from_json(path.read_text(encoding="utf-8")).entries
        assert [e.surface for e in entries] == ["א", "ב"]


class TestLLMCallScheduling:
    @pytest.mark.asyncio
    async def test_concurrency_above_default_thread_pool(self, store, corpus, monkeypatch):
        monkeypatch.setattr(ingest_run, "TIMEOUT_GRACE_S", 0.0)
        corpus.add_book(1, "ספר", [f"שורה{i}" for i in range(40)])
        active = 0
        peak = 0
        lock = threading.Lock()

        def responder(prompt: str) -> str:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.3)
            with lock:
                active -= 1
            return EMPTY

        report = await ingest_books(
            corpus=corpus,
            store=store,
            llm=StubLLM(responder),
            book_ids=[1],
            options=IngestOptions(batch_size=1, max_concurrency=40, timeout_s=1.0),
        )

        assert peak == 40
        assert report.batches_failed == 0
        assert store.count_processed_lines(1) == 40

    @pytest.mark.asyncio
    async def test_timed_out_batch_left_unmarked(self, store, corpus, monkeypatch):
        monkeypatch.setattr(ingest_run, "TIMEOUT_GRACE_S", 0.0)
        corpus.add_book(1, "ספר", ["איטי", "מהיר"])

        def responder(prompt: str) -> str:
            if prompt == "איטי":
                time.sleep(1.0)
            return EMPTY

        report = await ingest_books(
            corpus=corpus,
            store=store,
            llm=StubLLM(responder),
            book_ids=[1],
            options=IngestOptions(batch_size=1, max_concurrency=2, timeout_s=0.2),
        )

        assert store.processed_line_ids(1) == {2}
        assert report.batches_failed == 1

    @pytest.mark.asyncio
    async def test_timed_out_call_keeps_its_slot(self, store, corpus, monkeypatch):
        # With one slot, the batch queued behind a timed-out call waits for that call's
        # thread instead of starting its own timeout early.
        monkeypatch.setattr(ingest_run, "TIMEOUT_GRACE_S", 0.0)
        corpus.add_book(1, "ספר", ["איטי", "מהיר"])
        active = 0
        peak = 0
        lock = threading.Lock()

        def responder(prompt: str) -> str:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.5 if prompt == "איטי" else 0.0)
            with lock:
                active -= 1
            return EMPTY

        report = await ingest_books(
            corpus=corpus,
            store=store,
            llm=StubLLM(responder),
            book_ids=[1],
            options=IngestOptions(batch_size=1, max_concurrency=1, timeout_s=0.2),
        )

        assert peak == 1
        assert store.processed_line_ids(1) == {2}
        assert report.batches_failed == 1


class TestUnreadableBackup:
    @pytest.mark.asyncio
    async def test_bad_backup_moved_aside_and_run_continues(self, store, corpus, tmp_path):
        backup_dir = tmp_path / "backups"
        backup_dir.mkdir()
        corpus.add_book(1, "ספר", ["א"])
        corpus.add_book(2, "שני", ["ב"], first_line_id=10)
        bad = backup_path_for(backup_dir, 1, "ספר")
        bad.write_text('{"entries": [', encoding="utf-8")
        llm = StubLLM(
            respond_with(
                {
                    "א": entries_json({"surface": "א", "base": "א", "variants": []}),
                    "ב": entries_json({"surface": "ב", "base": "ב", "variants": []}),
                }
            )
        )

        report = await ingest_books(
            corpus=corpus, store=store, llm=llm, book_ids=[1, 2], options=IngestOptions(backup_dir=backup_dir)
        )

        assert [b.processed_count for b in report.books] == [1, 1]
        moved = list(backup_dir.glob(f"{bad.name}.*.bad"))
        assert len(moved) == 1
        assert moved[0].read_text(encoding="utf-8") == '{"entries": ['
        fresh = LexicalEntries.from_json(bad.read_text(encoding="utf-8"))
        assert [e.surface for e in fresh.entries] == ["א"]


class TestBatchIngestor:
    @pytest.mark.asyncio
    async def test_failed_entry_does_not_block_batch(self, store, corpus, monkeypatch):
        book = corpus.add_book(1, "ספר", ["א"])
        raw = entries_json(
            {"surface": "טוב", "base": "טוב", "variants": []},
            {"surface": "רע", "base": "רע", "variants": []},
        )
        ingestor = BatchIngestor(store, StubLLM(lambda p: raw), IngestOptions())
        original = store.insert_entry

        def flaky_insert(entry):
            if entry.surface == "רע":
                from sqlalchemy.exc import IntegrityError

                raise IntegrityError("INSERT", {}, Exception("boom"))
            return original(entry)

        monkeypatch.setattr(store, "insert_entry", flaky_insert)
        report = await ingestor.run_book(book, corpus.get_lines(1, 0, 10))

        assert report.entries_inserted == 1
        assert report.entries_failed == 1
        assert store.processed_line_ids(1) == {1}
        assert store.find_surface("טוב") is not None

    def test_rejects_bad_options(self, store):
        with pytest.raises(ConfigurationError):
            BatchIngestor(store, StubLLM(respond_with({})), IngestOptions(max_concurrency=0))


class TestProcessLines:
    def _source_db(self, path, contents: list[str]):
        engine = create_engine(f"sqlite:///{path}", future=True)
        with engine.begin() as conn:
            conn.execute(text("CREATE TABLE book (id INTEGER PRIMARY KEY, title TEXT, totalLines INTEGER)"))
            conn.execute(
                text("CREATE TABLE line (id INTEGER PRIMARY KEY, bookId INTEGER, lineIndex INTEGER, content TEXT)")
            )
            conn.execute(
                text("INSERT INTO book (id, title, totalLines) VALUES (1, 'ספר', :n)"), {"n": len(contents)}
            )
            for idx, content in enumerate(contents):
                conn.execute(
                    text("INSERT INTO line (id, bookId, lineIndex, content) VALUES (:id, 1, :idx, :c)"),
                    {"id": 100 + idx, "idx": idx, "c": content},
                )
        engine.dispose()

    def test_reads_sqlite_corpus_and_writes_index(self, tmp_path, db_path):
        source = tmp_path / "seforim.db"
        self._source_db(source, ["<b>שָׁלוֹם</b>", "עולם"])
        llm = StubLLM(
            respond_with({"שָׁלוֹם": entries_json({"surface": "שָׁלוֹם", "base": "שלום", "variants": ["שלם"]})})
        )

        report = process_lines(
            source_db_path=source,
            output_db_path=db_path,
            llm=llm,
            book_ids=[1, 2],
            options=IngestOptions(batch_size=1),
        )

        assert report.lines_processed == 2
        assert report.missing_book_ids == [2]
        with session_scope(db_path) as session:
            store = LexicalStore(session)
            assert store.processed_line_ids(1) == {100, 101}
            assert store.base_for_surface(store.find_surface("שָׁלוֹם")) == "שלום"

    def test_missing_source(self, tmp_path, db_path):
        with pytest.raises(ConfigurationError):
            process_lines(
                source_db_path=tmp_path / "missing.db",
                output_db_path=db_path,
                llm=StubLLM(respond_with({})),
                book_ids=[1],
                options=IngestOptions(),
            )
