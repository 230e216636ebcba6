from __future__ import annotations

import asyncio
import enum
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from bs4 import BeautifulSoup
from sqlalchemy.exc import SQLAlchemyError

from lexicon_contracts.entries import LexicalEntry
from lexicon_core.db.session import session_scope
from lexicon_core.store import LexicalStore
from lexicon_pipeline.backup import BookBackup, backup_path_for
from lexicon_pipeline.corpus.repository import Book, CorpusRepository, Line, SqliteCorpusRepository
from lexicon_pipeline.errors import ConfigurationError
from lexicon_pipeline.ingest.validate import InvalidResponse, InvalidResponseSink, parse_entries
from lexicon_pipeline.llm.client import LLMClient
from lexicon_pipeline.llm.prompts import render_batch_text

MAX_CONCURRENCY_LIMIT = 250
# Extra time given to the client's own timeout before the scheduler gives up on a call.
TIMEOUT_GRACE_S = 5.0


@dataclass(frozen=True)
class IngestOptions:
    batch_size: int = 10
    max_concurrency: int = 1
    timeout_s: float = 120.0
    backup_dir: Path | None = None
    invalid_responses_dir: Path | None = None
    progress_every: int = 10

    def check(self) -> None:
        if not 1 <= self.max_concurrency <= MAX_CONCURRENCY_LIMIT:
            raise ConfigurationError(
                f"max_concurrency must be between 1 and {MAX_CONCURRENCY_LIMIT}, got {self.max_concurrency}"
            )
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.timeout_s <= 0:
            raise ConfigurationError(f"timeout_s must be > 0, got {self.timeout_s}")


@dataclass(frozen=True)
class PendingLine:
    id: int
    text: str


@dataclass(frozen=True)
class Batch:
    book_id: int
    index: int
    lines: list[PendingLine]

    @property
    def text(self) -> str:
        return render_batch_text([line.text for line in self.lines])


class BatchStatus(str, enum.Enum):
    committed = "committed"
    skipped = "skipped"


@dataclass(frozen=True)
class BatchResult:
    batch_index: int
    status: BatchStatus
    lines: int
    reason: str | None = None
    entries_inserted: int = 0
    entries_failed: int = 0
    artifact_path: Path | None = None

    @classmethod
    def skip(cls, batch: Batch, reason: str, artifact_path: Path | None = None) -> BatchResult:
        return cls(
            batch_index=batch.index,
            status=BatchStatus.skipped,
            lines=len(batch.lines),
            reason=reason,
            artifact_path=artifact_path,
        )


@dataclass
class BookReport:
    book_id: int
    title: str
    lines_total: int = 0
    lines_blank: int = 0
    lines_already_processed: int = 0
    lines_processed: int = 0
    batches_committed: int = 0
    batches_failed: int = 0
    entries_inserted: int = 0
    entries_failed: int = 0
    processed_count: int = 0

    def add(self, result: BatchResult) -> None:
        if result.status is BatchStatus.committed:
            self.batches_committed += 1
            self.lines_processed += result.lines
            self.entries_inserted += result.entries_inserted
            self.entries_failed += result.entries_failed
        else:
            self.batches_failed += 1


@dataclass
class IngestReport:
    books: list[BookReport] = field(default_factory=list)
    missing_book_ids: list[int] = field(default_factory=list)

    @property
    def lines_processed(self) -> int:
        return sum(b.lines_processed for b in self.books)

    @property
    def lines_skipped(self) -> int:
        return sum(b.lines_already_processed for b in self.books)

    @property
    def batches_failed(self) -> int:
        return sum(b.batches_failed for b in self.books)

    @property
    def entries_inserted(self) -> int:
        return sum(b.entries_inserted for b in self.books)

    @property
    def entries_failed(self) -> int:
        return sum(b.entries_failed for b in self.books)


def strip_html(content: str) -> str:
    if "<" not in content:
        return " ".join(content.split())
    text = BeautifulSoup(content, "lxml").get_text(" ", strip=True)
    return " ".join(text.split())


def plan_batches(
    book_id: int,
    lines: Iterable[Line],
    processed_line_ids: set[int],
    batch_size: int,
) -> tuple[list[Batch], int, int]:
    """
    Split a book's lines into batches of at most `batch_size` contiguous pending lines.

    Blank lines (after HTML stripping) are dropped; an already-processed line closes the
    current batch so a batch never spans lines committed by an earlier run.
    Returns (batches, blank_count, already_processed_count).
    """
    batches: list[Batch] = []
    current: list[PendingLine] = []
    blank = 0
    already = 0

    def flush() -> None:
        nonlocal current
        if current:
            batches.append(Batch(book_id=book_id, index=len(batches), lines=current))
            current = []

    for line in lines:
        text = strip_html(line.content)
        if not text:
            blank += 1
            continue
        if line.id in processed_line_ids:
            already += 1
            flush()
            continue
        current.append(PendingLine(id=line.id, text=text))
        if len(current) >= batch_size:
            flush()
    flush()
    return batches, blank, already


class BatchIngestor:
    """
    Runs the batches of one book against the LLM and commits their entries.

    Concurrency model:
    - `gate` (Semaphore) admits at most `max_concurrency` LLM calls at a time. The blocking
      client runs on the book's own pool of `max_concurrency` threads. A permit is given back
      only when its thread is free again, even after a timeout, so an admitted call always
      starts at once and its timeout covers the call alone.
    - `write_lock` (Lock) is the single-writer critical section. Every use of the Session
      (entry upserts, processed markers, commit, backup rewrite) happens inside it, on the
      event-loop thread. Nothing else touches the store while a book is running.

    A batch's lines are marked processed in the same transaction as its entries, or not at all.
    """

    def __init__(
        self,
        store: LexicalStore,
        llm: LLMClient,
        options: IngestOptions,
    ):
        options.check()
        self.store = store
        self.llm = llm
        self.options = options
        self.sink = (
            InvalidResponseSink(options.invalid_responses_dir) if options.invalid_responses_dir is not None else None
        )

    async def run_book(self, book: Book, lines: list[Line]) -> BookReport:
        report = BookReport(book_id=book.id, title=book.title, lines_total=len(lines))

        processed = self.store.processed_line_ids(book.id)
        if processed:
            print(f"[ingest] already processed: {len(processed)} lines (will skip)")

        batches, report.lines_blank, report.lines_already_processed = plan_batches(
            book.id, lines, processed, self.options.batch_size
        )
        pending_lines = sum(len(b.lines) for b in batches)
        print(f"[ingest] lines={len(lines)} pending={pending_lines} batches={len(batches)}")

        backup = None
        if self.options.backup_dir is not None:
            backup = BookBackup.open_or_reset(backup_path_for(self.options.backup_dir, book.id, book.title))

        gate = asyncio.Semaphore(self.options.max_concurrency)
        write_lock = asyncio.Lock()
        executor = ThreadPoolExecutor(
            max_workers=self.options.max_concurrency, thread_name_prefix=f"llm-book-{book.id}"
        )
        try:
            tasks = [
                asyncio.create_task(
                    self._process_batch(batch, gate=gate, write_lock=write_lock, backup=backup, executor=executor)
                )
                for batch in batches
            ]

            done = 0
            for next_done in asyncio.as_completed(tasks):
                result = await next_done
                report.add(result)
                done += 1
                if result.status is BatchStatus.skipped:
                    print(
                        f"[ingest] book={book.id} batch={result.batch_index} skipped: {result.reason}"
                        + (f" (raw saved to {result.artifact_path})" if result.artifact_path else ""),
                        file=sys.stderr,
                    )
                if self.options.progress_every > 0 and (
                    done % self.options.progress_every == 0 or done == len(tasks)
                ):
                    print(
                        f"[ingest] progress: {done}/{len(tasks)} batches | {report.lines_processed} lines, "
                        f"{report.entries_inserted} entries, {report.batches_failed} failed"
                    )
        finally:
            # Calls that timed out finish in the background; their results are dropped.
            executor.shutdown(wait=False, cancel_futures=True)

        report.processed_count = self.store.count_processed_lines(book.id)
        if backup is not None and backup.entries:
            print(f"[ingest] JSON backup: {backup.path} ({len(backup.entries)} entries)")
        return report

    async def _process_batch(
        self,
        batch: Batch,
        *,
        gate: asyncio.Semaphore,
        write_lock: asyncio.Lock,
        backup: BookBackup | None,
        executor: ThreadPoolExecutor,
    ) -> BatchResult:
        timeout = self.options.timeout_s
        try:
            raw = await self._call_llm(batch, gate=gate, executor=executor)
        except asyncio.TimeoutError:
            return BatchResult.skip(batch, f"LLM call exceeded {timeout:g}s")
        except Exception as exc:
            return BatchResult.skip(batch, f"LLM client error: {exc!r}")

        if not raw.strip():
            return BatchResult.skip(batch, "empty response from LLM")

        parsed = parse_entries(raw, sink=self.sink, book_id=batch.book_id, batch_index=batch.index)
        if isinstance(parsed, InvalidResponse):
            return BatchResult.skip(batch, parsed.reason, parsed.artifact_path)

        async with write_lock:
            return self._commit_batch(batch, parsed.entries, backup)

    async def _call_llm(self, batch: Batch, *, gate: asyncio.Semaphore, executor: ThreadPoolExecutor) -> str:
        timeout = self.options.timeout_s
        loop = asyncio.get_running_loop()
        await gate.acquire()
        call = loop.run_in_executor(executor, self.llm.generate_response, batch.text, timeout)

        def release(finished: asyncio.Future) -> None:
            if not finished.cancelled():
                finished.exception()
            gate.release()

        try:
            return await asyncio.wait_for(asyncio.shield(call), timeout=timeout + TIMEOUT_GRACE_S)
        finally:
            if call.done():
                gate.release()
            else:
                # The thread is still busy; its permit comes back when it returns.
                call.add_done_callback(release)

    def _commit_batch(self, batch: Batch, entries: list[LexicalEntry], backup: BookBackup | None) -> BatchResult:
        """Must be called with the write lock held."""
        inserted: list[LexicalEntry] = []
        failed = 0
        for entry in entries:
            try:
                self.store.insert_entry(entry)
                inserted.append(entry)
            except SQLAlchemyError as exc:
                failed += 1
                print(f"[ingest] error inserting entry {entry.surface} -> {entry.base}: {exc}", file=sys.stderr)

        now = int(time.time())
        try:
            for line in batch.lines:
                self.store.mark_line_processed(batch.book_id, line.id, now)
            self.store.commit()
        except SQLAlchemyError as exc:
            self.store.rollback()
            return BatchResult.skip(batch, f"commit failed: {exc}")

        if backup is not None and inserted:
            backup.extend(inserted)
            try:
                backup.write()
            except OSError as exc:
                print(f"[ingest] WARNING could not write JSON backup {backup.path}: {exc}", file=sys.stderr)

        return BatchResult(
            batch_index=batch.index,
            status=BatchStatus.committed,
            lines=len(batch.lines),
            entries_inserted=len(inserted),
            entries_failed=failed,
        )


async def ingest_books(
    *,
    corpus: CorpusRepository,
    store: LexicalStore,
    llm: LLMClient,
    book_ids: Iterable[int],
    options: IngestOptions,
) -> IngestReport:
    ingestor = BatchIngestor(store, llm, options)
    report = IngestReport()
    for book_id in book_ids:
        print(f"\n[ingest] === Book {book_id} ===")
        book = corpus.get_book(book_id)
        if book is None:
            print(f"[ingest] book {book_id} not found, skipping")
            report.missing_book_ids.append(book_id)
            continue
        print(f"[ingest] title={book.title!r} total_lines={book.total_lines}")

        lines = corpus.get_lines(book_id, 0, book.total_lines)
        # Every batch of the book is awaited before the next book starts.
        book_report = await ingestor.run_book(book, lines)
        report.books.append(book_report)
        print(
            f"[ingest] completed book {book_id}: {book_report.lines_processed} new lines, "
            f"{book_report.lines_already_processed} skipped, {book_report.batches_failed} failed batches, "
            f"{book_report.processed_count} total processed for this book"
        )
    return report


def process_lines(
    *,
    source_db_path: Path,
    output_db_path: Path,
    llm: LLMClient,
    book_ids: Iterable[int],
    options: IngestOptions,
) -> IngestReport:
    """Open the corpus and the index, ingest the given books, print a summary."""
    options.check()
    if not source_db_path.exists():
        raise ConfigurationError(f"Source database not found: {source_db_path}")
    book_ids = list(book_ids)

    print("[ingest] === Starting incremental processing ===")
    print(f"[ingest] source_db={source_db_path}")
    print(f"[ingest] output_db={output_db_path} ({'existing' if output_db_path.exists() else 'new'})")
    print(f"[ingest] books={book_ids} batch_size={options.batch_size} max_concurrency={options.max_concurrency}")

    with SqliteCorpusRepository(source_db_path) as corpus, session_scope(output_db_path) as session:
        store = LexicalStore(session)
        report = asyncio.run(
            ingest_books(corpus=corpus, store=store, llm=llm, book_ids=book_ids, options=options)
        )

    print("\n[ingest] === Processing complete ===")
    print(f"[ingest] new lines processed: {report.lines_processed}")
    print(f"[ingest] lines skipped (already processed): {report.lines_skipped}")
    print(f"[ingest] failed batches (will be retried next run): {report.batches_failed}")
    print(f"[ingest] entries inserted: {report.entries_inserted} (failed: {report.entries_failed})")
    for book in report.books:
        print(f"[ingest]   book {book.book_id}: {book.processed_count} lines processed")
    return report
