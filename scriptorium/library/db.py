"""SQLite document store for books and pages."""

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from .models import Book, BookCounts, Page, Stage, StageResult


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection usable from worker threads."""
    db_path = Path(db_path)
    if str(db_path) != ":memory:":
        db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


class LibraryDB:
    """Store for book records, page records and their stage results."""

    def __init__(self, db_path: Path):
        """Initialize database connection and create schema if needed."""
        self.db_path = Path(db_path)
        self.conn = connect(self.db_path)
        self._lock = threading.RLock()
        self._create_schema()

    def _create_schema(self):
        """Create database schema if it doesn't exist."""
        with self._lock:
            cursor = self.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS books (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    display_title TEXT,
                    language TEXT NOT NULL DEFAULT 'Latin',
                    pages_count INTEGER NOT NULL DEFAULT 0,
                    pages_with_ocr INTEGER NOT NULL DEFAULT 0,
                    pages_translated INTEGER NOT NULL DEFAULT 0,
                    pages_summarized INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pages (
                    id TEXT PRIMARY KEY,
                    book_id TEXT NOT NULL,
                    page_number INTEGER NOT NULL,
                    photo TEXT,
                    cropped_photo TEXT,
                    ocr TEXT,
                    translation TEXT,
                    summary TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_pages_book ON pages (book_id, page_number)")

            self.conn.commit()

    # -- books -----------------------------------------------------------

    def upsert_book(self, book: Book) -> None:
        """Insert a book or update its descriptive fields."""
        now = datetime.utcnow().isoformat()
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO books (id, title, display_title, language, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    display_title = excluded.display_title,
                    language = excluded.language,
                    updated_at = excluded.updated_at
            """,
                (book.id, book.title, book.display_title, book.language, now, now),
            )
            self.conn.commit()

    def get_book(self, book_id: str) -> Optional[Book]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return _row_to_book(row) if row else None

    def list_books(self) -> list[Book]:
        with self._lock:
            rows = self.conn.execute("SELECT * FROM books ORDER BY created_at, id").fetchall()
        return [_row_to_book(row) for row in rows]

    # -- pages -----------------------------------------------------------

    def upsert_page(self, page: Page) -> None:
        """Insert a page or replace its stored state."""
        now = datetime.utcnow().isoformat()
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO pages
                (id, book_id, page_number, photo, cropped_photo, ocr, translation, summary, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    book_id = excluded.book_id,
                    page_number = excluded.page_number,
                    photo = excluded.photo,
                    cropped_photo = excluded.cropped_photo,
                    ocr = excluded.ocr,
                    translation = excluded.translation,
                    summary = excluded.summary,
                    updated_at = excluded.updated_at
            """,
                (
                    page.id,
                    page.book_id,
                    page.page_number,
                    page.photo,
                    page.cropped_photo,
                    _dump_result(page.ocr),
                    _dump_result(page.translation),
                    _dump_result(page.summary),
                    now,
                    now,
                ),
            )
            self.conn.commit()

    def get_page(self, page_id: str) -> Optional[Page]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM pages WHERE id = ?", (page_id,)).fetchone()
        return _row_to_page(row) if row else None

    def get_pages(self, page_ids: Iterable[str]) -> list[Page]:
        """Fetch pages by id, ordered by book and page number."""
        page_ids = list(page_ids)
        if not page_ids:
            return []
        placeholders = ",".join("?" for _ in page_ids)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM pages WHERE id IN ({placeholders}) ORDER BY book_id, page_number",
                page_ids,
            ).fetchall()
        return [_row_to_page(row) for row in rows]

    def list_pages(self, book_id: Optional[str] = None) -> list[Page]:
        with self._lock:
            if book_id is None:
                rows = self.conn.execute("SELECT * FROM pages ORDER BY book_id, page_number").fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM pages WHERE book_id = ? ORDER BY page_number", (book_id,)
                ).fetchall()
        return [_row_to_page(row) for row in rows]

    def set_stage_result(self, page_id: str, stage: Stage, result: StageResult) -> bool:
        """Write a stage result onto a page.

        Returns:
            True if the page was updated, False if it already holds a result
            from the same batch job.

        Raises:
            KeyError: If the page does not exist
        """
        now = datetime.utcnow()
        result.updated_at = result.updated_at or now
        result.created_at = result.created_at or now

        with self._lock:
            row = self.conn.execute(
                f"SELECT {stage.field} FROM pages WHERE id = ?", (page_id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"Page not found: {page_id}")

            existing = StageResult.from_dict(_load_json(row[0]))
            if existing and result.batch_job_id and existing.batch_job_id == result.batch_job_id:
                return False

            self.conn.execute(
                f"UPDATE pages SET {stage.field} = ?, updated_at = ? WHERE id = ?",
                (_dump_result(result), now.isoformat(), page_id),
            )
            self.conn.commit()
        return True

    def clear_stage_result(self, page_id: str, stage: Stage) -> None:
        with self._lock:
            self.conn.execute(
                f"UPDATE pages SET {stage.field} = NULL, updated_at = ? WHERE id = ?",
                (datetime.utcnow().isoformat(), page_id),
            )
            self.conn.commit()

    # -- counters --------------------------------------------------------

    def compute_book_counts(self, book_id: str) -> BookCounts:
        """Recount stage completion from page state."""
        counts = BookCounts()
        for page in self.list_pages(book_id):
            counts.pages_count += 1
            counts.pages_with_ocr += int(page.has_result(Stage.OCR))
            counts.pages_translated += int(page.has_result(Stage.TRANSLATE))
            counts.pages_summarized += int(page.has_result(Stage.SUMMARY))
        return counts

    def update_book_counts(self, book_id: str) -> BookCounts:
        """Recompute and persist a book's derived counters."""
        counts = self.compute_book_counts(book_id)
        with self._lock:
            self.conn.execute(
                """
                UPDATE books SET
                    pages_count = ?, pages_with_ocr = ?, pages_translated = ?,
                    pages_summarized = ?, updated_at = ?
                WHERE id = ?
            """,
                (
                    counts.pages_count,
                    counts.pages_with_ocr,
                    counts.pages_translated,
                    counts.pages_summarized,
                    datetime.utcnow().isoformat(),
                    book_id,
                ),
            )
            self.conn.commit()
        return counts

    def close(self):
        """Close database connection."""
        self.conn.close()


def _load_json(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _dump_result(result: Optional[StageResult]) -> Optional[str]:
    if result is None or not result.text.strip():
        return None
    return json.dumps(result.to_dict(), ensure_ascii=False)


def _row_to_book(row: sqlite3.Row) -> Book:
    return Book(
        id=row["id"],
        title=row["title"],
        display_title=row["display_title"],
        language=row["language"] or "Latin",
        pages_count=row["pages_count"],
        pages_with_ocr=row["pages_with_ocr"],
        pages_translated=row["pages_translated"],
        pages_summarized=row["pages_summarized"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_page(row: sqlite3.Row) -> Page:
    return Page(
        id=row["id"],
        book_id=row["book_id"],
        page_number=row["page_number"],
        photo=row["photo"],
        cropped_photo=row["cropped_photo"],
        ocr=StageResult.from_dict(_load_json(row["ocr"])),
        translation=StageResult.from_dict(_load_json(row["translation"])),
        summary=StageResult.from_dict(_load_json(row["summary"])),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
