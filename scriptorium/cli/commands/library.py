"""Library CLI commands."""

import json
from pathlib import Path

from scriptorium.library.db import LibraryDB
from scriptorium.library.models import Book, Page, Stage


def load_book_manifest(path: Path, default_language: str = "Latin") -> tuple[Book, list[Page]]:
    """Read a book manifest JSON file.

    Expected shape::

        {"id": "...", "title": "...", "language": "Latin",
         "pages": [{"page_number": 1, "photo": "https://...", "cropped_photo": null}]}

    Page ids default to ``{book_id}-p{page_number:04d}``.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    book_id = data.get("id")
    title = data.get("title")
    if not book_id or not title:
        raise ValueError("Manifest needs 'id' and 'title'")

    book = Book(
        id=book_id,
        title=title,
        display_title=data.get("display_title"),
        language=data.get("language") or default_language,
    )

    pages = []
    for index, entry in enumerate(data.get("pages") or [], start=1):
        page_number = int(entry.get("page_number") or index)
        pages.append(
            Page(
                id=entry.get("id") or f"{book_id}-p{page_number:04d}",
                book_id=book_id,
                page_number=page_number,
                photo=entry.get("photo"),
                cropped_photo=entry.get("cropped_photo"),
            )
        )
    return book, pages


def cmd_import_book(args):
    """Import a book and its pages from a manifest."""
    manifest_path = Path(args.manifest)
    if not manifest_path.exists():
        print(f"Manifest not found: {manifest_path}")
        return 1

    try:
        book, pages = load_book_manifest(manifest_path, args.settings.default_language)
    except (ValueError, json.JSONDecodeError) as e:
        print(f"Failed to read manifest: {e}")
        return 1

    db = LibraryDB(args.settings.db_path)
    try:
        db.upsert_book(book)
        for page in pages:
            existing = db.get_page(page.id)
            if existing is not None:
                # Keep stage results already produced for this page
                page.ocr, page.translation, page.summary = existing.ocr, existing.translation, existing.summary
            db.upsert_page(page)
        counts = db.update_book_counts(book.id)
    finally:
        db.close()

    print(f"Imported {book.name}: {counts.pages_count} pages ({book.language})")
    return 0


def cmd_list_books(args):
    """List books with stage progress."""
    db = LibraryDB(args.settings.db_path)
    try:
        books = db.list_books()
    finally:
        db.close()

    if not books:
        print("No books imported")
        return 0

    print(f"{'ID':<24} {'LANG':<10} {'PAGES':>6} {'OCR':>6} {'TRANS':>6} {'SUMM':>6}  TITLE")
    for book in books:
        print(
            f"{book.id[:24]:<24} {book.language[:10]:<10} {book.pages_count:>6} {book.pages_with_ocr:>6} "
            f"{book.pages_translated:>6} {book.pages_summarized:>6}  {book.name}"
        )
    return 0


def cmd_clear_stage(args):
    """Clear a stage result so the page is picked up again."""
    stage = Stage.parse(args.stage)
    db = LibraryDB(args.settings.db_path)
    try:
        for page_id in args.page_ids:
            if db.get_page(page_id) is None:
                print(f"Page not found: {page_id}")
                continue
            db.clear_stage_result(page_id, stage)
            print(f"Cleared {stage.value} for {page_id}")
        for book_id in {p.book_id for p in db.get_pages(args.page_ids)}:
            db.update_book_counts(book_id)
    finally:
        db.close()
    return 0


def setup_library_commands(subparsers):
    """Setup library subcommands."""
    import_parser = subparsers.add_parser("import-book", help="Import a book from a JSON manifest")
    import_parser.add_argument("manifest", help="Path to book manifest JSON")
    import_parser.set_defaults(func=cmd_import_book)

    books_parser = subparsers.add_parser("books", help="List books and their progress")
    books_parser.set_defaults(func=cmd_list_books)

    clear_parser = subparsers.add_parser("clear-stage", help="Remove a stage result from pages")
    clear_parser.add_argument("stage", help="Stage to clear (ocr, translate, summary)")
    clear_parser.add_argument("page_ids", nargs="+", help="Page identifiers")
    clear_parser.set_defaults(func=cmd_clear_stage)
