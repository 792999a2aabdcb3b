"""Tests for the command line entry point."""

import json
from unittest.mock import patch

from scriptorium.batch.job import BatchJob
from scriptorium.batch.store import JobStateStore
from scriptorium.cli.main import main
from scriptorium.library.db import LibraryDB
from scriptorium.library.models import Stage


def _write_config(temp_dir):
    config = temp_dir / "scriptorium.json"
    config.write_text(json.dumps({"db_path": str(temp_dir / "library.db")}))
    return config


def _write_manifest(temp_dir, pages=3):
    manifest = temp_dir / "book.json"
    manifest.write_text(
        json.dumps(
            {
                "id": "herbal",
                "title": "Herbarium",
                "language": "German",
                "pages": [{"page_number": n, "photo": f"https://images.example/{n}.jpg"} for n in range(1, pages + 1)],
            }
        )
    )
    return manifest


def test_import_and_list_books(temp_dir, capsys):
    """Test a manifest import followed by the books listing."""
    config = _write_config(temp_dir)
    manifest = _write_manifest(temp_dir)

    assert main(["--config", str(config), "import-book", str(manifest)]) == 0
    assert main(["--config", str(config), "books"]) == 0

    out = capsys.readouterr().out
    assert "Imported Herbarium: 3 pages (German)" in out
    assert "herbal" in out

    db = LibraryDB(temp_dir / "library.db")
    try:
        assert [p.id for p in db.list_pages("herbal")] == ["herbal-p0001", "herbal-p0002", "herbal-p0003"]
    finally:
        db.close()


def test_jobs_listing_without_credentials(temp_dir, capsys):
    config = _write_config(temp_dir)

    assert main(["--config", str(config), "jobs"]) == 0
    assert "No batch jobs" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_remote_jobs_marks_untracked(temp_dir, client, capsys):
    """Test provider jobs are matched to local records by remote name."""
    config = _write_config(temp_dir)
    client.create_job("files/a", "ocr-a")
    client.create_job("files/b", "ocr-b")
    store = JobStateStore(temp_dir / "library.db")
    store.insert(
        BatchJob(id="local-1", remote_name="batches/job-1", type=Stage.OCR, book_id="b1", page_ids=[], total_pages=0)
    )
    store.close()

    with patch("scriptorium.batch.trigger.GeminiBatchClient", return_value=client):
        assert main(["--config", str(config), "remote-jobs"]) == 0

    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].startswith("batches/job-2") and lines[0].endswith("(untracked)")
    assert lines[1].startswith("batches/job-1") and lines[1].endswith("local-1")


def test_process_book_skips_pages_under_active_batch_job(temp_dir, store, make_book, capsys):
    """Test pages already submitted in a batch job are not processed again."""
    config = _write_config(temp_dir)
    make_book("b1", 2)
    store.insert(
        BatchJob(
            id="j1",
            remote_name="batches/j1",
            type=Stage.OCR,
            book_id="b1",
            page_ids=["b1-p001", "b1-p002"],
            total_pages=2,
        )
    )

    with patch("scriptorium.cli.commands.process.PageStageHandler") as handler:
        assert main(["--config", str(config), "process", "--stage", "ocr", "--book", "b1"]) == 0

    assert "Nothing to process for ocr" in capsys.readouterr().out
    handler.assert_not_called()
