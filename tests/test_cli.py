from unittest.mock import patch

import pytest

from resume_batcher.cli import main
from resume_batcher.queue import SQLiteSnapshotStore


def run_cli(*args):
    with patch("sys.argv", ["resume-batcher", *args]):
        main()


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["resume-batcher", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_queue_enqueue_help():
    """Test enqueue subcommand help."""
    with patch("sys.argv", ["resume-batcher", "queue", "enqueue", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    run_cli()
    captured = capsys.readouterr()
    assert "usage:" in captured.out.lower()


def test_cli_enqueue_and_status(tmp_path, temp_db, capsys):
    """Test enqueue persists documents the status command can see."""
    first = tmp_path / "jane.txt"
    first.write_text("Jane Doe, senior python engineer")
    second = tmp_path / "john.md"
    second.write_text("John Roe, data analyst")

    run_cli("queue", "enqueue", str(first), str(second), "--db", temp_db, "--priority", "high")
    captured = capsys.readouterr()
    assert "Queued 2 document(s), skipped 0 duplicate(s)" in captured.out

    run_cli("queue", "status", "--db", temp_db)
    captured = capsys.readouterr()
    assert "QUEUE STATUS" in captured.out
    assert "High:" in captured.out
    assert "Total queued:         2" in captured.out

    snapshot = SQLiteSnapshotStore(temp_db).load_snapshot()
    assert sum(len(items) for items in snapshot.tiers.values()) == 2


def test_cli_enqueue_skips_duplicates(tmp_path, temp_db, capsys):
    doc = tmp_path / "cv.txt"
    doc.write_text("Same resume text")

    run_cli("queue", "enqueue", str(doc), "--db", temp_db)
    run_cli("queue", "enqueue", str(doc), "--db", temp_db)

    captured = capsys.readouterr()
    assert "Queued 0 document(s), skipped 1 duplicate(s)" in captured.out


def test_cli_enqueue_context_file(tmp_path, temp_db):
    doc = tmp_path / "cv.txt"
    doc.write_text("Resume")
    job = tmp_path / "job.txt"
    job.write_text("Staff engineer, payments")

    run_cli("queue", "enqueue", str(doc), "--db", temp_db, "--context-file", str(job))

    snapshot = SQLiteSnapshotStore(temp_db).load_snapshot()
    items = [item for items in snapshot.tiers.values() for item in items]
    assert items[0].context == "Staff engineer, payments"
    assert items[0].source == "cli"


def test_cli_enqueue_missing_file(tmp_path, temp_db, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("queue", "enqueue", str(tmp_path / "missing.txt"), "--db", temp_db)
    assert exc_info.value.code == 1
    assert "Not a file" in capsys.readouterr().out


def test_cli_details(tmp_path, temp_db, capsys):
    doc = tmp_path / "cv.txt"
    doc.write_text("Resume body")
    run_cli("queue", "enqueue", str(doc), "--db", temp_db, "--priority", "urgent")
    capsys.readouterr()

    run_cli("queue", "details", "--db", temp_db, "--priority", "urgent")
    assert "cv.txt" in capsys.readouterr().out

    run_cli("queue", "details", "--db", temp_db, "--priority", "low")
    assert "No queued items." in capsys.readouterr().out


def test_cli_purge(tmp_path, temp_db, capsys):
    doc = tmp_path / "cv.txt"
    doc.write_text("Resume body")
    run_cli("queue", "enqueue", str(doc), "--db", temp_db)
    capsys.readouterr()

    run_cli("queue", "purge", "--db", temp_db)

    assert "1 queued item(s) dropped" in capsys.readouterr().out
    assert SQLiteSnapshotStore(temp_db).load_snapshot() is None
