from __future__ import annotations

import json

from click.testing import CliRunner

from memarchive.cli import main
from memarchive.config import Config
from memarchive.session.lock import ArchiveLock

PROPOSAL = {
    "semantic_units": [{
        "id": "auth-flow",
        "keywords": ["jwt", "auth"],
        "summary": "JWT authentication flow",
        "content": "Access tokens are JWTs that refresh every 15 minutes.",
    }],
    "episodic_draft": {"action": "Switched API auth to JWT", "trigger": "user request"},
}


def _write_inputs(tmp_path):
    transcript = tmp_path / "transcript.txt"
    transcript.write_text("We switched the API to JWT access tokens.", encoding="utf-8")
    proposal = tmp_path / "proposal.json"
    proposal.write_text(json.dumps(PROPOSAL), encoding="utf-8")
    return str(transcript), str(proposal)


def test_status_on_empty_root(tmp_path):
    root = tmp_path / "memory"
    result = CliRunner().invoke(main, ["--data-dir", str(root), "status"])
    assert result.exit_code == 0, result.output
    assert "Semantic docs:     0" in result.output
    assert "Clue index:        not published" in result.output


def test_archive_then_read_back(tmp_path):
    root = tmp_path / "memory"
    transcript, proposal = _write_inputs(tmp_path)
    runner = CliRunner()

    result = runner.invoke(main, ["--data-dir", str(root), "archive", transcript, "--proposal", proposal])
    assert result.exit_code == 0, result.output
    assert "Created: auth-flow" in result.output
    assert "Session: IDLE -> ROUTING -> PLASTICITY -> LOGGING -> REINDEXING -> DONE" in result.output
    assert "Logged: episodic/" in result.output

    result = runner.invoke(main, ["--data-dir", str(root), "retrieve", "jwt"])
    assert result.exit_code == 0, result.output
    assert "semantic/auth-flow [FRESH" in result.output

    result = runner.invoke(main, ["--data-dir", str(root), "clues"])
    assert "- [jwt, auth] → semantic/auth-flow.md" in result.output

    result = runner.invoke(main, ["--data-dir", str(root), "check"])
    assert result.exit_code == 0
    assert result.output.strip() == "OK"

    result = runner.invoke(main, ["--data-dir", str(root), "consolidate"])
    assert result.exit_code == 0
    assert "nothing to do" in result.output


def test_check_exits_nonzero_on_quarantined_file(tmp_path):
    root = tmp_path / "memory"
    (root / "semantic").mkdir(parents=True)
    (root / "semantic" / "broken.md").write_text("no header here", encoding="utf-8")

    result = CliRunner().invoke(main, ["--data-dir", str(root), "check"])
    assert result.exit_code == 3
    assert "quarantined:" in result.output


def test_archive_reports_busy(tmp_path):
    root = tmp_path / "memory"
    root.mkdir()
    (root / "config.json").write_text('{"session": {"lock_timeout": 0.05}}', encoding="utf-8")
    transcript, proposal = _write_inputs(tmp_path)

    with ArchiveLock(Config.load(root).lock_path):
        result = CliRunner().invoke(main, ["--data-dir", str(root), "archive", transcript, "-p", proposal])

    assert result.exit_code == 2
    assert not (root / "semantic" / "auth-flow.md").exists()
