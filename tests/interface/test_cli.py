"""Tests for CLI commands: integrity checks, cloze edits, queue, review, sync, config and server."""

import json
from unittest.mock import MagicMock, patch

from typer.testing import CliRunner

from memplayer.interface.cli import app, humanize_error

runner = CliRunner()


# --- Help ---


def test_cli_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "spaced repetition" in result.output
    assert "sync" in result.output
    assert "queue" in result.output


# --- Check ---


def test_check_clean_vault(mock_vault):
    result = runner.invoke(app, ["check", str(mock_vault)])
    assert result.exit_code == 0
    assert "Notes: 1  Cards: 3" in result.output
    assert "All notes OK." in result.output


def test_check_reports_broken_spans(mock_vault):
    (mock_vault / "broken.md").write_text("A {{c1:bad}} and {{c3::gap}}", encoding="utf-8")

    result = runner.invoke(app, ["check", str(mock_vault), "--json"])

    assert result.exit_code == 1
    data = json.loads(result.stdout)
    assert data["ok"] is False
    (finding,) = data["notes"]
    assert finding["file"] == "broken.md"
    assert finding["malformed"] == 1
    assert finding["missing_ids"] == [1, 2]


def test_check_reports_frontmatter_errors(mock_vault):
    (mock_vault / "yaml.md").write_text("---\ntitle: a\ntitle: b\n---\nbody", encoding="utf-8")

    result = runner.invoke(app, ["check", str(mock_vault), "--json"])

    assert result.exit_code == 1
    (finding,) = json.loads(result.stdout)["notes"]
    assert finding["frontmatter_error"].startswith("Duplicate Key")


# --- Cloze edits ---


def test_clean_rewrites_file(tmp_path):
    note = tmp_path / "n.md"
    note.write_text("See {{c1:answer}} here", encoding="utf-8")

    result = runner.invoke(app, ["clean", str(note)])

    assert result.exit_code == 0
    assert "Cleaned 1 malformed span(s)" in result.output
    assert note.read_text(encoding="utf-8") == "See answer here"


def test_clean_dry_run_keeps_file(tmp_path):
    note = tmp_path / "n.md"
    note.write_text("See {{c1:answer}} here", encoding="utf-8")

    result = runner.invoke(app, ["clean", str(note), "--dry-run"])

    assert "Would clean 1" in result.output
    assert note.read_text(encoding="utf-8") == "See {{c1:answer}} here"


def test_cloze_wraps_first_occurrence(tmp_path):
    note = tmp_path / "n.md"
    note.write_text("The sky is blue. {{c1::Grass}} is green. The sky.", encoding="utf-8")

    result = runner.invoke(app, ["cloze", str(note), "sky", "--hint", "up"])

    assert result.exit_code == 0
    assert "Created c2 in n.md" in result.output
    assert note.read_text(encoding="utf-8") == (
        "The {{c2::sky::up}} is blue. {{c1::Grass}} is green. The sky."
    )


def test_cloze_continue_reuses_previous_id(tmp_path):
    note = tmp_path / "n.md"
    note.write_text("{{c1::Grass}} is green and wet.", encoding="utf-8")

    result = runner.invoke(app, ["cloze", str(note), "wet", "--continue"])

    assert "Created c1" in result.output
    assert note.read_text(encoding="utf-8").endswith("{{c1::wet}}.")


def test_cloze_missing_text(tmp_path):
    note = tmp_path / "n.md"
    note.write_text("nothing here", encoding="utf-8")

    result = runner.invoke(app, ["cloze", str(note), "absent"])

    assert result.exit_code == 1
    assert note.read_text(encoding="utf-8") == "nothing here"


def test_normalize_with_yes(mock_vault, monkeypatch):
    monkeypatch.chdir(mock_vault)
    note = mock_vault / "gaps.md"
    note.write_text("---\nmp-id: gaps\n---\n{{c1::a}} {{c3::b}}", encoding="utf-8")

    result = runner.invoke(app, ["normalize", str(note), "--yes"])

    assert result.exit_code == 0
    assert "c3 -> c2" in result.output
    assert note.read_text(encoding="utf-8").endswith("{{c1::a}} {{c2::b}}")
    assert (mock_vault / ".memplayer" / "state.json").exists()


def test_normalize_declined(mock_vault, monkeypatch):
    monkeypatch.chdir(mock_vault)
    note = mock_vault / "gaps.md"
    note.write_text("{{c1::a}} {{c3::b}}", encoding="utf-8")

    result = runner.invoke(app, ["normalize", str(note)], input="n\n")

    assert result.exit_code == 1
    assert "Aborted." in result.output
    assert note.read_text(encoding="utf-8") == "{{c1::a}} {{c3::b}}"


def test_normalize_outside_vault(mock_vault, tmp_path, monkeypatch):
    monkeypatch.chdir(mock_vault)
    outside = tmp_path / "elsewhere.md"
    outside.write_text("{{c2::a}}", encoding="utf-8")

    result = runner.invoke(app, ["normalize", str(outside), "--yes"])
    assert result.exit_code == 1
    assert "not inside the vault" in result.output


# --- Queue, forecast, review, sync ---


def test_queue_json_lists_new_cards(mock_vault):
    result = runner.invoke(app, ["queue", str(mock_vault), "--json"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["counts"]["new"] == 3
    assert [(i["note_id"], i["cloze_index"]) for i in data["session"]] == [
        ("note-1", 1),
        ("note-1", 2),
        ("note-1", 3),
    ]
    assert data["session"][0]["file"] == "biology/cells.md"


def test_forecast_prints_one_line_per_day(mock_vault):
    result = runner.invoke(app, ["forecast", str(mock_vault), "--days", "3"])
    assert result.exit_code == 0
    lines = result.output.strip().splitlines()
    assert len(lines) == 3
    assert all(line.endswith("  0") for line in lines)


def test_review_persists_between_runs(mock_vault):
    result = runner.invoke(app, ["review", "note-1", "1", "4", "--path", str(mock_vault)])

    assert result.exit_code == 0, result.output
    assert "c1 of note-1: review" in result.output
    assert (mock_vault / ".memplayer" / "state.json").exists()

    queue = runner.invoke(app, ["queue", str(mock_vault), "--json"])
    data = json.loads(queue.stdout)
    assert data["counts"]["new"] == 2
    assert data["counts"]["future"] == 1


def test_review_invalid_rating(mock_vault):
    result = runner.invoke(app, ["review", "note-1", "1", "9", "--path", str(mock_vault)])
    assert result.exit_code == 1
    assert not (mock_vault / ".memplayer" / "state.json").exists()


def test_review_unknown_card(mock_vault):
    result = runner.invoke(app, ["review", "note-1", "8", "3", "--path", str(mock_vault)])
    assert result.exit_code == 1


def test_suspend_moves_card_out_of_queue(mock_vault):
    result = runner.invoke(app, ["suspend", "note-1", "2", "--path", str(mock_vault)])
    assert result.exit_code == 0, result.output
    assert "c2 of note-1: suspended" in result.output

    data = json.loads(runner.invoke(app, ["queue", str(mock_vault), "--json"]).stdout)
    assert data["counts"]["suspended"] == 1
    assert [i["cloze_index"] for i in data["session"]] == [1, 3]

    result = runner.invoke(app, ["suspend", "note-1", "2", "--off", "--path", str(mock_vault)])
    assert "c2 of note-1: unsuspended" in result.output
    data = json.loads(runner.invoke(app, ["queue", str(mock_vault), "--json"]).stdout)
    assert data["counts"]["suspended"] == 0


def test_suspend_unknown_card(mock_vault):
    result = runner.invoke(app, ["suspend", "note-1", "8", "--path", str(mock_vault)])
    assert result.exit_code == 1


def test_reset_returns_card_to_new(mock_vault):
    runner.invoke(app, ["review", "note-1", "1", "4", "--path", str(mock_vault)])

    result = runner.invoke(app, ["reset", "note-1", "1", "--yes", "--path", str(mock_vault)])
    assert result.exit_code == 0, result.output
    assert "c1 of note-1: reset" in result.output

    data = json.loads(runner.invoke(app, ["queue", str(mock_vault), "--json"]).stdout)
    assert data["counts"]["new"] == 3
    assert data["counts"]["future"] == 0


def test_reset_declined(mock_vault):
    runner.invoke(app, ["review", "note-1", "1", "4", "--path", str(mock_vault)])

    result = runner.invoke(app, ["reset", "note-1", "1", "--path", str(mock_vault)], input="n\n")
    assert result.exit_code == 1
    assert "Aborted" in result.output
    data = json.loads(runner.invoke(app, ["queue", str(mock_vault), "--json"]).stdout)
    assert data["counts"]["future"] == 1


def test_sync_memory_backend(mock_vault):
    result = runner.invoke(app, ["sync", str(mock_vault), "--backend", "memory"])

    assert result.exit_code == 0, result.output
    assert "Notes: 1 synced, 0 failed" in result.output
    assert "Card states pulled: 3" in result.output

    state = json.loads((mock_vault / ".memplayer" / "state.json").read_text(encoding="utf-8"))
    assert state["sync"]["note-1"]["pending"] is False


def test_sync_postgrest_without_credentials(mock_vault):
    result = runner.invoke(app, ["sync", str(mock_vault), "--backend", "postgrest"])
    assert result.exit_code == 1
    assert "remote_url" in result.output


# --- Ids ---


def test_assign_ids(tmp_path):
    (tmp_path / "a.md").write_text("# A\n{{c1::x}}", encoding="utf-8")
    (tmp_path / "b.md").write_text("---\nmp-id: fixed\n---\nbody", encoding="utf-8")

    dry = runner.invoke(app, ["assign-ids", str(tmp_path), "--dry-run"])
    assert "Would assign 1 note id(s)." in dry.output
    assert "mp-id" not in (tmp_path / "a.md").read_text(encoding="utf-8")

    result = runner.invoke(app, ["assign-ids", str(tmp_path)])
    assert result.exit_code == 0
    assert "Assigned 1 note id(s)." in result.output
    assert (tmp_path / "a.md").read_text(encoding="utf-8").startswith("---\nmp-id: ")


# --- Stats ---


def test_stats_json(mock_vault):
    runner.invoke(app, ["review", "note-1", "2", "1", "--path", str(mock_vault)])

    result = runner.invoke(app, ["stats", str(mock_vault), "--json"])

    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data["health"]["total"] == 3
    assert data["health"]["learning"] == 1
    assert sum(data["activity"].values()) == 1


# --- Config ---


@patch("memplayer.interface.cli.resolve_config")
def test_config_show_masks_key(mock_resolve_config):
    mock_config = MagicMock()
    mock_config.model_dump.return_value = {
        "backend": "postgrest",
        "remote_key": "secret",
        "verbose": 1,
    }
    mock_resolve_config.return_value = mock_config

    result = runner.invoke(app, ["config", "show"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["backend"] == "postgrest"
    assert data["remote_key"] == "***"


# --- Server ---


@patch("uvicorn.run")
def test_serve_command(mock_run):
    result = runner.invoke(app, ["serve", "--port", "9000"])
    assert result.exit_code == 0
    mock_run.assert_called_once_with(
        "memplayer.server:app", host="127.0.0.1", port=9000, reload=False
    )


# --- humanize_error ---


def test_humanize_error_yaml_messages():
    assert humanize_error("expected <block end>, but found").startswith("Indentation Error")
    assert humanize_error("found duplicate key 'title'").startswith("Duplicate Key")
    assert humanize_error("scanner error in line 2").startswith("Syntax Error")


def test_humanize_error_timeout_and_passthrough():
    assert humanize_error("GET notes timed out").startswith("Timeout")
    assert humanize_error("something else") == "something else"
