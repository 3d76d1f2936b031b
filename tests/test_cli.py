"""Tests for the archetype-engine CLI."""

import json

import pytest
import yaml
from click.testing import CliRunner

from archetype_engine.catalog import load_catalog, reset_catalog
from archetype_engine.cli import EXIT_NO_RESPONSES, main, parse_responses_file
from archetype_engine.config import CONFIG_ENV_VAR, reset_config
from archetype_engine.schema import QuickWinSource, QuickWinStatus
from archetype_engine.store import JsonFileStore


def dimension_for(question_id: int) -> str:
    if question_id <= 7:
        return "Efficiency"
    if question_id <= 14:
        return "Effectiveness"
    return "Excellence"


def write_responses(path, low=(), comments=None):
    comments = comments or {}
    items = [
        {
            "question_id": q,
            "score": 1 if q in low else 5,
            "dimension": dimension_for(q),
            "comment": comments.get(q),
        }
        for q in range(1, 21)
    ]
    path.write_text(json.dumps(items), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    reset_config()
    reset_catalog()
    yield
    reset_config()
    reset_catalog()


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "state.json"


def invoke(runner, store_path, *args):
    return runner.invoke(main, ["--store", str(store_path), *args])


class TestParseResponses:
    """Tests for reading questionnaire submissions."""

    def test_object_with_aliases(self, tmp_path):
        path = tmp_path / "r.json"
        path.write_text(json.dumps({"responses": [
            {"questionId": 3, "response_value": 2, "dimension": "efficiency"},
        ]}), encoding="utf-8")
        responses = parse_responses_file(path)
        assert responses[0].question_id == 3
        assert responses[0].score == 2

    def test_invalid_score(self, tmp_path):
        path = tmp_path / "r.json"
        path.write_text(json.dumps([{"question_id": 1, "score": 9, "dimension": "Efficiency"}]), encoding="utf-8")
        with pytest.raises(ValueError, match="Response #1"):
            parse_responses_file(path)

    def test_not_a_list(self, tmp_path):
        path = tmp_path / "r.json"
        path.write_text(json.dumps({"responses": "nope"}), encoding="utf-8")
        with pytest.raises(ValueError):
            parse_responses_file(path)


class TestMixedTimestamps:
    """Submissions with and without a UTC offset share one history."""

    def test_aware_resubmission_after_naive_history(self, runner, store_path, tmp_path):
        first = write_responses(tmp_path / "first.json")
        items = json.loads(first.read_text(encoding="utf-8"))
        for item in items:
            item["submitted_at"] = "2025-03-01T09:00:00"
        first.write_text(json.dumps(items), encoding="utf-8")

        second = write_responses(tmp_path / "second.json", low=(5, 16, 17))
        items = json.loads(second.read_text(encoding="utf-8"))
        for item in items:
            item["submitted_at"] = "2025-03-02T09:00:00Z"
        second.write_text(json.dumps(items), encoding="utf-8")

        invoke(runner, store_path, "submit", "-u", "acme", "-r", str(first))
        invoke(runner, store_path, "submit", "-u", "acme", "-r", str(second))

        result = invoke(runner, store_path, "detect", "-u", "acme", "-j")
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["matches"][0]["archetype_name"] == "Escalation"


class TestDetectCommands:
    """Tests for submit, detect, explain and clear."""

    def test_help(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "detect" in result.output
        assert "quick-wins" in result.output

    def test_submit_and_detect(self, runner, store_path, tmp_path):
        responses = write_responses(tmp_path / "r.json", low=(5, 16, 17))
        result = invoke(runner, store_path, "submit", "-u", "acme", "-r", str(responses), "--detect")

        assert result.exit_code == 0, result.output
        assert "Saved 20 responses" in result.output
        assert "Escalation" in result.output
        assert store_path.exists()

    def test_detect_json(self, runner, store_path, tmp_path):
        responses = write_responses(tmp_path / "r.json", low=(1, 4, 9), comments={1: "just a quick fix"})
        invoke(runner, store_path, "submit", "-u", "acme", "-r", str(responses))

        result = invoke(runner, store_path, "detect", "-u", "acme", "-j")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["matches"][0]["archetype_name"] == "Shifting the Burden"
        assert data["matches"][0]["source_dimension"] == "Efficiency"
        assert data["quick_wins"][0]["source"] == "system"

    def test_detect_writes_out_file(self, runner, store_path, tmp_path):
        responses = write_responses(tmp_path / "r.json")
        invoke(runner, store_path, "submit", "-u", "acme", "-r", str(responses))

        out = tmp_path / "result.json"
        result = invoke(runner, store_path, "detect", "-u", "acme", "-v", "-o", str(out))
        assert result.exit_code == 0, result.output
        data = json.loads(out.read_text(encoding="utf-8"))
        assert data["matches"] == []
        assert data["used_fallback_quick_wins"] is True

    def test_detect_without_responses(self, runner, store_path):
        result = invoke(runner, store_path, "detect", "-u", "nobody")
        assert result.exit_code == EXIT_NO_RESPONSES
        assert "No questionnaire responses" in result.output
        assert not store_path.exists()

    def test_submit_invalid_file(self, runner, store_path, tmp_path):
        path = tmp_path / "r.json"
        path.write_text(json.dumps([{"question_id": 1, "score": 0, "dimension": "Efficiency"}]), encoding="utf-8")
        result = invoke(runner, store_path, "submit", "-u", "acme", "-r", str(path))
        assert result.exit_code == 1

    def test_explain_does_not_persist(self, runner, store_path, tmp_path):
        responses = write_responses(tmp_path / "r.json", low=(7,))
        invoke(runner, store_path, "submit", "-u", "acme", "-r", str(responses))

        result = invoke(runner, store_path, "explain", "-u", "acme")
        assert result.exit_code == 0, result.output
        assert "Limits to Growth" in result.output
        assert "fallback" in result.output
        assert JsonFileStore(store_path, load_catalog()).load_archetype_matches("acme") == []

    def test_clear(self, runner, store_path, tmp_path):
        responses = write_responses(tmp_path / "r.json", low=(5, 16, 17))
        invoke(runner, store_path, "submit", "-u", "acme", "-r", str(responses), "--detect")

        result = invoke(runner, store_path, "clear", "-u", "acme")
        assert result.exit_code == 0, result.output
        assert "Cleared 1 archetype record(s)" in result.output

        store = JsonFileStore(store_path, load_catalog())
        assert store.load_archetype_matches("acme") == []
        assert store.load_quick_wins("acme")


class TestSummaryCommand:
    """Tests for the summary command."""

    def test_summary_json(self, runner, store_path, tmp_path):
        responses = write_responses(tmp_path / "r.json", low=(5, 16, 17))
        invoke(runner, store_path, "submit", "-u", "acme", "-r", str(responses), "--detect")

        result = invoke(runner, store_path, "summary", "-u", "acme", "-j")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["assessment"]["total_responses"] == 20
        assert data["quick_wins"]["system_generated"] == 2
        assert data["quick_wins"]["user_created"] == 0
        assert data["archetypes"][0]["archetype_name"] == "Escalation"

    def test_summary_text(self, runner, store_path, tmp_path):
        responses = write_responses(tmp_path / "r.json", low=(1, 2))
        invoke(runner, store_path, "submit", "-u", "acme", "-r", str(responses))

        result = invoke(runner, store_path, "summary", "-u", "acme")
        assert result.exit_code == 0, result.output
        assert "Efficiency" in result.output
        assert "Quick Wins" in result.output

    def test_summary_without_responses(self, runner, store_path):
        result = invoke(runner, store_path, "summary", "-u", "nobody")
        assert result.exit_code == EXIT_NO_RESPONSES


class TestQuickWinCommands:
    """Tests for the quick-wins group."""

    def test_list_empty(self, runner, store_path):
        result = invoke(runner, store_path, "quick-wins", "list", "-u", "acme")
        assert result.exit_code == 0
        assert "No quick wins for acme" in result.output

    def test_add_list_and_update(self, runner, store_path):
        result = invoke(
            runner, store_path, "quick-wins", "add",
            "-u", "acme", "-t", "Daily standup", "-d", "efficiency", "--impact", "high",
        )
        assert result.exit_code == 0, result.output

        store = JsonFileStore(store_path, load_catalog())
        [quick_win] = store.load_quick_wins("acme")
        assert quick_win.source == QuickWinSource.USER
        assert quick_win.impact_level.value == "High"

        result = invoke(runner, store_path, "quick-wins", "list", "-u", "acme", "-j")
        assert json.loads(result.stdout)[0]["title"] == "Daily standup"

        result = invoke(
            runner, store_path, "quick-wins", "status",
            "-u", "acme", "--id", quick_win.id, "--status", "in-progress", "--notes", "started",
        )
        assert result.exit_code == 0, result.output

        [updated] = JsonFileStore(store_path, load_catalog()).load_quick_wins("acme")
        assert updated.status == QuickWinStatus.IN_PROGRESS
        assert updated.notes == "started"

    def test_status_unknown_id(self, runner, store_path):
        result = invoke(runner, store_path, "quick-wins", "status", "-u", "acme", "--id", "nope", "--status", "done")
        assert result.exit_code == 1
        assert "Quick win not found" in result.output

    def test_status_unknown_value(self, runner, store_path):
        result = invoke(runner, store_path, "quick-wins", "status", "-u", "acme", "--id", "x", "--status", "blocked")
        assert result.exit_code == 1

    def test_detect_keeps_user_quick_wins(self, runner, store_path, tmp_path):
        invoke(runner, store_path, "quick-wins", "add", "-u", "acme", "-t", "Mine", "-d", "Excellence")
        responses = write_responses(tmp_path / "r.json", low=(5, 16, 17))
        invoke(runner, store_path, "submit", "-u", "acme", "-r", str(responses), "--detect")
        invoke(runner, store_path, "detect", "-u", "acme")

        quick_wins = JsonFileStore(store_path, load_catalog()).load_quick_wins("acme")
        assert [qw.title for qw in quick_wins if qw.source == QuickWinSource.USER] == ["Mine"]


class TestCatalogCommands:
    """Tests for the catalog group."""

    def test_validate_bundled(self, runner):
        result = runner.invoke(main, ["catalog", "validate"])
        assert result.exit_code == 0
        assert "Catalog valid" in result.output

    def test_validate_invalid(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"archetypes": [{
            "name": "Broken",
            "description": "",
            "symptom_keywords": ["x"],
            "diagnostic_question_ids": [],
        }]}), encoding="utf-8")

        result = runner.invoke(main, ["catalog", "validate", str(path)])
        assert result.exit_code == 1
        assert "Catalog invalid" in result.output
        assert "Empty diagnostic question list" in result.output

    def test_show(self, runner):
        result = runner.invoke(main, ["catalog", "show"])
        assert result.exit_code == 0
        assert "Drifting Goals" in result.output

    def test_show_one(self, runner):
        result = runner.invoke(main, ["catalog", "show", "-n", "escalation"])
        assert result.exit_code == 0
        assert "Escalation" in result.output

    def test_show_unknown(self, runner):
        result = runner.invoke(main, ["catalog", "show", "-n", "Ghost"])
        assert result.exit_code == 1

    def test_export_and_use(self, runner, store_path, tmp_path):
        out = tmp_path / "custom.yaml"
        result = runner.invoke(main, ["catalog", "export", "-o", str(out)])
        assert result.exit_code == 0, result.output
        assert load_catalog(out) == load_catalog()

        result = runner.invoke(main, ["catalog", "export", "-o", str(out)])
        assert result.exit_code == 1

        responses = write_responses(tmp_path / "r.json", low=(5, 16, 17))
        result = runner.invoke(main, [
            "--store", str(store_path), "--catalog", str(out),
            "submit", "-u", "acme", "-r", str(responses), "--detect",
        ])
        assert result.exit_code == 0, result.output

    def test_missing_catalog(self, runner, store_path, tmp_path):
        result = runner.invoke(main, [
            "--store", str(store_path), "--catalog", str(tmp_path / "none.yaml"),
            "quick-wins", "list", "-u", "acme",
        ])
        assert result.exit_code == 1


class TestInitConfig:
    """Tests for the init-config command."""

    def test_creates_file(self, runner, tmp_path):
        out = tmp_path / "archetype-engine.yaml"
        result = runner.invoke(main, ["init-config", "-o", str(out)])
        assert result.exit_code == 0
        assert "Config file created" in result.output
        assert "score_bands" in out.read_text(encoding="utf-8")

    def test_refuses_overwrite(self, runner, tmp_path):
        out = tmp_path / "archetype-engine.yaml"
        out.write_text("# mine\n", encoding="utf-8")
        result = runner.invoke(main, ["init-config", "-o", str(out)])
        assert result.exit_code == 1
        assert out.read_text(encoding="utf-8") == "# mine\n"

    def test_config_file_picked_up(self, runner, tmp_path):
        store = tmp_path / "from-config.json"
        (tmp_path / "archetype-engine.yaml").write_text(
            yaml.safe_dump({"storage": {"path": str(store)}}), encoding="utf-8"
        )
        runner.invoke(main, ["quick-wins", "add", "-u", "acme", "-t", "Mine", "-d", "Efficiency"])
        assert store.exists()
