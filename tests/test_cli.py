from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import click
import pytest
from click.testing import CliRunner
from loguru import logger

from editcrew import cli
from editcrew.cli import _apply_changes, main
from editcrew.logs import LOG_FILENAME, setup_logging
from editcrew.orchestration.coordinator import CoordinatorResult
from editcrew.orchestration.types import CodeChange


@dataclass
class FakeCompletion:
    text: str
    model: str = "fake-model"
    prompt_tokens: int = 40
    completion_tokens: int = 8
    cost_usd: float = 0.0005


class StageLLM:
    def __init__(self, responses: dict[str, str]):
        self.responses = responses

    async def complete(self, *, system, user, model=None, schema=None, stage="coordinator", max_tokens=None):
        return FakeCompletion(text=self.responses[stage])


class FixedEmbedder:
    def embed(self, text: str):
        return [1.0, 0.0]


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    logger.remove()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


@pytest.fixture
def project(tmp_path, monkeypatch):
    (tmp_path / ".git").mkdir()
    (tmp_path / "assets").mkdir()
    (tmp_path / "assets" / "hero.css").write_text(".hero { color: red; }", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "_build_embedder", lambda config: FixedEmbedder())
    return tmp_path


def _use_llm(monkeypatch, responses: dict[str, str]) -> None:
    llm = StageLLM(responses)
    monkeypatch.setattr(cli, "_build_llm", lambda config, emitter: llm)


def test_cli_help_shows_commands():
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    for command in ("init", "run", "rules", "memory", "prefs"):
        assert command in result.output


def test_init_writes_config_and_gitignore(project):
    runner = CliRunner()
    result = runner.invoke(main, ["init"])

    assert result.exit_code == 0
    assert (project / "editcrew.yml").exists()
    assert (project / ".editcrew" / "editcrew.db").exists()
    assert ".editcrew/" in (project / ".gitignore").read_text()

    again = runner.invoke(main, ["init"])
    assert "Skipped" in again.output


def test_rules_lists_default_reactions(project):
    result = CliRunner().invoke(main, ["rules"])

    assert result.exit_code == 0
    assert "Precedence: declaration" in result.output
    assert "retry-failed-narrow\tspecialist.failed\tretry_with_narrow_scope\t1\tTrue" in result.output


def test_run_json_apply_writes_accepted_changes(project, monkeypatch):
    _use_llm(
        monkeypatch,
        {
            "coordinator": json.dumps(
                {
                    "analysis": "Recolor the hero",
                    "changes": [{"file_name": "assets/hero.css", "patches": [{"search": "red", "replace": "blue"}]}],
                }
            ),
            "review": json.dumps({"issues": []}),
        },
    )

    result = CliRunner().invoke(
        main,
        ["run", "Make the hero blue", "-f", "assets/hero.css", "--project", "shop", "--json", "--apply"],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["strategy"] == "self_handle"
    assert payload["review"]["approved"] is True
    assert payload["written"] == ["assets/hero.css"]
    assert payload["token_usage"]["calls"] == 2
    assert (project / "assets" / "hero.css").read_text(encoding="utf-8") == ".hero { color: blue; }"

    listed = CliRunner().invoke(main, ["memory", "list", "--project", "shop"])
    assert "success\tself_handle\tyes\tMake the hero blue" in listed.output


def test_run_prints_clarification(project, monkeypatch):
    _use_llm(
        monkeypatch,
        {
            "coordinator": json.dumps(
                {
                    "analysis": "Which part?",
                    "needs_clarification": True,
                    "clarification_options": [
                        {"label": "Heading only", "recommended": True, "reason": "Smallest change"},
                        {"label": "Whole section"},
                    ],
                }
            )
        },
    )

    result = CliRunner().invoke(main, ["run", "Make it pop", "-f", "assets/hero.css"])

    assert result.exit_code == 0, result.output
    assert "Clarification needed:" in result.output
    assert "1. Heading only (recommended) - Smallest change" in result.output
    assert "2. Whole section" in result.output


def test_run_reports_unparseable_coordinator_output(project, monkeypatch):
    _use_llm(monkeypatch, {"coordinator": "no json here"})

    result = CliRunner().invoke(main, ["run", "Make the hero blue", "-f", "assets/hero.css"])

    assert result.exit_code == 1
    assert "Rephrase the request" in result.output


def test_run_rejects_missing_file_and_bad_selection(project):
    runner = CliRunner()

    missing = runner.invoke(main, ["run", "x", "-f", "assets/nope.css"])
    assert missing.exit_code == 1
    assert "File not found: assets/nope.css" in missing.output

    bad = runner.invoke(main, ["run", "x", "--select", "assets/hero.css"])
    assert bad.exit_code == 2
    assert "FILE=INDEX" in bad.output


def test_prefs_add_reinforces_and_lists(project):
    runner = CliRunner()
    runner.invoke(main, ["prefs", "add", "style", "Use BEM", "--project", "shop", "--confidence", "0.6"])
    second = runner.invoke(main, ["prefs", "add", "style", "Use BEM", "--project", "shop", "--confidence", "1.0"])
    assert "confidence 0.72, seen 2x" in second.output

    listed = runner.invoke(main, ["prefs", "list", "--project", "shop", "--min-confidence", "0.5"])
    assert "style\tUse BEM\t0.72\t2" in listed.output


def test_memory_search_reports_empty(project):
    result = CliRunner().invoke(main, ["memory", "search", "hero banner", "--project", "shop"])
    assert result.exit_code == 0
    assert "No similar outcomes found." in result.output


def test_setup_logging_routes_stdlib_records_to_file(tmp_path):
    setup_logging(state_dir=tmp_path)
    logging.getLogger("editcrew.sample").info("hello from stdlib")
    logger.remove()

    assert "hello from stdlib" in (tmp_path / LOG_FILENAME).read_text()


def test_apply_refuses_paths_outside_the_project(tmp_path):
    root = tmp_path / "shop"
    root.mkdir()
    inside = CodeChange(file_id="a", file_name="assets/a.css", original_content="", proposed_content="a {}")
    escape = CodeChange(file_id="b", file_name="../outside.css", original_content="", proposed_content="b {}")

    with pytest.raises(click.ClickException, match="outside the project root"):
        _apply_changes(root, CoordinatorResult(changes=[inside, escape]))

    assert not (tmp_path / "outside.css").exists()
    assert not (root / "assets" / "a.css").exists()


def test_apply_writes_nested_paths_inside_the_project(tmp_path):
    change = CodeChange(file_id="a", file_name="assets/a.css", original_content="", proposed_content="a {}")

    assert _apply_changes(tmp_path, CoordinatorResult(changes=[change])) == ["assets/a.css"]
    assert (tmp_path / "assets" / "a.css").read_text(encoding="utf-8") == "a {}"
