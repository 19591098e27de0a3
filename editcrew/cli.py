"""
Editcrew CLI - coordinated multi-specialist code edits.

Commands:
    init    - Initialize Editcrew in current project
    run     - Run one coordinated edit request against project files
    rules   - Show the active reaction rules
    memory  - Search and list stored task outcomes
    prefs   - List learned preferences
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click
from dotenv import load_dotenv

from . import __version__
from .config import CONFIG_FILENAME, EditcrewConfig, ensure_editcrew_dir, get_editcrew_dir, get_project_root
from .embeddings import Embedder
from .logs import setup_logging
from .memory import OutcomeMemory
from .orchestration.conflicts import ConflictSelectionError
from .orchestration.coordinator import Coordinator, CoordinatorResult
from .orchestration.errors import OrchestrationError, suggested_action
from .orchestration.events import EventEmitter
from .orchestration.llm import LiteLLMClient
from .orchestration.specialists import build_registry
from .orchestration.types import FileContext, Task, TaskContext, file_extension
from .store import Store

# Load .env file from current directory or project root
load_dotenv()
load_dotenv(Path.cwd() / ".env")
load_dotenv(get_project_root() / ".env")


SAMPLE_CONFIG = """\
# Editcrew Configuration

project:
  id: my-theme             # Scopes outcome memory and preferences
  name: My Theme

# API keys are read from environment (OPENAI_API_KEY, ANTHROPIC_API_KEY, etc.)
# See: https://docs.litellm.ai/docs/providers
llm:
  coordinator_model: gpt-4o
  specialist_model: gpt-4o-mini
  review_model: claude-3-5-sonnet-20241022
  fallback_model: gpt-4o-mini
  embedding_model: text-embedding-3-small
  temperature: 0.2
  max_tokens: 4000

# Estimated-token ceilings for file context per prompt
budget:
  coordinator_tokens: 24000
  specialist_tokens: 12000
  review_tokens: 16000

orchestration:
  max_parallel_specialists: 4
  specialist_timeout_seconds: 120
  parse_retries: 1                 # Corrective re-asks when coordinator output is unusable
  conflict_mode: auto              # auto (first submitted wins) | manual
  patch_mismatch_policy: skip      # skip (flag low confidence) | fail
  reaction_precedence: declaration # declaration | escalate_first | retry_first

memory:
  enabled: true
  max_age_days: 90
  prompt_threshold: 0.7
  backfill_max_attempts: 3

review:
  enabled: true
  llm_enabled: true

# Reaction rules (omit to use the defaults)
# reactions:
#   - id: retry-failed-narrow
#     trigger: specialist.failed        # specialist.failed | specialist.no_changes | specialist.stalled
#     action: retry_with_narrow_scope   # retry_with_narrow_scope | inject_instruction | escalate_clarification
#     max_retries: 1
#     instruction: Retry with a narrower scope.
"""

FILE_TYPES = {
    ".liquid": "liquid",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "javascript",
    ".css": "css",
    ".scss": "css",
    ".json": "json",
}


def _build_llm(config: EditcrewConfig, emitter: EventEmitter) -> LiteLLMClient:
    return LiteLLMClient(config.llm, emitter=emitter)


def _build_embedder(config: EditcrewConfig) -> Embedder:
    return Embedder(config.llm.embedding_model)


def _load_config() -> EditcrewConfig:
    return EditcrewConfig.load(get_project_root())


def _open_store(config: EditcrewConfig) -> Store:
    return Store(config.resolved_db_path)


def _read_files(project_root: Path, paths: tuple[str, ...]) -> list[FileContext]:
    files = []
    for raw in paths:
        path = Path(raw)
        absolute = path if path.is_absolute() else project_root / path
        if not absolute.is_file():
            raise click.ClickException(f"File not found: {raw}")
        try:
            relative = absolute.resolve().relative_to(project_root.resolve()).as_posix()
        except ValueError:
            relative = path.as_posix()
        files.append(
            FileContext(
                file_id=relative,
                file_name=relative,
                file_type=FILE_TYPES.get(file_extension(relative), "other"),
                content=absolute.read_text(encoding="utf-8"),
                path=relative,
            )
        )
    return files


def _print_result(result: CoordinatorResult) -> None:
    click.echo(f"Strategy: {result.strategy}")
    if result.analysis:
        click.echo(f"Analysis: {result.analysis}")
    if result.needs_clarification:
        click.echo("\nClarification needed:")
        for index, option in enumerate(result.clarification_options, start=1):
            marker = " (recommended)" if option.recommended else ""
            reason = f" - {option.reason}" if option.reason else ""
            click.echo(f"  {index}. {option.label}{marker}{reason}")
        return
    if result.cancelled:
        click.echo("Run cancelled.")
        return

    click.echo("\nChanges:")
    if not result.changes:
        click.echo("  (none)")
    for change in result.changes:
        flag = " [low confidence]" if change.low_confidence else ""
        click.echo(f"  {change.status:<9} {change.file_name} by {change.agent} ({change.confidence:.2f}){flag}")
    for conflict in result.conflicts:
        agents = ", ".join(change.agent for change in conflict.changes)
        click.echo(f"  conflict on {conflict.file_name}: {agents} -> kept #{conflict.selected_index}")
    if result.escalation:
        click.echo(f"\n[?] {result.escalation}")
    if result.failure:
        click.echo(f"\n[failed] {result.failure}")
    if result.review is not None:
        status = "approved" if result.review.approved else "blocked"
        click.echo(f"\nReview: {status} - {result.review.summary}")
        for issue in result.review.issues:
            click.echo(f"  [{issue.severity}] {issue.file or '-'}: {issue.description}")
    usage = result.token_usage
    click.echo(
        f"\nTokens: {usage.prompt_tokens} in / {usage.completion_tokens} out, "
        f"cost ${usage.cost_usd:.4f} over {usage.calls} call(s)"
    )


def _parse_selections(raw: tuple[str, ...]) -> dict[str, int]:
    picks: dict[str, int] = {}
    for item in raw:
        file_name, sep, index = item.rpartition("=")
        if not sep or not file_name or not index.isdigit():
            raise click.BadParameter(f"Expected FILE=INDEX, got {item!r}", param_hint="--select")
        picks[file_name] = int(index)
    return picks


def _apply_changes(project_root: Path, result: CoordinatorResult) -> list[str]:
    if result.review is not None and not result.review.approved:
        raise click.ClickException("Review found blocking issues; nothing was written.")
    if result.pending_conflicts:
        raise click.ClickException("Unresolved conflicts; nothing was written.")
    root = project_root.resolve()
    targets = []
    for change in result.accepted_changes:
        target = (root / change.file_name).resolve()
        if not target.is_relative_to(root):
            raise click.ClickException(f"{change.file_name} is outside the project root; nothing was written.")
        targets.append((target, change))
    written = []
    for target, change in targets:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(change.proposed_content, encoding="utf-8")
        written.append(change.file_name)
    return written


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs on stderr")
def main(verbose: bool):
    """Editcrew - coordinated multi-specialist code edits."""
    setup_logging(verbose=verbose, state_dir=get_editcrew_dir(get_project_root()))


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize Editcrew in the current project."""
    project_root = get_project_root()
    click.echo(f"Initializing Editcrew in: {project_root}")

    editcrew_dir = ensure_editcrew_dir(project_root)
    click.echo(f"  Created: {editcrew_dir}")

    config_path = project_root / CONFIG_FILENAME
    if not config_path.exists() or force:
        config_path.write_text(SAMPLE_CONFIG)
        click.echo(f"  Created: {config_path}")
    else:
        click.echo(f"  Skipped: {config_path} (already exists)")

    store = _open_store(EditcrewConfig.load(project_root))
    click.echo(f"  Database: {store.db_path}")

    gitignore_path = project_root / ".gitignore"
    gitignore_entry = "\n# Editcrew\n.editcrew/\n.env\n"
    if gitignore_path.exists():
        content = gitignore_path.read_text()
        if ".editcrew" not in content:
            with open(gitignore_path, "a") as f:
                f.write(gitignore_entry)
            click.echo(f"  Updated: {gitignore_path}")
    else:
        gitignore_path.write_text(gitignore_entry)
        click.echo(f"  Created: {gitignore_path}")

    click.echo("\nEditcrew initialized! Next steps:")
    click.echo(f"  1. Edit {CONFIG_FILENAME} to pick models and policies")
    click.echo("  2. Set OPENAI_API_KEY (or another provider key)")
    click.echo('  3. Run: editcrew run "Add a hero section" --file sections/hero.liquid')


@main.command()
@click.argument("instruction")
@click.option("--file", "-f", "file_paths", multiple=True, help="Project file to include (repeatable)")
@click.option("--project", "project_id", default=None, help="Project id for memory scoping")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--apply", "apply_changes", is_flag=True, help="Write accepted changes to disk")
@click.option("--select", "selections", multiple=True, help="Manual conflict pick as FILE=INDEX (repeatable)")
def run(
    instruction: str,
    file_paths: tuple[str, ...],
    project_id: str | None,
    as_json: bool,
    apply_changes: bool,
    selections: tuple[str, ...],
):
    """Run one coordinated edit request."""
    picks = _parse_selections(selections)
    config = _load_config()
    project_root = config.project_root or get_project_root()
    files = _read_files(project_root, file_paths)
    task = Task(
        instruction=instruction,
        context=TaskContext(files=files),
        project_id=project_id or config.project_id,
    )

    async def _run() -> CoordinatorResult:
        async def on_event(event: dict[str, object]) -> None:
            if as_json:
                return
            event_type = str(event.get("type", ""))
            if event_type == "specialist_state":
                click.echo(f"  [{event.get('agent')}] {event.get('state')} (retries={event.get('retries')})")
            elif event_type in {"warning", "escalation", "error"}:
                click.echo(f"  [{event_type}] {event.get('message', '')}")

        emitter = EventEmitter(on_event)
        memory = None
        if config.memory.enabled:
            memory = OutcomeMemory(_open_store(config), _build_embedder(config), config.memory)
        coordinator = Coordinator(
            config,
            _build_llm(config, emitter),
            registry=build_registry(),
            memory=memory,
            emitter=emitter,
        )
        try:
            outcome = await coordinator.run(task)
            if picks:
                coordinator.resolve_conflicts(outcome, picks)
            return outcome
        finally:
            if memory is not None:
                await memory.backfill.join()
                await memory.backfill.stop()

    try:
        result = asyncio.run(_run())
    except OrchestrationError as exc:
        raise click.ClickException(f"{exc} ({suggested_action(exc.kind)})") from exc
    except ConflictSelectionError as exc:
        raise click.ClickException(str(exc)) from exc

    written: list[str] = []
    if apply_changes:
        written = _apply_changes(project_root, result)

    if as_json:
        payload = result.to_dict()
        payload["written"] = written
        click.echo(json.dumps(payload, indent=2))
        return
    _print_result(result)
    for name in written:
        click.echo(f"  Wrote: {name}")


@main.command()
def rules():
    """Show the active reaction rules."""
    config = _load_config()
    click.echo(f"Precedence: {config.orchestration.reaction_precedence}")
    click.echo("ID\tTrigger\tAction\tMax retries\tEnabled")
    for rule in config.reactions:
        click.echo(f"{rule.id}\t{rule.trigger}\t{rule.action}\t{rule.max_retries}\t{rule.enabled}")


@main.group(name="memory")
def memory_group() -> None:
    """Stored task outcomes."""


@memory_group.command("search")
@click.argument("query")
@click.option("--project", "project_id", default=None, help="Project id")
@click.option("--limit", default=5, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def memory_search(query: str, project_id: str | None, limit: int, as_json: bool) -> None:
    """Find past outcomes similar to QUERY."""
    config = _load_config()
    memory = OutcomeMemory(_open_store(config), _build_embedder(config), config.memory)
    outcomes = memory.retrieve_similar(
        project_id or config.project_id,
        query,
        max_results=limit,
        threshold=config.memory.retrieve_threshold,
    )
    if as_json:
        click.echo(json.dumps([outcome.to_dict() for outcome in outcomes], indent=2))
        return
    if not outcomes:
        click.echo("No similar outcomes found.")
        return
    for outcome in outcomes:
        click.echo(f"{outcome.similarity or 0.0:.2f}\t{outcome.outcome}\t{outcome.strategy}\t{outcome.task_summary[:80]}")


@memory_group.command("list")
@click.option("--project", "project_id", default=None, help="Project id")
@click.option("--limit", default=20, show_default=True)
def memory_list(project_id: str | None, limit: int) -> None:
    """List stored outcomes, newest first."""
    config = _load_config()
    outcomes = _open_store(config).list_outcomes(project_id or config.project_id, limit=limit)
    if not outcomes:
        click.echo("No outcomes stored.")
        return
    click.echo("Created\tOutcome\tStrategy\tEmbedded\tSummary")
    for outcome in outcomes:
        embedded = "yes" if outcome.embedding else "no"
        click.echo(
            f"{outcome.created_at[:19]}\t{outcome.outcome}\t{outcome.strategy}\t{embedded}\t{outcome.task_summary[:80]}"
        )


@main.group(name="prefs")
def prefs_group() -> None:
    """Learned preferences."""


@prefs_group.command("list")
@click.option("--project", "project_id", default=None, help="Project id")
@click.option("--min-confidence", default=0.0, show_default=True, type=float)
def prefs_list(project_id: str | None, min_confidence: float) -> None:
    """List preferences above a minimum confidence."""
    config = _load_config()
    preferences = _open_store(config).list_preferences(project_id or config.project_id, min_confidence)
    if not preferences:
        click.echo("No preferences recorded.")
        return
    click.echo("Category\tPreference\tConfidence\tObservations")
    for item in preferences:
        click.echo(f"{item.category}\t{item.preference}\t{item.confidence:.2f}\t{item.observation_count}")


@prefs_group.command("add")
@click.argument("category")
@click.argument("preference")
@click.option("--project", "project_id", default=None, help="Project id")
@click.option("--confidence", default=0.6, show_default=True, type=float)
def prefs_add(category: str, preference: str, project_id: str | None, confidence: float) -> None:
    """Record or reinforce a preference."""
    config = _load_config()
    item = _open_store(config).upsert_preference(project_id or config.project_id, category, preference, confidence)
    click.echo(f"{item.category}: {item.preference} (confidence {item.confidence:.2f}, seen {item.observation_count}x)")
