"""CLI commands for running the coding agent against a workspace."""

from __future__ import annotations

import logging
import queue
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer

from .config import (
    DEFAULT_CONFIG_NAME,
    AppConfig,
    ConfigError,
    copy_config_template,
    load_config,
    resolve_api_key,
    write_config,
)
from .models import ChatCompletionsClient, LLMClient, LLMClientError, LLMResult, Prompt
from .prompts import build_system_prompt, render_environment_context
from .session import (
    ApprovalDecision,
    CancelToken,
    Event,
    EventKind,
    QueueEventSink,
    Session,
    SessionBusyError,
    SessionStore,
    TurnCancelledError,
    TurnOutcome,
)
from .tools import PatchError, SafetyLevel, ToolRegistry, build_default_registry
from .tools.patch import apply_patch, format_patch_result, parse_patch, summarize_patch
from .tools.safety import ApprovalPolicy, classify_patch, parse_approval_policy

APP_HELP = "Local coding agent with approval-gated patch application."
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
OFFLINE_REPLY = (
    "Offline mode: no model is configured, so no tools were run. "
    "Set ACODE_API_KEY (or OPENAI_API_KEY) and re-run without --offline."
)

app = typer.Typer(help=APP_HELP)

CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the agent configuration file.",
)


class _OfflineLLMClient(LLMClient):
    """Local stub that answers immediately without calling a model."""

    def __init__(self) -> None:
        super().__init__("offline")

    def _raw_complete(self, prompt: Prompt) -> LLMResult:
        return LLMResult(content=OFFLINE_REPLY)


def _load(config: str) -> AppConfig:
    try:
        # the default name may be absent; an explicit path must exist
        return load_config(None if config == DEFAULT_CONFIG_NAME else Path(config))
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _build_client(config: AppConfig, *, offline: bool) -> LLMClient:
    if offline:
        typer.echo("Using offline stub client.")
        return _OfflineLLMClient()
    models_cfg = config.models
    try:
        return ChatCompletionsClient(
            api_key=resolve_api_key(),
            base_url=models_cfg.base_url,
            model=models_cfg.model,
            timeout=models_cfg.timeout,
            temperature=models_cfg.temperature,
        )
    except ValueError as error:
        typer.echo("No API key given. Set ACODE_API_KEY or OPENAI_API_KEY, or re-run with --offline.")
        raise typer.Exit(code=1) from error


@contextmanager
def _file_logging(config: AppConfig, name: str) -> Iterator[Path]:
    """Route package logs to ``<logs>/<name>.log`` for the duration of a command."""
    logs_dir = config.logs_dir
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / f"{name}.log"
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger = logging.getLogger("acode")
    previous_level = package_logger.level
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)
    try:
        yield log_path
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(previous_level)
        handler.close()


def _build_session(
    config: AppConfig,
    client: LLMClient,
    sink: QueueEventSink,
    *,
    policy: Optional[str],
    max_steps: Optional[int],
    resume: Optional[str],
) -> Session:
    settings = config.session_settings()
    if policy is not None:
        settings.approval_policy = parse_approval_policy(policy, default=settings.approval_policy)
    if max_steps is not None:
        settings.max_steps = max_steps

    registry: ToolRegistry = build_default_registry(config.workspace)
    store = SessionStore(config.sessions_dir)
    session = Session(client, registry, sink=sink, settings=settings, store=store)
    session.logger = logging.getLogger(f"acode.session.{session.id}")
    if resume:
        try:
            session.load_history(resume)
        except (KeyError, ValueError) as error:
            typer.echo(f"Cannot resume session: {error}")
            raise typer.Exit(code=1) from error
        session.logger = logging.getLogger(f"acode.session.{session.id}")
    else:
        session.reset_history(build_system_prompt(session.tools, config.session.guidance))
        session.append_environment_context(render_environment_context(config.workspace))
    return session


def _indent(text: str, spaces: int) -> str:
    pad = " " * spaces
    return "\n".join(pad + line for line in text.splitlines())


def render_event(event: Event) -> None:
    """Print one session event to the terminal."""
    kind = event.kind
    if kind is EventKind.TURN_STARTED:
        typer.secho("[turn] started", fg=typer.colors.MAGENTA, err=True)
    elif kind is EventKind.AGENT_THINKING:
        typer.secho(f"  [agent] thinking (step={event.step})...", dim=True, err=True)
    elif kind is EventKind.TOOL_PLANNED:
        typer.secho(f"  [agent] planned tool calls (step={event.step})", dim=True, err=True)
        if event.message.strip():
            typer.secho(_indent(event.message, 4), dim=True, err=True)
    elif kind is EventKind.TOOL_STARTED:
        typer.secho(f"    [tool {event.tool_name}] running", fg=typer.colors.YELLOW, err=True)
    elif kind is EventKind.TOOL_OUTPUT_DELTA:
        if event.message.strip():
            typer.secho(f"      [tool {event.tool_name} output]", fg=typer.colors.GREEN, err=True)
            typer.echo(_indent(event.message, 8))
    elif kind is EventKind.TOOL_FINISHED:
        suffix = f" {event.message}" if event.message else ""
        typer.secho(f"    [tool {event.tool_name} finished]{suffix}", fg=typer.colors.GREEN, err=True)
    elif kind is EventKind.PATCH_APPROVAL_REQUEST:
        typer.secho(f"[apply_patch approval] id={event.request_id}", fg=typer.colors.MAGENTA, err=True)
        for path in event.paths:
            typer.echo(f"    - {path}", err=True)
        if event.message.strip():
            typer.echo(f"  reason: {event.message}", err=True)
    elif kind is EventKind.PATCH_APPROVAL_RESULT:
        typer.secho(f"  [apply_patch] {event.message}", dim=True, err=True)
    elif kind is EventKind.AGENT_TEXT_DONE:
        typer.secho("[agent] final answer:", fg=typer.colors.CYAN, err=True)
        typer.echo(event.message)
    elif kind is EventKind.TURN_FINISHED:
        suffix = f": {event.message}" if event.message else ""
        typer.secho(f"[turn] finished (step={event.step}){suffix}", fg=typer.colors.MAGENTA, err=True)


def _drive_turn(session: Session, sink: QueueEventSink, user_input: str, *, assume_yes: bool) -> TurnOutcome:
    """Run a turn on a worker thread while rendering events and prompting for approvals."""
    cancel = CancelToken()
    outcome: list[TurnOutcome] = []
    failure: list[BaseException] = []

    def worker() -> None:
        try:
            outcome.append(session.run_turn(user_input, cancel))
        except BaseException as error:  # noqa: BLE001 - re-raised on the calling thread
            failure.append(error)

    thread = threading.Thread(target=worker, name=f"acode-turn-{session.id}", daemon=True)
    thread.start()
    try:
        while thread.is_alive() or not sink.queue.empty():
            try:
                event = sink.queue.get(timeout=0.1)
            except queue.Empty:
                continue
            render_event(event)
            if event.kind is EventKind.PATCH_APPROVAL_REQUEST:
                approved = assume_yes or typer.confirm("Apply this patch?", default=False)
                session.submit_approval(ApprovalDecision(request_id=event.request_id, approved=approved))
    except (KeyboardInterrupt, typer.Abort):
        cancel.cancel("interrupted by user")
        thread.join()
        for event in sink.drain():
            render_event(event)
    thread.join()

    if failure:
        raise failure[0]
    return outcome[0]


def _report_turn_error(error: BaseException) -> None:
    if isinstance(error, TurnCancelledError):
        typer.echo(f"Turn cancelled: {error}")
    elif isinstance(error, LLMClientError):
        typer.echo(f"Model call failed: {error}")
    elif isinstance(error, SessionBusyError):
        typer.echo(str(error))
    else:
        raise error


@app.command()
def init(
    config: str = CONFIG_OPTION,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, copy_config_template())
    typer.echo(f"Wrote default configuration to {config_path}.")


@app.command()
def run(
    request: str = typer.Argument(..., help="What the agent should do."),
    config: str = CONFIG_OPTION,
    offline: bool = typer.Option(False, "--offline", help="Use the offline stub instead of a remote model."),
    approval: Optional[str] = typer.Option(
        None,
        "--approval",
        help="apply_patch approval policy: auto, always_ask, or always_approve.",
    ),
    max_steps: Optional[int] = typer.Option(None, "--max-steps", min=1, help="Maximum model calls for the turn."),
    resume: Optional[str] = typer.Option(None, "--resume", help="Continue a stored session by id."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Approve every patch without prompting."),
) -> None:
    """Run a single request through the agent loop."""
    app_config = _load(config)
    client = _build_client(app_config, offline=offline)
    sink = QueueEventSink(maxsize=0)
    session = _build_session(app_config, client, sink, policy=approval, max_steps=max_steps, resume=resume)

    with _file_logging(app_config, session.id) as log_path:
        try:
            outcome = _drive_turn(session, sink, request, assume_yes=yes)
        except (TurnCancelledError, LLMClientError, SessionBusyError) as error:
            _report_turn_error(error)
            typer.echo(f"Session {session.id} (log: {log_path})")
            raise typer.Exit(code=1) from error

    typer.echo(f"Session {session.id} finished with status {outcome.status.value} at step {outcome.step}.")


@app.command()
def chat(
    config: str = CONFIG_OPTION,
    offline: bool = typer.Option(False, "--offline", help="Use the offline stub instead of a remote model."),
    resume: Optional[str] = typer.Option(None, "--resume", help="Continue a stored session by id."),
) -> None:
    """Interactive loop over one session; type /help for commands."""
    app_config = _load(config)
    client = _build_client(app_config, offline=offline)
    sink = QueueEventSink(maxsize=0)
    session = _build_session(app_config, client, sink, policy=None, max_steps=None, resume=resume)
    typer.echo(f"Session {session.id}. Type /help for commands, /exit to quit.")

    with _file_logging(app_config, session.id):
        while True:
            try:
                line = typer.prompt("acode", prompt_suffix="> ").strip()
            except (EOFError, KeyboardInterrupt, typer.Abort):
                typer.echo("")
                break
            if not line:
                continue
            if line.startswith("/"):
                if not _handle_slash_command(session, line):
                    break
                continue
            try:
                _drive_turn(session, sink, line, assume_yes=False)
            except (TurnCancelledError, LLMClientError, SessionBusyError) as error:
                _report_turn_error(error)


def _handle_slash_command(session: Session, line: str) -> bool:
    """Run a REPL command; return False when the loop should stop."""
    parts = line[1:].split()
    if not parts:
        typer.echo("Type /help for commands.")
        return True
    command, args = parts[0].lower(), parts[1:]
    if command in {"exit", "quit", "q"}:
        return False
    if command == "help":
        typer.echo("/approvals [auto|always_ask|always_approve]  show or set the patch approval policy")
        typer.echo("/compact  summarise history to free context")
        typer.echo("/session  show the session id")
        typer.echo("/exit     leave the session")
    elif command == "approvals":
        if args:
            aliases = {"ask": "always_ask", "approve": "always_approve"}
            choice = aliases.get(args[0].lower(), args[0].lower())
            try:
                session.settings.approval_policy = ApprovalPolicy(choice)
            except ValueError:
                typer.echo(f"Unknown approval policy: {args[0]} (choose auto, always_ask, always_approve)")
                return True
        typer.echo(f"apply_patch approval policy: {session.settings.approval_policy.value}")
    elif command == "compact":
        try:
            summary = session.compact_history()
        except LLMClientError as error:
            typer.echo(f"Compaction failed: {error}")
            return True
        typer.echo(summary)
    elif command == "session":
        typer.echo(session.id)
    else:
        typer.echo(f"Unknown command: /{command}")
    return True


@app.command()
def apply(
    patch_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Patch file to apply."),
    config: str = CONFIG_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply without asking even when approval is required."),
) -> None:
    """Parse, classify, and apply a patch file to the workspace."""
    app_config = _load(config)
    text = patch_file.read_text(encoding="utf-8")
    try:
        patch = parse_patch(text)
    except PatchError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    decision = classify_patch(summarize_patch(patch), app_config.session.approval_policy)
    if decision.level is SafetyLevel.REJECT:
        typer.echo(f"Patch rejected: {decision.reason}")
        raise typer.Exit(code=1)
    if decision.level is SafetyLevel.ASK_USER and not yes:
        typer.echo(f"Approval required ({decision.reason}):")
        for path in decision.paths:
            typer.echo(f"- {path}")
        if not typer.confirm("Apply this patch?", default=False):
            typer.echo("Patch not applied.")
            raise typer.Exit(code=1)

    try:
        result = apply_patch(patch, app_config.workspace)
    except PatchError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    typer.echo(format_patch_result(result))


@app.command()
def sessions(config: str = CONFIG_OPTION) -> None:
    """List stored sessions, most recent first."""
    app_config = _load(config)
    stored = SessionStore(app_config.sessions_dir).list_sessions()
    if not stored:
        typer.echo("No stored sessions.")
        return
    for record in stored:
        typer.echo(f"- {record.id} updated {record.updated_at.isoformat()} items={len(record.history)}")


if __name__ == "__main__":
    app()
