from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from loopgate.backends import ClaudeCodeBackend
from loopgate.backpressure import Block, GuardrailContext, result_to_dict
from loopgate.config import LoopgateConfig, load_config, save_config
from loopgate.errors import LoopgateError
from loopgate.failures import FailureHandler
from loopgate.loop import CompletionBoundary, build_pipeline
from loopgate.state import SessionStore
from loopgate.tasks import (
    NODE_KINDS,
    Module,
    Subtask,
    WorkNode,
    WorkNodeState,
    find_node,
    kind_for_path,
    node_from_dict,
    node_to_dict,
    render_tree,
)
from loopgate.tasks.tree import split_path
from loopgate.tokens import InMemoryTokenTracker, TokenUsage
from loopgate.tools import CompletionToolHandlers
from loopgate.verification import (
    OracleVerifier,
    TaskStatusGate,
    VerificationScope,
    VerificationTracker,
)

_PATH_SCOPES = {
    "module": VerificationScope.MODULE,
    "component": VerificationScope.COMPONENT,
    "task": VerificationScope.TASK,
}


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: LoopgateConfig
    store: SessionStore
    modules: list[Module]
    verifications: VerificationTracker
    tokens: InMemoryTokenTracker

    def record_event(self, event: dict[str, Any]) -> None:
        self.store.record_event(event)

    def save_tree(self) -> None:
        self.store.set_tree([node_to_dict(module) for module in self.modules])

    def save_verifications(self) -> None:
        self.store.set_verifications(self.verifications.to_records())


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _state_dir(repo_root: Path, config: LoopgateConfig) -> Path:
    directory = Path(config.state.directory)
    return directory if directory.is_absolute() else repo_root / directory


def _load_modules(store: SessionStore) -> list[Module]:
    modules: list[Module] = []
    for payload in store.get_tree():
        node = node_from_dict(payload)
        if not isinstance(node, Module):
            raise LoopgateError(f"Stored root node '{node.id}' is not a module.")
        modules.append(node)
    return modules


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    store = SessionStore(_state_dir(repo_root, config))
    tokens = InMemoryTokenTracker()
    usage = store.get_usage()
    tokens.restore_metrics(
        int(usage.get("cumulative_input_tokens", 0)),
        int(usage.get("cumulative_output_tokens", 0)),
        int(usage.get("premium_request_count", 0)),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        modules=_load_modules(store),
        verifications=VerificationTracker.from_records(store.get_verifications()),
        tokens=tokens,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except (LoopgateError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _build_backend(config: LoopgateConfig, repo_root: Path) -> ClaudeCodeBackend:
    return ClaudeCodeBackend(
        binary=config.oracle.binary,
        working_directory=repo_root,
        timeout_seconds=max(5.0, float(config.oracle.timeout_seconds)),
    )


def _build_oracle(runtime: Runtime) -> OracleVerifier | None:
    if not runtime.config.oracle.enabled:
        return None
    return OracleVerifier(
        _build_backend(runtime.config, runtime.repo_root),
        model=runtime.config.oracle.model or None,
        event_hook=runtime.record_event,
    )


def _build_handlers(
    runtime: Runtime, oracle: OracleVerifier | None = None
) -> CompletionToolHandlers:
    gate = TaskStatusGate(runtime.verifications, event_hook=runtime.record_event)
    return CompletionToolHandlers(
        runtime.modules,
        gate,
        runtime.verifications,
        oracle,
        require_evidence=runtime.config.oracle.require_evidence,
        event_hook=runtime.record_event,
    )


def _require_node(runtime: Runtime, path: str) -> WorkNode[Any]:
    try:
        node = find_node(runtime.modules, path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    if node is None:
        raise click.ClickException(f"No work node at '{path}'.")
    return node


def _transition(runtime: Runtime, path: str, target: WorkNodeState) -> WorkNode[Any]:
    node = _require_node(runtime, path)
    try:
        node.transition_to(target)
    except LoopgateError as exc:
        raise click.ClickException(f"{node.kind} '{path}': {exc}") from exc
    runtime.save_tree()
    runtime.record_event(
        {"event": "status_updated", "scope": node.kind, "id": node.id, "status": target.value}
    )
    return node


def _parse_counts(values: tuple[str, ...], label: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    for raw in values:
        key, separator, count = raw.rpartition("=")
        if not separator or not key.strip():
            raise click.BadParameter(f"expected KEY=N, got '{raw}'", param_hint=label)
        try:
            counts[key.strip()] = int(count)
        except ValueError as exc:
            raise click.BadParameter(f"'{count}' is not an integer", param_hint=label) from exc
    return counts


def _failure_handler(runtime: Runtime) -> FailureHandler:
    handler = FailureHandler(
        runtime.config.workflow.failure_threshold, event_hook=runtime.record_event
    )
    handler.restore_counts(runtime.store.get_failures())
    return handler


@click.group()
def cli() -> None:
    """Loopgate CLI."""


@cli.command("init")
@click.option("--budget", type=int, default=None, help="Premium request budget (0 disables).")
@click.option("--config", "config_value", default="loopgate.toml", show_default=True)
def init_command(budget: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if budget is not None:
        if budget < 0:
            raise click.ClickException("Budget must be zero or positive.")
        config.budget.premium_request_budget = budget
    save_config(config_path, config)

    store = SessionStore(_state_dir(repo_root, config))
    click.echo(f"Initialized Loopgate in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {store.state_dir}")
    click.echo(f"Premium request budget: {config.budget.premium_request_budget}")


@cli.command("add")
@click.argument("path")
@click.option("--name", default=None)
@click.option("--config", "config_value", default="loopgate.toml", show_default=True)
def add_command(path: str, name: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        parts = split_path(path)
        node = NODE_KINDS[kind_for_path(path)](parts[-1], name)
        if len(parts) == 1:
            if any(module.id == node.id for module in runtime.modules):
                raise ValueError(f"module '{node.id}' already exists.")
            runtime.modules.append(node)  # type: ignore[arg-type]
        else:
            parent = find_node(runtime.modules, "/".join(parts[:-1]))
            if parent is None:
                raise ValueError(f"Parent '{'/'.join(parts[:-1])}' does not exist.")
            parent.add_child(node)
    except (TypeError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.save_tree()
    click.echo(f"Added {node.kind} '{path}'")


@cli.command("start")
@click.argument("path")
@click.option("--config", "config_value", default="loopgate.toml", show_default=True)
def start_command(path: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    node = _transition(runtime, path, WorkNodeState.IN_PROGRESS)
    click.echo(f"Started {node.kind} '{path}'")


@cli.command("fail")
@click.argument("path")
@click.option("--reason", default="Marked failed from the command line.", show_default=True)
@click.option("--config", "config_value", default="loopgate.toml", show_default=True)
def fail_command(path: str, reason: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    node = _transition(runtime, path, WorkNodeState.FAILED)
    handler = _failure_handler(runtime)
    try:
        classification = handler.record_failure(node.id, reason)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.store.set_failures(handler.counts())
    click.echo(f"Failed {node.kind} '{path}'")
    click.echo(f"{classification.severity.value}: {classification.message}")


@cli.command("verify")
@click.argument("scope", type=click.Choice([scope.value for scope in VerificationScope]))
@click.argument("identifier")
@click.option("--passed", is_flag=True, default=False)
@click.option("--failed", is_flag=True, default=False)
@click.option("--evidence", default=None)
@click.option("--criteria", default=None)
@click.option("--config", "config_value", default="loopgate.toml", show_default=True)
def verify_command(
    scope: str,
    identifier: str,
    passed: bool,
    failed: bool,
    evidence: str | None,
    criteria: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    verification_scope = VerificationScope(scope)

    if evidence or criteria:
        if not (evidence and criteria):
            raise click.ClickException("--evidence and --criteria must be given together.")
        oracle = _build_oracle(runtime)
        if oracle is None:
            raise click.ClickException("Oracle verification is disabled in the config.")
        handlers = _build_handlers(runtime, oracle)
        id_key = f"{verification_scope.value}_id"
        tool = getattr(handlers, f"verify_{verification_scope.value}_completion")
        result = asyncio.run(
            tool({id_key: identifier, "evidence": evidence, "acceptance_criteria": criteria})
        )
        runtime.save_verifications()
        click.echo(result)
        if json.loads(result).get("status") != "success":
            raise SystemExit(1)
        return

    if passed == failed:
        raise click.ClickException(
            "Pass exactly one of --passed or --failed, or --evidence with --criteria."
        )
    runtime.verifications.record_verification(verification_scope, identifier, passed)
    runtime.save_verifications()
    runtime.record_event(
        {"event": "verification_recorded", "scope": scope, "id": identifier, "passed": passed}
    )
    click.echo(f"Recorded {scope} '{identifier}' as {'passed' if passed else 'failed'}")


@cli.command("complete")
@click.argument("path")
@click.option("--config", "config_value", default="loopgate.toml", show_default=True)
def complete_command(path: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    node = _require_node(runtime, path)
    if isinstance(node, Subtask):
        _transition(runtime, path, WorkNodeState.COMPLETE)
        click.echo(f"Completed subtask '{path}'")
        return

    parts = split_path(path)
    handlers = _build_handlers(runtime)
    result = handlers.set_status(
        _PATH_SCOPES[node.kind],
        node.id,
        WorkNodeState.COMPLETE.value,
        module=parts[0],
        component=parts[1] if len(parts) == 3 else "",
    )
    click.echo(result)
    if json.loads(result).get("status") != "success":
        raise SystemExit(1)

    runtime.save_tree()
    handler = _failure_handler(runtime)
    handler.reset_failure_count(node.id)
    runtime.store.set_failures(handler.counts())


@cli.command("usage")
@click.argument("input_tokens", type=int)
@click.argument("output_tokens", type=int)
@click.option("--premium", is_flag=True, default=False)
@click.option("--config", "config_value", default="loopgate.toml", show_default=True)
def usage_command(input_tokens: int, output_tokens: int, premium: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.tokens.record_usage(TokenUsage(input_tokens, output_tokens, premium))
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    metrics = runtime.tokens.session_metrics()
    payload = {
        "cumulative_input_tokens": metrics.cumulative_input_tokens,
        "cumulative_output_tokens": metrics.cumulative_output_tokens,
        "premium_request_count": metrics.premium_request_count,
    }
    runtime.store.set_usage(payload)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("check")
@click.argument("module_name")
@click.option("--task", "task_name", default=None)
@click.option("--iteration", type=int, default=None, help="Attempt count for the task.")
@click.option("--tool-calls", type=int, default=0, show_default=True)
@click.option("--file-read", "file_reads", multiple=True, metavar="PATH=N")
@click.option("--command-retry", "command_retries", multiple=True, metavar="COMMAND=N")
@click.option("--premium-used", type=int, default=None)
@click.option("--completing", is_flag=True, default=False)
@click.option("--config", "config_value", default="loopgate.toml", show_default=True)
@click.pass_context
def check_command(
    ctx: click.Context,
    module_name: str,
    task_name: str | None,
    iteration: int | None,
    tool_calls: int,
    file_reads: tuple[str, ...],
    command_retries: tuple[str, ...],
    premium_used: int | None,
    completing: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    if premium_used is not None:
        metrics = runtime.tokens.session_metrics()
        runtime.tokens.restore_metrics(
            metrics.cumulative_input_tokens, metrics.cumulative_output_tokens, premium_used
        )

    boundary = CompletionBoundary()
    try:
        if iteration is None:
            # Failed attempts so far plus the one about to run.
            failures = _failure_handler(runtime).failure_count(task_name) if task_name else 0
            iteration = failures + 1
        pipeline = build_pipeline(
            runtime.config,
            token_tracker=runtime.tokens,
            verification_tracker=runtime.verifications,
            is_completion_boundary=boundary,
            event_hook=runtime.record_event,
        )
        context = GuardrailContext(
            module_name=module_name,
            task_name=task_name,
            iteration_count=iteration,
            tool_call_count=tool_calls,
            file_read_counts=_parse_counts(file_reads, "--file-read"),
            command_retry_counts=_parse_counts(command_retries, "--command-retry"),
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    if completing:
        with boundary.marked(context):
            results = asyncio.run(pipeline.evaluate(context))
    else:
        results = asyncio.run(pipeline.evaluate(context))

    blocked = any(isinstance(result, Block) for result in results)
    payload = {
        "module": module_name,
        "task": task_name,
        "iteration": iteration,
        "blocked": blocked,
        "results": [result_to_dict(result) for result in results],
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    if blocked:
        ctx.exit(2)


@cli.command("status")
@click.option("--config", "config_value", default="loopgate.toml", show_default=True)
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    metrics = runtime.tokens.session_metrics()
    payload = {
        "modules": [render_tree(module) for module in runtime.modules],
        "verifications": runtime.verifications.to_records(),
        "failures": runtime.store.get_failures(),
        "usage": {
            "premium_request_count": metrics.premium_request_count,
            "premium_request_budget": runtime.config.budget.premium_request_budget,
        },
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
