from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class BudgetConfig:
    premium_request_budget: int = 100
    warning_threshold: float = 0.8
    confirmation_threshold: float = 0.9


@dataclass(slots=True)
class WorkflowConfig:
    failure_threshold: int = 3
    max_iterations: int = 100


@dataclass(slots=True)
class ToolDisciplineConfig:
    max_file_reads: int = 3
    max_command_retries: int = 3
    tool_call_threshold: int = 50


@dataclass(slots=True)
class OracleConfig:
    enabled: bool = True
    binary: str = "claude"
    model: str = ""
    require_evidence: bool = False
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class StateConfig:
    directory: str = ".loopgate/state"


@dataclass(slots=True)
class LoopgateConfig:
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    tool_discipline: ToolDisciplineConfig = field(default_factory=ToolDisciplineConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> LoopgateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> LoopgateConfig:
        return cls(
            budget=BudgetConfig(**data.get("budget", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            tool_discipline=ToolDisciplineConfig(**data.get("tool_discipline", {})),
            oracle=OracleConfig(**data.get("oracle", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "budget": {
                "premium_request_budget": self.budget.premium_request_budget,
                "warning_threshold": self.budget.warning_threshold,
                "confirmation_threshold": self.budget.confirmation_threshold,
            },
            "workflow": {
                "failure_threshold": self.workflow.failure_threshold,
                "max_iterations": self.workflow.max_iterations,
            },
            "tool_discipline": {
                "max_file_reads": self.tool_discipline.max_file_reads,
                "max_command_retries": self.tool_discipline.max_command_retries,
                "tool_call_threshold": self.tool_discipline.tool_call_threshold,
            },
            "oracle": {
                "enabled": self.oracle.enabled,
                "binary": self.oracle.binary,
                "model": self.oracle.model,
                "require_evidence": self.oracle.require_evidence,
                "timeout_seconds": self.oracle.timeout_seconds,
            },
            "state": {
                "directory": self.state.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: LoopgateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["budget", "workflow", "tool_discipline", "oracle", "state"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> LoopgateConfig:
    if not path.exists():
        return LoopgateConfig.default()
    return LoopgateConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: LoopgateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
