from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from loopgate.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)


class ClaudeCodeBackend(AgentBackend):
    """Runs a single non-interactive turn through the ``claude`` CLI.

    Output is read as ``stream-json``. Assistant text is yielded as it
    arrives; the closing ``result`` event is only used when nothing was
    streamed before it. Lines that are not JSON are passed through.
    """

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        timeout_seconds: float = 90.0,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds

    def build_command(
        self,
        user_prompt: str,
        system_prompt: str = "",
        model: str | None = None,
    ) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if system_prompt:
            command.extend(["--system-prompt", system_prompt])
        if model:
            command.extend(["--model", model])
        return command

    @staticmethod
    def _text_blocks(content: Any) -> str:
        if isinstance(content, str):
            return content
        if not isinstance(content, list):
            return ""
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )

    @classmethod
    def _extract_content(cls, event: dict[str, Any]) -> str:
        message = event.get("message")
        if isinstance(message, dict):
            return cls._text_blocks(message.get("content"))
        if "content" in event:
            return cls._text_blocks(event["content"])
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _final_result(event: dict[str, Any]) -> str:
        result = event.get("result")
        if event.get("type") == "result" and isinstance(result, str):
            return result
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _readline(self, stream: asyncio.StreamReader) -> bytes:
        try:
            return await asyncio.wait_for(stream.readline(), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Claude backend produced no output for {self.timeout_seconds:.1f}s",
                backend="claude",
                retriable=True,
            ) from exc

    async def _spawn(self, command: list[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        extra = {key: value for key, value in context.items() if key != "model"}
        if extra:
            user_prompt = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(extra, ensure_ascii=False, indent=2)}"
            )
        model = context.get("model")
        process = await self._spawn(
            self.build_command(
                user_prompt, system_prompt, model if isinstance(model, str) else None
            )
        )
        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        streamed = False
        parse_buffer = ""
        try:
            while True:
                raw_line = await self._readline(process.stdout)
                if not raw_line:
                    break
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    streamed = True
                    yield line
                    continue

                if not isinstance(event, dict):
                    continue
                text = self._extract_content(event)
                if not text and not streamed:
                    text = self._final_result(event)
                if text:
                    streamed = True
                    yield text

            if parse_buffer:
                yield parse_buffer
            return_code = await process.wait()
        finally:
            # Reap the child if reading stopped before it exited.
            if process.returncode is None:
                process.kill()
                await process.wait()

        if return_code != 0:
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )
