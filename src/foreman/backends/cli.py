from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from foreman.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


def render_user_prompt(user_prompt: str, context: dict[str, Any]) -> str:
    visible = {key: value for key, value in context.items() if not key.startswith("_")}
    visible.pop("model", None)
    if not visible:
        return user_prompt
    return "\n\n".join(
        [user_prompt, "Context JSON:", json.dumps(visible, ensure_ascii=False, indent=2)]
    )


def build_backend_command(
    name: str,
    binary: str,
    system_prompt: str,
    user_prompt: str,
    model: str | None = None,
) -> list[str]:
    if name == "codex":
        command = [
            binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        if model:
            command.extend(["-m", model])
        command.append(user_prompt)
        return command
    command = [binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
    if system_prompt:
        command.extend(["--append-system-prompt", system_prompt])
    if model:
        command.extend(["--model", model])
    return command


class CliBackend(AgentBackend):
    """Streams a prompt through a coding-agent CLI (`claude` or `codex`)."""

    def __init__(
        self,
        name: str,
        *,
        binary: str | None = None,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.name = name
        self.binary = binary or name
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            return CliBackend._extract_content(message)
        result = event.get("result")
        if isinstance(result, str) and event.get("type") == "result":
            return result
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        model = context.get("model")
        return build_backend_command(
            self.name,
            self.binary,
            system_prompt,
            render_user_prompt(user_prompt, context),
            model.strip() if isinstance(model, str) and model.strip() else None,
        )

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context)
        self._emit(
            {"event": "backend_cli_start", "backend": self.name, "model": context.get("model")}
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        parse_buffer = ""
        streamed_assistant_text = False
        async for raw_line in process.stdout:
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
                yield line
                continue
            if not isinstance(event, dict):
                continue
            # The final `result` event repeats the assistant text already streamed.
            if event.get("type") == "result" and streamed_assistant_text:
                continue
            content = self._extract_content(event)
            if content:
                streamed_assistant_text = True
                yield content

        if parse_buffer:
            yield parse_buffer

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "backend_cli_exit", "backend": self.name, "exit_code": return_code})
        if return_code != 0:
            logger.warning("%s backend exited with %s", self.name, return_code)
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output[:400]}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
