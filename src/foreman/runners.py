from __future__ import annotations

import asyncio
import logging
import re
import shlex
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from foreman.errors import TestRunnerError
from foreman.workspace import FileEntry
from foreman.workspace.paths import stem

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
FAILURE_LINE_PATTERN = re.compile(
    r"(?:\bFAIL(?:ED)?\b|\bError\b|AssertionError|\bassert\b|Expected|Received|[✗×])"
)
MAX_FAILING_MESSAGES = 20


@dataclass(slots=True)
class TestOutcome:
    __test__ = False

    status: str
    failing_messages: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status == "pass"


def is_test_file(name: str) -> bool:
    lowered = name.lower()
    if ".test." in lowered or ".spec." in lowered:
        return True
    return lowered.endswith(".py") and (
        lowered.startswith("test_") or lowered.endswith("_test.py")
    )


def find_matching_test(target_name: str, entries: Sequence[FileEntry]) -> FileEntry | None:
    """The test file exercising `target_name`, if the project has one."""
    if is_test_file(target_name):
        return None
    target_stem = stem(target_name).lower()
    if not target_stem:
        return None
    for entry in entries:
        name = entry.name.lower()
        if not is_test_file(name):
            continue
        candidates = {
            name.split(".test.")[0],
            name.split(".spec.")[0],
            name.removeprefix("test_").removesuffix(".py"),
            name.removesuffix("_test.py"),
        }
        if target_stem in candidates:
            return entry
    return None


def _command_payload(command: str) -> tuple[bool, str | list[str]]:
    if SHELL_REQUIRED_PATTERN.search(command):
        return True, command
    try:
        return False, shlex.split(command)
    except ValueError:
        return True, command


async def _spawn(command: str, cwd: Path) -> asyncio.subprocess.Process:
    used_shell, payload = _command_payload(command)
    if used_shell:
        return await asyncio.create_subprocess_shell(
            payload,  # type: ignore[arg-type]
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    return await asyncio.create_subprocess_exec(
        *payload,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )


class TestRunner(ABC):
    __test__ = False

    @abstractmethod
    async def run(self, file_names: Sequence[str]) -> dict[str, TestOutcome]:
        """Run the checks associated with `file_names`, keyed by file name."""


class CommandTestRunner(TestRunner):
    """Runs the project's test command once per file in a subprocess."""

    def __init__(
        self,
        repo_root: Path,
        command_template: str,
        *,
        timeout_seconds: float = 300.0,
    ) -> None:
        self.repo_root = repo_root
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def _command_for(self, file_name: str) -> str:
        if "{files}" in self.command_template:
            return self.command_template.replace("{files}", shlex.quote(file_name))
        return f"{self.command_template} {shlex.quote(file_name)}"

    @staticmethod
    def _failing_lines(output: str) -> list[str]:
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        failing = [line for line in lines if FAILURE_LINE_PATTERN.search(line)]
        if not failing:
            failing = lines[-5:]
        return failing[:MAX_FAILING_MESSAGES]

    async def _run_one(self, file_name: str) -> TestOutcome:
        command = self._command_for(file_name)
        try:
            proc = await _spawn(command, self.repo_root)
        except OSError as exc:
            raise TestRunnerError(f"Unable to start test command {command!r}: {exc}") from exc
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise TestRunnerError(
                f"Test command timed out after {self.timeout_seconds:.1f}s: {command}"
            ) from exc
        output = stdout.decode("utf-8", errors="replace")
        if proc.returncode == 0:
            return TestOutcome(status="pass")
        logger.info("Tests failed for %s (exit %s)", file_name, proc.returncode)
        return TestOutcome(status="fail", failing_messages=self._failing_lines(output))

    async def run(self, file_names: Sequence[str]) -> dict[str, TestOutcome]:
        results: dict[str, TestOutcome] = {}
        for file_name in file_names:
            results[file_name] = await self._run_one(file_name)
        return results


class CommandExecutor(ABC):
    @abstractmethod
    async def execute(self, command: str) -> None:
        """Fire a remediation command; side effects are assumed visible afterwards."""


class SubprocessCommandExecutor(CommandExecutor):
    def __init__(self, repo_root: Path, *, timeout_seconds: float = 600.0) -> None:
        self.repo_root = repo_root
        self.timeout_seconds = timeout_seconds

    async def execute(self, command: str) -> None:
        command_text = command.strip()
        if not command_text:
            logger.warning("Ignoring empty remediation command")
            return
        logger.info("Running remediation command: %s", command_text)
        try:
            proc = await _spawn(command_text, self.repo_root)
        except OSError:
            logger.exception("Unable to start remediation command %r", command_text)
            return
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("Remediation command timed out: %s", command_text)
            return
        tail = stdout.decode("utf-8", errors="replace").strip()[-1000:]
        logger.info("Remediation command exited with %s: %s", proc.returncode, tail)
