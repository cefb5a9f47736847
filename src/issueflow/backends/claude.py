from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from issueflow.backends.base import BackendProcessError, BackendTimeoutError, ExecutorBackend


class ClaudeCodeBackend(ExecutorBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        skip_permissions: bool = True,
        process_timeout: float | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.skip_permissions = skip_permissions
        self.process_timeout = process_timeout

    def build_command(
        self,
        instruction: str,
        schema: dict[str, Any],
        *,
        agent: str | None = None,
        model: str | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            instruction,
            "--output-format",
            "json",
            "--json-schema",
            json.dumps(schema, ensure_ascii=False, separators=(",", ":")),
        ]
        if agent:
            command.extend(["--agent", agent])
        if model:
            command.extend(["--model", model])
        if self.skip_permissions:
            command.append("--dangerously-skip-permissions")
        return command

    @staticmethod
    def parse_envelope(stdout: str, stderr: str, return_code: int) -> dict[str, Any]:
        raw = stdout.strip()
        envelope: dict[str, Any] | None = None
        if raw:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                # Some CLI versions print progress lines before the final object.
                last_line = raw.splitlines()[-1]
                try:
                    parsed = json.loads(last_line)
                except json.JSONDecodeError:
                    parsed = None
            if isinstance(parsed, dict):
                envelope = parsed

        if envelope is None:
            text = raw or stderr.strip()
            return {
                "is_error": return_code != 0,
                "result": text,
                "exit_code": return_code,
            }

        if return_code != 0:
            envelope["is_error"] = True
        envelope.setdefault("is_error", False)
        envelope["exit_code"] = return_code
        return envelope

    async def invoke(
        self,
        instruction: str,
        schema: dict[str, Any],
        *,
        agent: str | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        command = self.build_command(instruction, schema, agent=agent, model=model)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.process_timeout
            )
        except TimeoutError as exc:
            await self._kill(process)
            raise BackendTimeoutError(
                f"Claude process exceeded {self.process_timeout:.0f}s",
                backend=self.name,
            ) from exc
        except asyncio.CancelledError:
            # Stage timeouts are enforced by cancelling this coroutine.
            await self._kill(process)
            raise

        return self.parse_envelope(
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            process.returncode if process.returncode is not None else -1,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()
