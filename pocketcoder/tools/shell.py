"""Shell tool for executing commands in the project directory."""

import asyncio
import os
import signal
from typing import Any

from pocketcoder.exceptions import ToolTimeoutError
from pocketcoder.logging import get_logger
from pocketcoder.tools.paths import project_root_from, resolve_in_project
from pocketcoder.tools.registry import Tool, ToolResult

log = get_logger(__name__)

# The registry waits this much longer than the command timeout itself.
_REGISTRY_GRACE_SECONDS = 5.0


class RunCommandTool(Tool):
    """Execute shell commands with a hard timeout."""

    name = "run_command"
    description = (
        "Run a shell command in the project directory and return its combined stdout/stderr "
        "output and exit code. Use this to build, test, or inspect the project."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute.",
            },
            "cwd": {
                "type": "string",
                "description": "Optional working directory relative to the project root.",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (optional, default from config).",
            },
        },
        "required": ["command"],
    }

    def _timeout_for(self, timeout: Any) -> float:
        if timeout is None:
            return float(self.config.command_timeout)
        try:
            return max(1.0, float(timeout))
        except (TypeError, ValueError):
            return float(self.config.command_timeout)

    def effective_timeout(self, arguments: dict[str, Any]) -> float | None:
        return self._timeout_for(arguments.get("timeout")) + _REGISTRY_GRACE_SECONDS

    def _environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")
        env.update(self.config.environment)
        return env

    def _format_output(self, exit_code: int, raw: bytes) -> str:
        output = raw.decode("utf-8", errors="replace")
        limit = self.config.max_output_chars
        lines = [f"Exit code: {exit_code}"]
        if output:
            truncated = output[:limit]
            if len(output) > limit:
                truncated += "\n... (output truncated)"
            lines.append(truncated)
        else:
            lines.append("(no output)")
        return "\n".join(lines).rstrip()

    async def execute(
        self,
        command: str,
        cwd: str | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute
            cwd: Optional working directory inside the project
            timeout: Optional timeout override in seconds

        Returns:
            ToolResult with exit code and combined output

        Raises:
            ToolTimeoutError: the command ran past its timeout and was killed
            PathOutsideProjectError: ``cwd`` escapes the project root
        """
        root = project_root_from(kwargs)
        working_dir = resolve_in_project(root, cwd) if cwd else root
        if not working_dir.is_dir():
            return ToolResult(success=False, error=f"Working directory not found: {cwd}")

        timeout_seconds = self._timeout_for(timeout)
        abort_event = kwargs.get("_abort_event")
        if isinstance(abort_event, asyncio.Event) and abort_event.is_set():
            return ToolResult(success=False, error="Command aborted")

        log.info("Executing shell command", command=command, timeout=timeout_seconds, cwd=str(working_dir))
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(working_dir),
                env=self._environment(),
                executable=self.config.shell or None,
                start_new_session=True,
            )
        except OSError as e:
            log.error("Shell command failed to start", command=command, error=str(e))
            return ToolResult(success=False, error=f"Error executing command: {e}")

        communicate_task = asyncio.create_task(process.communicate())
        abort_wait_task: asyncio.Task[bool] | None = None
        if isinstance(abort_event, asyncio.Event):
            abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(
                wait_tasks,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if communicate_task not in done:
                await self._kill(process, communicate_task)
                if abort_wait_task is not None and abort_wait_task in done:
                    return ToolResult(success=False, error="Command aborted")
                log.warning("Shell command timed out", command=command, timeout=timeout_seconds)
                raise ToolTimeoutError(command, timeout_seconds)

            stdout, _ = await communicate_task
        except asyncio.CancelledError:
            await self._kill(process, communicate_task)
            raise
        finally:
            if abort_wait_task is not None and not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass

        exit_code = process.returncode if process.returncode is not None else -1
        return ToolResult(
            success=exit_code == 0,
            content=self._format_output(exit_code, stdout or b""),
            metadata={"exit_code": exit_code},
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process, communicate_task: asyncio.Task[Any]) -> None:
        if process.returncode is None:
            # Kill the whole process group so grandchildren release the pipe.
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await process.wait()
        communicate_task.cancel()
        try:
            await communicate_task
        except asyncio.CancelledError:
            pass
