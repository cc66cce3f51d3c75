# portscout/connectors/local_connector.py
"""
Local command connector.
Runs shell commands on the collecting host and reports every outcome as a
CommandResult instead of raising.
"""

import asyncio
import os
import stat
import time
from typing import Optional, Dict
from dataclasses import dataclass
from pathlib import Path
import logging

from ..exceptions import CommandExecutionError

EXIT_TIMEOUT = -1
EXIT_NOT_FOUND = 127

# Common exit codes and their meanings
EXIT_CODE_MEANINGS = {
    EXIT_TIMEOUT: "Timed out or failed to start",
    1: "General error",
    2: "Misuse of shell builtin",
    126: "Command not executable",
    127: "Command not found",
    128: "Invalid exit argument",
    130: "Script terminated by Ctrl+C"
}


@dataclass
class CommandResult:
    """Result of local command execution"""
    success: bool
    output: str = ""
    error: str = ""
    exit_code: int = 0
    execution_time: float = 0.0
    command: str = ""

    @property
    def not_found(self) -> bool:
        return self.exit_code == EXIT_NOT_FOUND

    def raise_for_status(self) -> 'CommandResult':
        """Raise CommandExecutionError if the command failed"""
        if not self.success:
            meaning = EXIT_CODE_MEANINGS.get(self.exit_code, "Unknown error")
            detail = self.error.strip().split('\n')[0] if self.error.strip() else meaning
            raise CommandExecutionError(f"'{self.command}' failed: {detail}", result=self)
        return self


class LocalConnector:
    """
    Executes commands on the local system through the shell.
    All calls are coroutines; nothing blocks the event loop.
    """

    def __init__(self, timeout: int = 30):
        self.timeout = timeout
        self.logger = logging.getLogger('connector.local')

    async def execute_command(self, command: str, timeout: Optional[float] = None,
                              log_command: bool = True) -> CommandResult:
        """
        Execute a command on the local host.

        Args:
            command: Shell command to execute
            timeout: Command timeout in seconds (uses connector timeout if None)
            log_command: Whether to log the command being executed

        Returns:
            CommandResult: Command execution result
        """
        if timeout is None:
            timeout = self.timeout

        start_time = time.time()

        if log_command:
            self.logger.debug(f"Executing: {command}")

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            execution_time = time.time() - start_time
            error_msg = f"Command '{self._truncate_command(command)}' could not be started: {e}"
            self.logger.error(error_msg)
            return CommandResult(False, error=error_msg, exit_code=EXIT_TIMEOUT,
                                 execution_time=execution_time, command=command)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            execution_time = time.time() - start_time
            error_msg = (f"Command '{self._truncate_command(command)}' timed out after "
                         f"{execution_time:.2f}s (timeout: {timeout}s)")
            self.logger.error(error_msg)
            return CommandResult(False, error=error_msg, exit_code=EXIT_TIMEOUT,
                                 execution_time=execution_time, command=command)

        execution_time = time.time() - start_time
        output = stdout.decode('utf-8', errors='replace')
        error = stderr.decode('utf-8', errors='replace')
        exit_code = process.returncode
        success = exit_code == 0

        if success:
            self.logger.debug(
                f"Command '{self._truncate_command(command)}' completed successfully in {execution_time:.2f}s")
        elif exit_code == EXIT_NOT_FOUND:
            self.logger.debug(f"Command not found: {self._truncate_command(command)}")
        else:
            self.logger.debug(self._format_command_error(command, exit_code, error, execution_time))

        return CommandResult(
            success=success,
            output=output,
            error=error,
            exit_code=exit_code,
            execution_time=execution_time,
            command=command
        )

    async def execute_command_with_fallback(self, primary_command: str, fallback_command: str = None,
                                            timeout: Optional[float] = None, context: str = "") -> CommandResult:
        """
        Execute a command with an optional fallback if the primary command fails.

        Returns:
            CommandResult: Result from successful command or last failure
        """
        context_prefix = f"[{context}] " if context else ""

        self.logger.debug(f"{context_prefix}Trying primary command: {primary_command}")
        result = await self.execute_command(primary_command, timeout, log_command=False)

        if result.success:
            return result

        if fallback_command:
            self.logger.debug(
                f"{context_prefix}Primary command failed (exit {result.exit_code}), trying fallback: {fallback_command}")
            fallback_result = await self.execute_command(fallback_command, timeout, log_command=False)

            if not fallback_result.success:
                self.logger.warning(f"{context_prefix}Both primary and fallback commands failed")
            return fallback_result

        if result.exit_code == EXIT_NOT_FOUND:
            self.logger.debug(f"{context_prefix}Command not found: {primary_command}")
        else:
            self.logger.debug(f"{context_prefix}Command failed with exit code {result.exit_code}: {primary_command}")
        return result

    async def execute_commands(self, commands: list) -> Dict[str, CommandResult]:
        """Execute independent commands concurrently"""
        results = await asyncio.gather(*(self.execute_command(command) for command in commands))
        return dict(zip(commands, results))

    async def check_command_availability(self, command: str) -> bool:
        """Check if a command is available on the system"""
        result = await self.execute_command(f"command -v {command} >/dev/null 2>&1", log_command=False)
        return result.success

    def path_exists(self, path: str) -> bool:
        return Path(path).exists()

    def is_socket(self, path: str) -> bool:
        try:
            return stat.S_ISSOCK(os.stat(path).st_mode)
        except OSError:
            return False

    def read_file(self, path: str) -> Optional[str]:
        """Read a local text file, None if it is missing or unreadable"""
        try:
            return Path(path).read_text(errors='replace')
        except OSError as e:
            self.logger.debug(f"Could not read {path}: {e}")
            return None

    def _truncate_command(self, command: str, max_length: int = 80) -> str:
        """Truncate command for logging if it's too long"""
        if len(command) <= max_length:
            return command
        return command[:max_length - 3] + "..."

    def _format_command_error(self, command: str, exit_code: int, error: str, execution_time: float) -> str:
        """Format command error message with context"""
        truncated_cmd = self._truncate_command(command)
        meaning = EXIT_CODE_MEANINGS.get(exit_code, "Unknown error")

        error_parts = [f"Command '{truncated_cmd}' failed"]
        error_parts.append(f"exit code {exit_code} ({meaning})")
        error_parts.append(f"time {execution_time:.2f}s")

        if error.strip():
            # Only show first line of error to avoid log spam
            first_error_line = error.strip().split('\n')[0]
            if first_error_line:
                error_parts.append(f"stderr: {first_error_line}")

        return " | ".join(error_parts)
