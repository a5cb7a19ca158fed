"""
Subprocess helpers used to drive the PostgreSQL client tools.

CommandRunner resolves executables against PATH and runs commands with an
injected environment, working directory and stderr routing.
"""

import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import List, Mapping, Optional


class ExecutableNotFoundError(Exception):
    """Raised when an executable cannot be found in PATH."""

    def __init__(self, name: str):
        super().__init__(f"{name} not found in PATH")
        self.name = name


class CommandError(Exception):
    """Raised when a command fails or cannot be started."""

    def __init__(self, args: List[str], returncode: Optional[int], output: str = '', message: str = None):
        self.args_list = list(args)
        self.returncode = returncode
        self.output = output
        if message is None:
            if returncode is None:
                message = f"Failed to run {args[0]}"
            else:
                message = f"{args[0]} exited with status {returncode}"
        super().__init__(message)


class CommandTimeout(CommandError):
    """Raised when a command does not finish within its timeout."""

    def __init__(self, args: List[str], timeout: float, output: str = ''):
        super().__init__(args, None, output, f"{args[0]} timed out after {timeout}s")
        self.timeout = timeout


@dataclass(frozen=True)
class CommandResult:
    """Exit status and combined stdout/stderr of a finished command."""
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _decode(data) -> str:
    if data is None:
        return ''
    if isinstance(data, bytes):
        return data.decode('utf-8', errors='replace')
    return data


class CommandRunner:
    """
    Thin wrapper around subprocess for running external tools.

    Environment variables passed to a command are merged over the current
    process environment so PATH and locale settings are preserved.
    """

    def look_path(self, name: str) -> str:
        """
        Resolve an executable name against PATH.

        Args:
            name: Executable name

        Returns:
            Absolute path to the executable

        Raises:
            ExecutableNotFoundError: If the executable is not in PATH
        """
        path = shutil.which(name)
        if path is None:
            raise ExecutableNotFoundError(name)
        return path

    def _build_env(self, env: Optional[Mapping[str, str]]) -> dict:
        merged = dict(os.environ)
        if env:
            merged.update(env)
        return merged

    def output(
        self,
        args: List[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        stderr=None,
        timeout: Optional[float] = None
    ) -> str:
        """
        Run a command and return its standard output.

        Args:
            args: Command and arguments
            env: Extra environment variables
            cwd: Working directory
            stderr: Where to route standard error (default: sys.stderr)
            timeout: Optional timeout in seconds

        Returns:
            Decoded standard output

        Raises:
            CommandTimeout: If the command times out
            CommandError: If the command exits non-zero or cannot be started
        """
        try:
            proc = subprocess.run(
                args,
                env=self._build_env(env),
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=stderr if stderr is not None else sys.stderr,
                timeout=timeout,
                check=False
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(args, timeout, _decode(e.stdout))
        except OSError as e:
            raise CommandError(args, None, message=f"Failed to run {args[0]}: {e}")

        stdout = _decode(proc.stdout)
        if proc.returncode != 0:
            raise CommandError(args, proc.returncode, stdout)
        return stdout

    def combined_output(
        self,
        args: List[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> CommandResult:
        """
        Run a command and capture stdout and stderr together.

        A non-zero exit status is reported in the result, not raised.

        Raises:
            CommandTimeout: If the command times out
            CommandError: If the command cannot be started
        """
        try:
            proc = subprocess.run(
                args,
                env=self._build_env(env),
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(args, timeout, _decode(e.stdout))
        except OSError as e:
            raise CommandError(args, None, message=f"Failed to run {args[0]}: {e}")

        return CommandResult(returncode=proc.returncode, output=_decode(proc.stdout))
