"""Local command execution and small filesystem helpers."""
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from .errors import CommandError, MissingCommand

logger = logging.getLogger("offline.utils")


@dataclass(frozen=True)
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(a)) for a in argv)


def run_command(
    argv: Sequence[str],
    cwd: Optional[os.PathLike] = None,
    env: Optional[Mapping[str, str]] = None,
    check: bool = True,
    timeout: Optional[int] = None,
    input_text: Optional[str] = None,
) -> CommandResult:
    """Run a local command and capture its output.

    Args:
        argv: Command and arguments
        cwd: Working directory
        env: Extra environment variables layered over the current environment
        check: Raise CommandError on a non-zero exit status
        timeout: Timeout in seconds
        input_text: Text passed on stdin

    Returns:
        CommandResult with the exit status and captured output
    """
    argv_list = [str(a) for a in argv]
    logger.debug(f"$ {format_argv(argv_list)}" + (f" (cwd={cwd})" if cwd else ""))

    try:
        proc = subprocess.run(
            argv_list,
            input=input_text,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=str(cwd) if cwd else None,
            env=dict(os.environ, **(env or {})),
            timeout=timeout,
        )
    except FileNotFoundError:
        raise MissingCommand(argv_list[0])
    except subprocess.TimeoutExpired:
        raise CommandError(argv_list, 124, f"Command timed out after {timeout} seconds")

    if proc.stdout:
        logger.debug(f"STDOUT {proc.stdout.strip()}")
    if proc.stderr:
        logger.debug(f"STDERR {proc.stderr.strip()}")

    result = CommandResult(argv=argv_list, returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
    if check and not result.ok:
        raise CommandError(argv_list, proc.returncode, proc.stderr)
    return result


def has_content(path: Path, pattern: str = "*") -> bool:
    """True if ``path`` is a non-empty file or a directory with at least one matching entry."""
    path = Path(path)
    if path.is_file():
        return path.stat().st_size > 0
    if path.is_dir():
        return any(path.glob(pattern))
    return False


def non_empty_lines(path: Path) -> List[str]:
    path = Path(path)
    if not path.is_file():
        return []
    return [line.strip() for line in path.read_text().splitlines() if line.strip()]
