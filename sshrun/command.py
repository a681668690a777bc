from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Optional, Union


@dataclass
class CommandResult:
    """Captured output of one remote command (empty for a dry run)."""
    stdout: str = ""
    stderr: str = ""


@dataclass(frozen=True)
class Command:
    """
    Immutable description of one remote invocation.

    Build with the chained helpers; each returns a new Command with one field changed:

        Command("make -j8").with_cwd("~/src").bash().allow_err()
    """
    cmd: str
    cwd: Optional[str] = None
    use_bash: bool = False
    allow_error: bool = False
    dry_run: bool = False
    no_pty: bool = False

    @classmethod
    def new(cls, text: str) -> "Command":
        return cls(text)

    def with_cwd(self, path: Union[str, "os.PathLike[str]"]) -> "Command":
        """Change to `path` before executing."""
        return replace(self, cwd=os.fspath(path))

    def bash(self) -> "Command":
        """Execute using `bash -c`."""
        return replace(self, use_bash=True)

    def allow_err(self) -> "Command":
        """Tolerate a non-zero exit code instead of raising NonZeroExit."""
        return replace(self, allow_error=True)

    def dry(self, is_dry: bool) -> "Command":
        """
        Don't execute anything remotely; just print what would run and return an
        empty result. The shell still connects to the remote.
        """
        return replace(self, dry_run=is_dry)

    def without_pty(self) -> "Command":
        """
        Don't request a pseudo-terminal. Some commands behave differently with a pty.
        Note that `sudo` needs one.
        """
        return replace(self, no_pty=True)


def cmd(fmt: str, *args, **kwargs) -> Command:
    """cmd("ls {}", "foo") is Command("ls foo")."""
    if args or kwargs:
        return Command(fmt.format(*args, **kwargs))
    return Command(fmt)
