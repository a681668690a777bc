"""
Helpers for scripting machine setup over SSH.

    from sshrun import SSHSession, cmd

    shell = SSHSession.with_default_key("markm", "myhost:22")
    shell.run(cmd("ls {}", "/tmp").with_cwd("/"))
"""

from .command import Command, CommandResult, cmd
from .sshsession import SSHSession, Shell, SpawnHandle
from .utils import (
    AuthFailed,
    KeyNotFound,
    NonZeroExit,
    SshError,
    ToolError,
    escape_for_bash,
    get_host_ip,
)

__all__ = [
    "Command",
    "CommandResult",
    "cmd",
    "SSHSession",
    "Shell",
    "SpawnHandle",
    "ToolError",
    "SshError",
    "KeyNotFound",
    "AuthFailed",
    "NonZeroExit",
    "escape_for_bash",
    "get_host_ip",
]
