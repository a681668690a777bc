from __future__ import annotations

import socket
import sys
from typing import Tuple, Union

DEFAULT_PORT = 22

Address = Union[str, Tuple[str, int]]


class ToolError(Exception):
    """Generic tool exception with a human-readable message."""
    pass


class SshError(ToolError):
    """Base class for everything that can go wrong with an SSH shell."""
    pass


class KeyNotFound(SshError):
    """No usable private key was found."""

    def __init__(self, file: str) -> None:
        self.file = str(file)
        super().__init__(f"no such key: {self.file}")


class AuthFailed(SshError):
    """The handshake worked but the remote rejected the private key."""

    def __init__(self, key: str) -> None:
        self.key = str(key)
        super().__init__(f"authentication failed with private key: {self.key!r}")


class NonZeroExit(SshError):
    """
    A remote command finished with a non-zero status and was not allowed to.
    `cmd` is the command text as it was sent (after bash/cwd rewriting).
    """

    def __init__(self, cmd: str, exit: int, stdout: str = "", stderr: str = "") -> None:
        self.cmd = cmd
        self.exit = exit
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"non-zero exit ({exit}) for command: {cmd}")


def info(msg: str) -> None:
    print(f"[INFO] {msg}")


def warn(msg: str) -> None:
    print(f"[WARN] {msg}")


def err(msg: str) -> None:
    print(f"[ERROR] {msg}", file=sys.stderr)


def escape_for_bash(s: str) -> str:
    """
    Encode all single quotes so the whole string can be passed as one argument
    to `bash -c`.

    echo '$HELLOWORLD="hello world"' | grep "hello"
    becomes
    'echo '"'"'$HELLOWORLD="hello world"'"'"' | grep "hello"'
    """
    return "'" + s.replace("'", "'\"'\"'") + "'"


def split_address(addr: Address) -> Tuple[str, int]:
    """Split 'host:port', 'host' or (host, port) into (host, port)."""
    if isinstance(addr, tuple):
        host, port = addr
        return host, int(port)
    host, sep, port = addr.rpartition(":")
    # "host" alone, or a bare IPv6 address
    if not sep or ":" in host:
        return addr, DEFAULT_PORT
    return host, int(port)


def get_host_ip(addr: Address) -> Tuple[str, int]:
    """Given a remote address, return (ip, port) of the first resolved address."""
    host, port = split_address(addr)
    sockaddr = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)[0][4]
    return sockaddr[0], sockaddr[1]
