from __future__ import annotations

import codecs
import os
import socket
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional, Tuple

import paramiko

from .command import Command, CommandResult
from .utils import (
    Address,
    AuthFailed,
    KeyNotFound,
    NonZeroExit,
    SshError,
    escape_for_bash,
    get_host_ip,
    info,
    warn,
)

# Timeout for the TCP stream and the SSH handshake, in seconds.
DEFAULT_TIMEOUT = 10

DEFAULT_KEY_DIR = ".ssh"
DEFAULT_KEY_SUFFIX = ".ssh/id_rsa"

READ_CHUNK = 256


def _load_private_key(key_path: str) -> paramiko.PKey:
    """Load private key from file, trying different key types"""
    key_types = [
        paramiko.RSAKey,
        paramiko.Ed25519Key,
        paramiko.ECDSAKey,
    ]
    # DSSKey was removed in paramiko 4.x
    if hasattr(paramiko, "DSSKey"):
        key_types.append(paramiko.DSSKey)

    last_error: Optional[Exception] = None
    for key_class in key_types:
        try:
            return key_class.from_private_key_file(key_path)
        except paramiko.SSHException as e:
            last_error = e
            continue

    raise paramiko.SSHException(f"Unable to load private key: {last_error}")


def _connect_tcp(remote: Tuple[str, int], timeout: float) -> socket.socket:
    sock = socket.create_connection(remote, timeout=timeout)
    sock.settimeout(DEFAULT_TIMEOUT)
    return sock


def _start_transport(sock: socket.socket) -> paramiko.Transport:
    """SSH handshake over an already connected socket."""
    transport = paramiko.Transport(sock)
    try:
        transport.start_client(timeout=DEFAULT_TIMEOUT)
    except Exception:
        transport.close()
        raise
    return transport


def _authenticate(transport: paramiko.Transport, username: str, key: str) -> None:
    # the key may have gone away since the first connect
    if not os.path.isfile(key):
        transport.close()
        raise KeyNotFound(key)
    try:
        pkey = _load_private_key(key)
        transport.auth_publickey(username, pkey)
    except (paramiko.SSHException, OSError) as e:
        transport.close()
        raise AuthFailed(key) from e
    if not transport.is_authenticated():
        transport.close()
        raise AuthFailed(key)


def _drain(recv: Callable[[int], bytes]) -> str:
    """
    Read a channel stream until EOF, echoing it locally as it arrives.
    Invalid UTF-8 is replaced rather than treated as an error.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parts = []
    while True:
        buf = recv(READ_CHUNK)
        if not buf:
            break
        text = decoder.decode(buf)
        if text:
            sys.stdout.write(text)
            sys.stdout.flush()
            parts.append(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        sys.stdout.write(tail)
        parts.append(tail)
    return "".join(parts)


def run_with_chan_and_opts(
    host_and_username: str,
    chan: paramiko.Channel,
    cmd_opts: Command,
    verbose: bool = False,
) -> CommandResult:
    """
    Execute one command on a fresh, not yet exec'd channel.

    Used identically by `SSHSession.run` and by spawned background tasks.
    The exit status is only checked once stdout and stderr are fully drained
    and the remote side is done; reading it earlier can race with buffered output.
    """
    # Printed as given; the command is rewritten below before execution.
    msg = cmd_opts.cmd

    command = cmd_opts.cmd
    if cmd_opts.use_bash:
        command = f"bash -c {escape_for_bash(command)}"
    if cmd_opts.cwd is not None:
        command = f"cd {cmd_opts.cwd} ; {command}"

    if verbose:
        info(f"After escaping and cwd: {command!r}")

    print(f"{host_and_username} {msg}")

    if cmd_opts.dry_run:
        chan.close()
        if verbose:
            info("Closed channel after dry run.")
        return CommandResult()

    # sudo needs a pty, otherwise it fails or waits on a prompt nobody sees
    if not cmd_opts.no_pty:
        chan.get_pty(term="vt100")
        if verbose:
            info("Requested pty.")

    chan.exec_command(command)

    stdout = _drain(chan.recv)

    chan.shutdown_write()
    exit_status = chan.recv_exit_status()

    stderr = _drain(chan.recv_stderr)
    chan.close()

    if verbose:
        info(f"Exit status: {exit_status}")

    if exit_status != 0 and not cmd_opts.allow_error:
        raise NonZeroExit(command, exit_status, stdout, stderr)

    return CommandResult(stdout=stdout, stderr=stderr)


class _Session:
    """
    The one physical connection of a shell. `lock` is held for the whole
    lifetime of a channel, so commands never interleave on the wire.
    """

    def __init__(self, sock: socket.socket, transport: paramiko.Transport) -> None:
        self.sock = sock
        self.transport = transport
        self.lock = threading.Lock()

    def close(self) -> None:
        try:
            self.transport.close()
        finally:
            self.sock.close()


def _run_on_session(
    session: _Session, host_and_username: str, cmd: Command, verbose: bool
) -> CommandResult:
    with session.lock:
        chan = session.transport.open_session()
        return run_with_chan_and_opts(host_and_username, chan, cmd, verbose)


class SpawnHandle:
    """A handle for a command running in the background. `join` may be called more than once."""

    def __init__(self, future: "Future[CommandResult]") -> None:
        self._future = future

    def join(self) -> CommandResult:
        """Block until the remote command completes; raises what `run` would raise."""
        return self._future.result()

    def done(self) -> bool:
        return self._future.done()

    def __repr__(self) -> str:
        state = "done" if self._future.done() else "running"
        return f"SpawnHandle {{ {state} }}"


class SSHSession:
    """
    One authenticated SSH connection to a single remote, plus the operations to
    run commands over it.

    Build one with `with_key`, `with_default_key` or `with_any_key`. Commands run
    with `run` (blocking) or `spawn` + `join` (background). All of them share a
    single paramiko transport guarded by a lock.

    Commands using `sudo` hang indefinitely if `sudo` asks for a password.
    """

    def __init__(self, username: str, remote: Address, key: str, verbose: bool = False) -> None:
        self.username = username
        self.key = str(key)
        self.remote_name = remote if isinstance(remote, str) else "{}:{}".format(*remote)
        self.remote: Tuple[str, int] = get_host_ip(remote)
        self.verbose = verbose
        self.dry_run_mode = False
        self._session: Optional[_Session] = None

    def connect(self) -> None:
        """Connect, handshake and authenticate. Transport errors propagate as-is."""
        if not os.path.isfile(self.key):
            raise KeyNotFound(self.key)

        if self.verbose:
            info(f"New SSH shell: {self.username}@{self.remote_name}")
            info(f"Using key: {self.key}")

        sock = _connect_tcp(self.remote, DEFAULT_TIMEOUT)
        try:
            transport = _start_transport(sock)
            _authenticate(transport, self.username, self.key)
        except Exception:
            sock.close()
            raise

        self._session = _Session(sock, transport)
        info(f"{self.username}@{self.remote_name} ({self.remote[0]}:{self.remote[1]})")

    # ---------- Constructors ----------

    @classmethod
    def with_key(
        cls, username: str, remote: Address, key: "str | os.PathLike[str]", verbose: bool = False
    ) -> "SSHSession":
        """
        Returns a shell connected with private key file `key`.

            SSHSession.with_key("markm", "myhost:22", "/home/markm/.ssh/id_rsa")
        """
        shell = cls(username, remote, os.fspath(key), verbose=verbose)
        shell.connect()
        return shell

    @classmethod
    def with_default_key(cls, username: str, remote: Address, verbose: bool = False) -> "SSHSession":
        """Returns a shell connected with `$HOME/.ssh/id_rsa`."""
        try:
            home = Path.home()
        except RuntimeError:
            raise KeyNotFound(DEFAULT_KEY_SUFFIX) from None
        return cls.with_key(username, remote, home / DEFAULT_KEY_SUFFIX, verbose=verbose)

    @classmethod
    def with_any_key(cls, username: str, remote: Address, verbose: bool = False) -> "SSHSession":
        """
        Try the private key of every `*.pub` in `$HOME/.ssh` and return the first
        shell that authenticates.
        """
        try:
            key_dir = Path.home() / DEFAULT_KEY_DIR
            pubs = sorted(p for p in key_dir.iterdir() if p.suffix == ".pub")
        except (RuntimeError, OSError):
            raise KeyNotFound(DEFAULT_KEY_DIR) from None

        for pub in pubs:
            key = pub.with_suffix("")
            try:
                return cls.with_key(username, remote, key, verbose=verbose)
            except (SshError, OSError, paramiko.SSHException) as e:
                warn(f"Key {key} did not work: {e}")

        raise KeyNotFound(str(key_dir))

    @classmethod
    def from_existing(cls, shell: "SSHSession") -> "SSHSession":
        """A second, independent connection with the same credentials as `shell`."""
        new = cls(shell.username, shell.remote, shell.key, verbose=shell.verbose)
        new.remote_name = shell.remote_name
        new.connect()
        return new

    def duplicate(self) -> "SSHSession":
        return type(self).from_existing(self)

    # ---------- Dry run ----------

    def set_dry_run(self, on: bool) -> None:
        """
        In dry run mode nothing is executed remotely; we only print the commands
        we would run. The connection is still made.
        """
        self.dry_run_mode = on
        info(f"Toggled dry run mode: {'on' if on else 'off'}")

    def toggle_dry_run(self) -> None:
        self.set_dry_run(not self.dry_run_mode)

    # ---------- Execution ----------

    def _host_and_username(self) -> str:
        return f"{self.username}@{self.remote_name}"

    def _resolve(self, cmd: Command) -> Command:
        return cmd.dry(True) if self.dry_run_mode else cmd

    def _live_session(self) -> _Session:
        if self._session is None:
            raise SshError(f"Not connected to {self.remote_name}.")
        return self._session

    def run(self, cmd: Command) -> CommandResult:
        """Run a command on the remote machine, blocking until it completes."""
        session = self._live_session()
        return _run_on_session(session, self._host_and_username(), self._resolve(cmd), self.verbose)

    def spawn(self, cmd: Command) -> SpawnHandle:
        """
        Run a command in a background thread and return immediately. The thread
        shares this shell's connection and lock, so it serializes with `run`.
        """
        session = self._live_session()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sshrun-spawn")
        future = executor.submit(
            _run_on_session, session, self._host_and_username(), self._resolve(cmd), self.verbose
        )
        executor.shutdown(wait=False)
        if self.verbose:
            info("Spawned thread for command.")
        return SpawnHandle(future)

    def reconnect(self) -> None:
        """
        Reconnect to the remote, retrying the TCP connection until it succeeds
        (possibly forever). Authentication failures are not retried.

        Must not be called while a `run` or spawned command is in flight on this shell.
        """
        session = self._live_session()
        if not session.lock.acquire(blocking=False):
            raise SshError("reconnect called while a command is in flight on this shell")
        try:
            info("Reconnect attempt.")
            while True:
                try:
                    sock = _connect_tcp(self.remote, DEFAULT_TIMEOUT / 2)
                    break
                except OSError as e:
                    warn(f"Attempt Reconnect ... failed, retrying ({e})")
                    time.sleep(DEFAULT_TIMEOUT / 2)

            info("TCP connected, doing SSH handshake")
            try:
                transport = _start_transport(sock)
                _authenticate(transport, self.username, self.key)
            except Exception:
                sock.close()
                raise

            old_sock, old_transport = session.sock, session.transport
            session.sock, session.transport = sock, transport
            old_transport.close()
            old_sock.close()
        finally:
            session.lock.release()

        info(f"{self.username}@{self.remote[0]}:{self.remote[1]}")

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "SSHSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        return (
            f"SSHSession {{ {self.username}@{self.remote[0]}:{self.remote[1]} "
            f"dry_run={self.dry_run_mode} key={self.key!r} }}"
        )


Shell = SSHSession
