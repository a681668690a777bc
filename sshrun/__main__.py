from __future__ import annotations

import argparse
import sys
import time

from typing import List, Optional

import paramiko

from sshrun.command import Command
from sshrun.sshsession import SSHSession
from sshrun.utils import ToolError, info, err


def run(
    host: str,
    user: str,
    command: str,
    *,
    port: int = 22,
    key: Optional[str] = None,
    cwd: Optional[str] = None,
    use_bash: bool = False,
    allow_error: bool = False,
    no_pty: bool = False,
    dry_run: bool = False,
    verbose: bool = False,
) -> None:
    """
    Connect to `host` and run one command:
    - Connect (explicit key if given; otherwise every key in ~/.ssh)
    - Build the Command from the flags
    - Run it, streaming its output
    """
    t0 = time.time()
    remote = (host, port)
    if key:
        shell = SSHSession.with_key(user, remote, key, verbose=verbose)
    else:
        shell = SSHSession.with_any_key(user, remote, verbose=verbose)

    with shell:
        shell.set_dry_run(dry_run)

        c = Command(command)
        if cwd:
            c = c.with_cwd(cwd)
        if use_bash:
            c = c.bash()
        if allow_error:
            c = c.allow_err()
        if no_pty:
            c = c.without_pty()

        shell.run(c)

    if verbose:
        info(f"Done. Elapsed: {time.time() - t0:.1f}s")


# ---------------------------
# CLI
# ---------------------------
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sshrun",
        description="Run a command on a remote host over SSH, streaming its output.",
    )
    p.add_argument("--host", required=True, help="Remote host/IP.")
    p.add_argument("-u", "--user", required=True, help="SSH username for remote host.")
    p.add_argument("-p", "--port", type=int, default=22, help="SSH port (default: 22).")
    p.add_argument("-k", "--key", help="Private key file. Default: try every key in ~/.ssh.")
    p.add_argument("--cwd", help="Remote directory to run the command in.")
    p.add_argument("--bash", action="store_true", help="Run the command through bash -c.")
    p.add_argument("--allow-error", action="store_true", help="Do not fail on a non-zero exit code.")
    p.add_argument("--no-pty", action="store_true", help="Do not request a pseudo-terminal.")
    p.add_argument("--dry-run", action="store_true", help="Print the command without running it.")
    p.add_argument("--verbose", action="store_true", help="Verbose logs.")
    p.add_argument("command", nargs="+", help="Command to run remotely.")
    return p


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        run(
            host=args.host,
            user=args.user,
            command=" ".join(args.command),
            port=args.port,
            key=args.key,
            cwd=args.cwd,
            use_bash=args.bash,
            allow_error=args.allow_error,
            no_pty=args.no_pty,
            dry_run=args.dry_run,
            verbose=args.verbose,
        )
    except ToolError as e:
        err(str(e))
        sys.exit(2)
    except (OSError, paramiko.SSHException) as e:
        err(f"SSH connection error: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        err("Interrupted by user.")
        sys.exit(130)


if __name__ == "__main__":
    main()
