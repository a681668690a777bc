"""Commands specific to CentOS, RHEL, Amazon Linux and related distros."""

from __future__ import annotations

from typing import Iterable

from .command import Command, cmd


def rpm_install(pkg: str) -> Command:
    """Install the given .rpm package via `rpm`. Requires `sudo` privileges."""
    return cmd("sudo rpm -ivh {}", pkg)


def yum_install(pkgs: Iterable[str]) -> Command:
    """Install the given packages via `yum install`. Requires `sudo` privileges."""
    return cmd("sudo yum install -y {}", " ".join(pkgs))


install = rpm_install
install_many = yum_install
