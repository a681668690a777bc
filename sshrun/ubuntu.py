"""Commands specific to Ubuntu, Debian and related distros."""

from __future__ import annotations

from typing import Iterable

from .command import Command, cmd


def dpkg_install(pkg: str) -> Command:
    """Install the given .deb package via `dpkg`. Requires `sudo` privileges."""
    return cmd("sudo dpkg -i {}", pkg)


def apt_install(pkgs: Iterable[str]) -> Command:
    """Install the given packages via `apt-get install`. Requires `sudo` privileges."""
    return cmd("sudo apt-get -y install {}", " ".join(pkgs))


install = dpkg_install
install_many = apt_install
