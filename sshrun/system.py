"""
Routines for configuring a remote machine: CPU governor, swap, groups, disks
and partitions, reboots.

The functions returning a `Command` only build it; run it with `shell.run`.
The others drive a sequence of commands against any object with a
`run(Command) -> CommandResult` method (and `reconnect()` for `reboot`).
"""

from __future__ import annotations

import os
import time
from typing import Iterable, List, Protocol, Set, Tuple, Union, runtime_checkable

from .command import Command, CommandResult, cmd
from .utils import info

# Seconds to wait after `sudo reboot` before trying to reconnect; the machine
# has not gone down yet if we try immediately.
REBOOT_GRACE = 10

TMP_MOUNT = "/tmp/tmp_mnt"


@runtime_checkable
class RemoteShell(Protocol):
    """What the helpers below need from a shell; `SSHSession` is one."""

    def run(self, cmd: Command) -> CommandResult: ...

    def reconnect(self) -> None: ...


def set_cpu_scaling_governor(gov: str) -> Command:
    """Set the scaling governor of all CPUs (e.g. `performance`). Requires `cpupower`."""
    return cmd("sudo cpupower frequency-set -g {}", gov)


def swapoff(device: str) -> Command:
    return cmd("sudo swapoff {}", device)


def swapon(device: str) -> Command:
    return cmd("sudo swapon {}", device)


def add_to_group(group: str) -> Command:
    """Add the remote user to `group`. Takes effect on the next login."""
    return cmd("sudo usermod -aG {} `whoami`", group).bash()


def write_new_partition_table(dev_name: str) -> Command:
    """Write a fresh GPT partition table to `dev_name`, wiping it."""
    return cmd("sudo parted -a optimal {} -s -- mklabel gpt", dev_name)


def create_partition(dev_name: str) -> Command:
    """Create one primary partition spanning all of `dev_name`."""
    return cmd("sudo parted -a optimal {} -s -- mkpart primary 0% 100%", dev_name)


def format_partition_as_ext4(
    shell: RemoteShell,
    dry_run: bool,
    partition: str,
    mount: Union[str, "os.PathLike[str]"],
    owner: str,
) -> None:
    """
    Format `partition` as ext4 and mount it at `mount`, owned by `owner`.

    Existing contents of `mount` are copied onto the new filesystem first, and
    an entry is appended to /etc/fstab so the mount survives a reboot.
    """
    mount = os.fspath(mount)

    shell.run(cmd("lsblk").dry(dry_run))

    shell.run(cmd("sudo mkfs.ext4 {}", partition).dry(dry_run))

    # Copy what is already at `mount` via a temporary mountpoint
    shell.run(cmd("sudo mkdir -p {tmp} ; sudo mount -t ext4 {} {tmp}", partition, tmp=TMP_MOUNT).dry(dry_run))
    shell.run(cmd("sudo chown {} {}", owner, TMP_MOUNT).dry(dry_run))
    shell.run(cmd("rsync -a {}/ {}/", mount, TMP_MOUNT).dry(dry_run))
    shell.run(cmd("sync").dry(dry_run))
    shell.run(cmd("sudo umount {}", TMP_MOUNT).dry(dry_run))

    shell.run(cmd("sudo mount -t ext4 {} {}", partition, mount).dry(dry_run))
    shell.run(cmd("sudo chown {} {}", owner, mount).dry(dry_run))

    uuid = shell.run(
        cmd("sudo blkid -o export {} | grep '^UUID='", partition).bash().dry(dry_run)
    ).stdout.strip()
    shell.run(
        cmd('echo "{}    {}    ext4    defaults    0    1" | sudo tee -a /etc/fstab', uuid, mount).dry(dry_run)
    )

    shell.run(cmd("lsblk").dry(dry_run))


def get_partitions(shell: RemoteShell, device: str, dry_run: bool) -> Set[str]:
    """Names of the partitions of `device` (e.g. `/dev/sda`), without the device itself."""
    out = shell.run(cmd("lsblk -o KNAME {}", device).dry(dry_run)).stdout
    # header, then the device itself, then its children
    return {line.strip() for line in out.splitlines()[2:] if line.strip()}


def get_mounted_devs(shell: RemoteShell, dry_run: bool) -> List[Tuple[str, str]]:
    """(device, mountpoint) pairs for every mounted device, in `lsblk` order."""
    out = shell.run(cmd("lsblk -o KNAME,MOUNTPOINT").dry(dry_run)).stdout

    seen: Set[str] = set()
    devices: List[Tuple[str, str]] = []
    for line in out.splitlines()[1:]:
        fields = line.split()
        if len(fields) != 2:
            continue
        name, mountpoint = fields
        if name in seen:
            continue
        seen.add(name)
        devices.append((name, mountpoint))
    return devices


def get_unpartitioned_devs(shell: RemoteShell, dry_run: bool) -> Set[str]:
    """Devices that have no partitions, are not partitions and are not mounted."""
    out = shell.run(cmd("lsblk -o KNAME").dry(dry_run)).stdout
    devices = {line.strip() for line in out.splitlines()[1:] if line.strip()}

    unused = set(devices)
    for dev in sorted(devices):
        parts = get_partitions(shell, f"/dev/{dev}", dry_run)
        if parts:
            unused.discard(dev)
            unused -= parts

    for dev, _ in get_mounted_devs(shell, dry_run):
        unused.discard(dev)

    return unused


def get_dev_sizes(shell: RemoteShell, devs: Iterable[str], dry_run: bool) -> List[str]:
    """Human-readable sizes (`lsblk -o SIZE`) of the given device names, in order."""
    sizes = []
    for dev in devs:
        out = shell.run(cmd("lsblk -o SIZE /dev/{}", dev).dry(dry_run)).stdout
        lines = out.splitlines()
        sizes.append(lines[1].strip() if len(lines) > 1 else "")
    return sizes


def reboot(shell: RemoteShell, dry_run: bool) -> None:
    """Reboot and wait for the machine to come back up. Requires `sudo`."""
    try:
        shell.run(cmd("sudo reboot").dry(dry_run))
    except Exception as e:
        # The connection dropping under us is what a reboot looks like.
        info(f"Reboot command ended with: {e}")

    if not dry_run:
        time.sleep(REBOOT_GRACE)
        shell.reconnect()

    # Make sure it worked.
    shell.run(cmd("whoami").dry(dry_run))
