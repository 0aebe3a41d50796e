"""Guards and destructive-op refusals."""

from __future__ import annotations

import os
import subprocess

from .errors import RefuseSafeError
from .model import BlockDevice


def _capture(cmd: list[str]) -> str:
    try:
        return subprocess.check_output(cmd, text=True).strip()
    except (subprocess.CalledProcessError, OSError):
        return ""


def _pdisk_of(mountpoint: str) -> str:
    src = _capture(["findmnt", "-no", "SOURCE", mountpoint])
    if not src:
        return ""
    # /dev/sda2 -> sda; a whole-disk source reports an empty PKNAME
    return _capture(["lsblk", "-dno", "PKNAME", src]) or os.path.basename(src)


def guard_not_live_disk(device: str) -> tuple[bool, str]:
    """
    Refuse when target device appears to be the disk backing the running
    system's / or /boot.  Rescue systems usually boot from RAM, in which case
    nothing matches.  Returns (ok, reason).
    """

    root_pd = _pdisk_of("/")
    boot_pd = _pdisk_of("/boot")
    devname = _capture(["lsblk", "-dno", "PKNAME", device])
    if not devname:
        devname = os.path.basename(os.path.realpath(device))
    for live in (root_pd, boot_pd):
        if live and (live == devname or os.path.basename(device) == live):
            return False, f"Target {device} looks like live disk ({live})."
    return True, ""


def require_not_live(devices: list[BlockDevice]) -> None:
    for dev in devices:
        ok, reason = guard_not_live_disk(dev.kernel_path)
        if not ok:
            raise RefuseSafeError(reason, state={"device": dev.path, "kernel": dev.kernel_name})
