"""Filesystem creation, identifier refresh and ordered mounting."""
from __future__ import annotations

import contextlib
import os
import posixpath
from subprocess import CalledProcessError

from .devices import holders, uuid_of
from .errors import DeviceNotReadyError, FormatFailedError, LabelNotReadyError, MountOrderError, ResourceBusyError
from .executil import run, trace, udev_settle, udev_trigger, wait_for_path
from .model import MountedFilesystem, MountEntry, MountPlan

BY_LABEL = "/dev/disk/by-label"
BY_UUID = "/dev/disk/by-uuid"
MOUNTINFO = "/proc/self/mountinfo"
EFIVARS = "/sys/firmware/efi/efivars"

_MKFS = {
    "ext4": (["mkfs.ext4", "-F"], "-L"),
    "vfat": (["mkfs.fat", "-F", "32"], "-n"),
    "xfs": (["mkfs.xfs", "-f"], "-L"),
    "btrfs": (["mkfs.btrfs", "-f"], "-L"),
    "swap": (["mkswap", "-f"], "-L"),
}


def _device_realpath(dev: str) -> str:
    try:
        return os.path.realpath(dev)
    except OSError:
        return dev


def _mountinfo() -> list[tuple[str, str, str]]:
    """(source, mountpoint, fstype) for every line of the mount table."""

    entries: list[tuple[str, str, str]] = []
    try:
        with open(MOUNTINFO, "r", encoding="utf-8") as fh:
            for line in fh:
                parts = line.strip().split()
                with contextlib.suppress(ValueError):
                    dash = parts.index("-")
                    if dash + 2 >= len(parts):
                        continue
                    entries.append((parts[dash + 2], parts[4].replace("\\040", " "), parts[dash + 1]))
    except FileNotFoundError:
        return []
    except OSError as exc:
        trace("mounts.mountinfo_error", error=str(exc))
    return entries


def _device_mountpoints(dev: str) -> list[str]:
    real = _device_realpath(dev)
    return [target for source, target, _ in _mountinfo() if _device_realpath(source) == real]


def _collect_device_state(dev: str) -> dict:
    return {
        "device": dev,
        "realpath": _device_realpath(dev),
        "mountpoints": _device_mountpoints(dev),
        "holders": holders(dev),
    }


def _preflight_errors(state: dict) -> list[str]:
    errors: list[str] = []
    mountpoints = state.get("mountpoints") or []
    if mountpoints:
        errors.append(f"device is mounted at {', '.join(sorted(mountpoints))}")
    held = state.get("holders") or []
    if held:
        errors.append(f"device has holders: {', '.join(held)}")
    return errors


def format_filesystem(device: str, fstype: str, label: str | None = None, dry_run: bool = False):
    if fstype == "zfs":
        trace("mounts.format_skipped", device=device, fstype=fstype)
        return
    if fstype not in _MKFS:
        raise FormatFailedError(f"unsupported filesystem type {fstype!r} for {device}", state={"device": device})
    if not dry_run:
        state = _collect_device_state(device)
        errors = _preflight_errors(state)
        if errors:
            raise ResourceBusyError(f"refusing to format {device}: " + "; ".join(errors), state=state)

    base, label_flag = _MKFS[fstype]
    args = list(base)
    if label:
        args += [label_flag, label]
    try:
        run(args + [device], check=True, dry_run=dry_run, timeout=360.0)
    except CalledProcessError as exc:
        msg = (exc.stderr or exc.stdout or "").strip() or f"exit status {exc.returncode}"
        raise FormatFailedError(
            f"{args[0]} failed on {device}: {msg}",
            state={**_collect_device_state(device), "fstype": fstype, "rc": exc.returncode},
        ) from exc
    trace("mounts.mkfs_success", device=device, fstype=fstype, label=label, dry_run=dry_run)


def label_path(label: str) -> str:
    return os.path.join(BY_LABEL, label)


def refresh_identifiers(
    labels: list[str],
    timeout: float = 5.0,
    dry_run: bool = False,
    devices: list[str] | None = None,
) -> list[str]:
    """Make udev republish by-label/by-uuid links and wait for them.

    mkfs changes UUIDs and labels, and hardware-description generators read
    the ``/dev/disk/by-*`` links, so they must be current before handoff.
    A label link may survive from a previous run, so every formatted device in
    ``devices`` is also waited on through the by-uuid link of its new UUID.
    Returns the label paths (in order) followed by the by-uuid paths.
    """

    if not dry_run:
        udev_trigger()
    paths = []
    for label in labels:
        path = label_path(label)
        wait_for_path(path, timeout, LabelNotReadyError, what="label", dry_run=dry_run)
        paths.append(path)
    for device in devices or []:
        if dry_run:
            trace("mounts.uuid_wait_skipped", device=device, dry_run=dry_run)
            continue
        uuid = uuid_of(device)
        if not uuid:
            raise LabelNotReadyError(f"blkid reported no filesystem UUID for {device}", state={"device": device})
        path = os.path.join(BY_UUID, uuid)
        wait_for_path(path, timeout, LabelNotReadyError, what="uuid", dry_run=dry_run)
        paths.append(path)
    return paths


def _is_parent(parent: str, child: str) -> bool:
    parent = posixpath.normpath(parent)
    child = posixpath.normpath(child)
    if parent == child:
        return False
    if parent == "/":
        return True
    return child.startswith(parent + "/")


def validate_mount_plan(plan: MountPlan) -> MountPlan:
    seen: set[str] = set()
    for idx, entry in enumerate(plan.entries):
        if not entry.target.startswith("/"):
            raise MountOrderError(f"mount target {entry.target!r} is not absolute")
        target = posixpath.normpath(entry.target)
        if target in seen:
            raise MountOrderError(f"mount target {target} appears twice")
        seen.add(target)
        for later in plan.entries[idx + 1:]:
            if _is_parent(later.target, entry.target):
                raise MountOrderError(
                    f"{entry.target} would be mounted before its parent {later.target}",
                    state={"child": entry.target, "parent": later.target},
                )
    return plan


def _under_root(root: str, target: str) -> str:
    return posixpath.normpath(posixpath.join(root, target.lstrip("/")))


def _mount(dev: str, target: str, fstype: str | None = None, opts: list[str] | None = None, dry_run: bool = False):
    cmd = ["mount"]
    if fstype:
        cmd += ["-t", fstype]
    if opts:
        cmd += ["-o", ",".join(opts)]
    cmd += [dev, target]
    try:
        run(["mkdir", "-p", target], check=True, dry_run=dry_run)
        run(cmd, check=True, dry_run=dry_run)
    except CalledProcessError as exc:
        msg = (exc.stderr or exc.stdout or "").strip() or f"exit status {exc.returncode}"
        state = {"source": dev, "target": target, "fstype": fstype, "rc": exc.returncode}
        if "busy" in msg.lower() or "already mounted" in msg.lower():
            raise ResourceBusyError(f"cannot mount {dev} on {target}: {msg}", state=state) from exc
        raise DeviceNotReadyError(f"cannot mount {dev} on {target}: {msg}", state=state) from exc


def mount_plan(plan: MountPlan, root: str, dry_run: bool = False) -> list[MountedFilesystem]:
    validate_mount_plan(plan)
    mounted: list[MountedFilesystem] = []
    for entry in plan.entries:
        dest = _under_root(root, entry.target)
        _mount(entry.source, dest, entry.fstype, list(entry.options), dry_run=dry_run)
        label = os.path.basename(entry.source) if entry.source.startswith(BY_LABEL + "/") else None
        mounted.append(MountedFilesystem(entry.source, dest, entry.fstype, label))
        trace("mounts.mounted", source=entry.source, target=dest, fstype=entry.fstype, dry_run=dry_run)
    return mounted


def format_and_mount(
    volume_path: str,
    fstype: str,
    target: str,
    label: str | None = None,
    root: str = "/mnt",
    options: list[str] | None = None,
    dry_run: bool = False,
    timeout: float = 5.0,
) -> MountedFilesystem:
    format_filesystem(volume_path, fstype, label, dry_run=dry_run)
    source = volume_path
    if fstype != "zfs":
        labels = [label] if label else []
        paths = refresh_identifiers(labels, timeout=timeout, dry_run=dry_run, devices=[volume_path])
        if label:
            source = paths[0]
    entry = MountEntry(source, target, fstype, tuple(options or ()))
    return mount_plan(MountPlan([entry]), root, dry_run=dry_run)[0]


def mount_efivars(dry_run: bool = False) -> bool:
    """Mount efivarfs unless it is already there; some rescue systems skip it."""

    if any(fstype == "efivarfs" for _, _, fstype in _mountinfo()):
        return False
    if not os.path.isdir(EFIVARS):
        trace("mounts.efivars_unavailable", path=EFIVARS)
        return False
    _mount("efivarfs", EFIVARS, "efivarfs", dry_run=dry_run)
    return True


def unmount_all(root: str, dry_run: bool = False):
    res = run(["umount", "-R", root], check=False, dry_run=dry_run)
    udev_settle()
    return res
