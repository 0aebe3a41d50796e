"""Block device inventory and stable-path resolution."""
from __future__ import annotations

import json
import os

from .errors import DeviceNotFoundError, DeviceNotReadyError
from .executil import run, udev_settle, trace, wait_for_path
from .model import BlockDevice

BY_ID = "/dev/disk/by-id"
BY_PATH = "/dev/disk/by-path"
SYS_BLOCK = "/sys/class/block"


def _links_to(directory: str, kernel_path: str) -> list[str]:
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return []
    real = os.path.realpath(kernel_path)
    return [
        os.path.join(directory, name)
        for name in names
        if os.path.realpath(os.path.join(directory, name)) == real
    ]


def stable_path(kernel_path: str) -> str:
    """Return a reboot-stable alias for ``kernel_path``.

    Kernel names (``sda``, ``nvme0n1``) are handed out in probe order and
    change between the rescue system and the installed one.  Prefer a
    ``/dev/disk/by-id`` link, skipping ``wwn-``/``nvme-eui.`` style links when
    a model/serial one exists, then ``/dev/disk/by-path``.
    """

    by_id = _links_to(BY_ID, kernel_path)
    if by_id:
        preferred = [p for p in by_id if not os.path.basename(p).startswith(("wwn-", "nvme-eui."))]
        return (preferred or by_id)[0]
    by_path = _links_to(BY_PATH, kernel_path)
    if by_path:
        return by_path[0]
    return kernel_path


def _lsblk(ref: str | None = None) -> list[dict]:
    cmd = ["lsblk", "-J", "-b", "-d", "-o", "NAME,PATH,TYPE,SIZE"]
    if ref:
        cmd.append(ref)
    # lsblk is read-only; run it even in dry-run so plans see real capacities
    result = run(cmd, check=False, dry_run=False)
    if result.rc != 0:
        raise DeviceNotFoundError(
            f"lsblk could not inspect {ref or 'block devices'}: {(result.err or '').strip()}",
            state={"ref": ref, "rc": result.rc},
        )
    try:
        payload = json.loads(result.out or "{}")
    except json.JSONDecodeError as exc:
        raise DeviceNotFoundError(f"failed to parse lsblk output for {ref}: {exc}") from exc
    return list(payload.get("blockdevices") or [])


def _to_device(node: dict, path: str | None = None) -> BlockDevice:
    kernel = node.get("path") or f"/dev/{node.get('name')}"
    return BlockDevice(
        path=path or stable_path(kernel),
        kernel_name=node.get("name") or os.path.basename(kernel),
        size_bytes=int(node.get("size") or 0),
    )


def list_devices() -> list[BlockDevice]:
    udev_settle()
    found = [_to_device(node) for node in _lsblk() if node.get("type") == "disk"]
    trace("devices.list", devices=[d.path for d in found])
    return found


def resolve(ref: str, timeout: float = 5.0, dry_run: bool = False) -> BlockDevice:
    """Resolve a by-id, by-path or kernel reference to a pinned ``BlockDevice``.

    The node gets a bounded settle-wait first; a reference that never shows
    up is reported as ``DeviceNotFoundError`` rather than a readiness timeout.
    """

    try:
        wait_for_path(ref, timeout, DeviceNotReadyError, what="disk", dry_run=dry_run)
    except DeviceNotReadyError as exc:
        raise DeviceNotFoundError(f"device {ref} not found", state={"ref": ref}) from exc
    nodes = _lsblk(ref)
    if not nodes:
        raise DeviceNotFoundError(f"lsblk did not report device {ref}", state={"ref": ref})
    node = nodes[0]
    if node.get("type") != "disk":
        raise DeviceNotFoundError(
            f"{ref} is a {node.get('type')}, not a whole disk",
            state={"ref": ref, "type": node.get("type")},
        )
    pinned = ref if ref.startswith("/dev/disk/by-") else None
    device = _to_device(node, pinned)
    trace("devices.resolve", ref=ref, path=device.path, kernel=device.kernel_name, size=device.size_bytes)
    return device


def partition_path(device_path: str, number: int) -> str:
    if device_path.startswith("/dev/disk/by-"):
        return f"{device_path}-part{number}"
    # nvme0n1 -> nvme0n1p1, sda -> sda1
    suffix = "p" if device_path[-1:].isdigit() else ""
    return f"{device_path}{suffix}{number}"


def holders(dev: str) -> list[str]:
    """Kernel names of the devices stacked on ``dev`` (md arrays, dm maps)."""

    name = os.path.basename(os.path.realpath(dev))
    holders_dir = os.path.join(SYS_BLOCK, name, "holders")
    try:
        return sorted(os.listdir(holders_dir))
    except FileNotFoundError:
        return []
    except OSError as exc:
        trace("devices.holders_error", device=dev, path=holders_dir, error=str(exc))
        return []


def dm_name(kernel_name: str) -> str:
    path = os.path.join(SYS_BLOCK, kernel_name, "dm", "name")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read().strip()
    except OSError:
        return ""


def swapoff_all(dry_run: bool = False):
    run(["swapoff", "-a"], check=False, dry_run=dry_run)


def uuid_of(path: str, dry_run: bool = False) -> str:
    r = run(["blkid", "-s", "UUID", "-o", "value", path], check=False, dry_run=dry_run)
    return (r.out or "").strip()
