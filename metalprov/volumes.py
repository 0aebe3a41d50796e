"""Volume manager layer: LVM volume groups and ZFS pools."""

from __future__ import annotations

import math
from subprocess import CalledProcessError

from .errors import DeviceNotReadyError, FormatFailedError, InvalidLayoutError
from .executil import run, trace, udev_settle, wait_for_path
from .model import Pool, SizePolicy, Volume, VolumePolicy

DEFAULT_POOL_OPTIONS = {"ashift": "12"}
DEFAULT_DATASET_OPTIONS = {"mountpoint": "none"}


def _dm_escape(name: str) -> str:
    return name.replace("-", "--")


def lv_path(group: str, name: str) -> str:
    return f"/dev/mapper/{_dm_escape(group)}-{_dm_escape(name)}"


def size_args(policy: SizePolicy) -> list[str]:
    """lvcreate sizing arguments for ``policy``.

    Percent-of-free is capped at ``100 * (1 - slack)`` and rounded down, so
    the default 5% slack never hands out more than 95% of the free extents.
    """

    if policy.size:
        return ["--size", policy.size]
    if not 0 <= policy.slack < 1:
        raise InvalidLayoutError(f"slack fraction {policy.slack} must be in [0, 1)")
    percent = 100.0 if policy.percent_free is None else float(policy.percent_free)
    if percent <= 0:
        raise InvalidLayoutError(f"percent_free {percent} must be positive")
    ceiling = round(100 * (1 - policy.slack), 6)
    allowed = math.floor(min(percent, ceiling))
    if allowed < 1:
        raise InvalidLayoutError(f"size policy {policy} leaves nothing to allocate")
    return ["--extents", f"{allowed}%FREE"]


def _options(flag: str, options: dict) -> list[str]:
    args: list[str] = []
    for key, value in options.items():
        args += [flag, f"{key}={value}"]
    return args


def _checked(cmd: list[str], what: str, dry_run: bool):
    try:
        return run(cmd, check=True, dry_run=dry_run, timeout=120.0)
    except CalledProcessError as exc:
        msg = (exc.stderr or exc.stdout or "").strip() or f"exit status {exc.returncode}"
        raise FormatFailedError(f"{what} failed: {msg}", state={"cmd": cmd, "rc": exc.returncode}) from exc


def create_pool(devices: list[str], opts: VolumePolicy, dry_run: bool = False) -> Pool:
    if opts.kind == "lvm":
        for dev in devices:
            _checked(["pvcreate", "-ff", "-y", dev], f"pvcreate {dev}", dry_run)
        _checked(["vgcreate", opts.group, *devices], f"vgcreate {opts.group}", dry_run)
    elif opts.kind == "zfs":
        dataset_opts = {**DEFAULT_DATASET_OPTIONS, **opts.dataset_options}
        pool_opts = opts.pool_options or DEFAULT_POOL_OPTIONS
        cmd = ["zpool", "create", *_options("-O", dataset_opts), *_options("-o", pool_opts), "-f", opts.group]
        if opts.vdev:
            cmd.append(opts.vdev)
        cmd += list(devices)
        _checked(cmd, f"zpool create {opts.group}", dry_run)
    elif opts.kind == "none":
        return Pool(kind="none", name=devices[0], devices=list(devices))
    else:
        raise InvalidLayoutError(f"unknown volume manager kind {opts.kind!r}")
    udev_settle()
    trace("volumes.pool", kind=opts.kind, name=opts.group, devices=devices, dry_run=dry_run)
    return Pool(kind=opts.kind, name=opts.group, devices=list(devices))


def create_volume(
    pool: Pool,
    name: str,
    size_policy: SizePolicy,
    options: dict | None = None,
    dry_run: bool = False,
    settle_timeout: float = 5.0,
) -> Volume:
    options = options or {}
    if pool.kind == "lvm":
        sizing = size_args(size_policy)
        # leftover signatures on a reused disk are expected; lvcreate wipes them
        cmd = ["lvcreate", "--yes", "--wipesignatures", "y", *sizing, "-n", name, pool.name]
        _checked(cmd, f"lvcreate {pool.name}/{name}", dry_run)
        path = lv_path(pool.name, name)
        wait_for_path(path, settle_timeout, DeviceNotReadyError, what="logical volume", dry_run=dry_run)
        size_arg = " ".join(sizing)
    elif pool.kind == "zfs":
        props = {"mountpoint": "legacy", **options}
        if size_policy.size:
            props.setdefault("quota", size_policy.size)
        path = f"{pool.name}/{name}"
        _checked(["zfs", "create", *_options("-o", props), path], f"zfs create {path}", dry_run)
        size_arg = props.get("quota")
    else:
        path = pool.devices[0]
        size_arg = None
    trace("volumes.volume", pool=pool.name, name=name, path=path, size=size_arg, dry_run=dry_run)
    return Volume(pool=pool, name=name, path=path, size_arg=size_arg)


def deactivate_all(dry_run: bool = False):
    return run(["vgchange", "-an"], check=False, dry_run=dry_run, timeout=60.0)


def imported_pools() -> list[str]:
    res = run(["zpool", "list", "-H", "-o", "name"], check=False)
    if res.rc != 0:
        return []
    return [line.strip() for line in (res.out or "").splitlines() if line.strip()]


def export_pool(name: str, dry_run: bool = False):
    return run(["zpool", "export", name], check=False, dry_run=dry_run, timeout=120.0)
