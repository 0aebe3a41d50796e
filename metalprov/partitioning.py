"""GPT layout application & verification."""
from __future__ import annotations

import re

from .devices import partition_path
from .errors import InvalidLayoutError, PartitionNotReadyError, RefuseSafeError, ResourceBusyError
from .executil import run, trace, udev_settle, wait_for_path, warn
from .model import BlockDevice, PartitionHandle, PartitionTable

# parted >= 3.3 exits 1 when the kernel cannot be told about the new table;
# partprobe below takes care of that.
BENIGN_PARTED_ERROR = "unable to inform the kernel of the change"
BUSY_MARKERS = ("busy", "in use", "being used")

_PARTED_FLAGS = {"bios_grub": "bios_grub", "esp": "esp", "raid": "raid", "lvm": "lvm"}


def _base_device(dev: str) -> str:
    for pattern in (r"^(.*)-part\d+$", r"^(.*\d)p\d+$", r"^(/dev/(?:sd|vd|xvd|hd)[a-z]+)\d+$"):
        m = re.match(pattern, dev)
        if m:
            return m.group(1)
    return dev


def guard_not_live_root(target: str):
    root_src = run(["findmnt", "-no", "SOURCE", "/"], check=False).out.strip()
    if root_src and _base_device(root_src) == _base_device(target):
        raise RefuseSafeError(
            f"target {target} shares base device with live root {root_src}",
            state={"target": target, "root": root_src},
        )


def parted_script(table: PartitionTable) -> list[str]:
    args = ["mklabel", table.label]
    for part in table.partitions:
        args += ["mkpart", part.name, part.start_arg, part.end_arg]
        flag = _PARTED_FLAGS.get(part.flag)
        if flag:
            args += ["set", str(part.number), flag, "on"]
    return args


def reread(device: str, dry_run: bool = False):
    res = run(["partprobe", device], check=False, dry_run=dry_run)
    if res.rc != 0:
        trace("partitioning.reread_failed", device=device, rc=res.rc, err=(res.err or "").strip())
    udev_settle()


def apply(
    device: BlockDevice,
    table: PartitionTable,
    dry_run: bool = False,
    settle_timeout: float = 5.0,
) -> list[PartitionHandle]:
    """Write ``table`` to ``device`` and wait for every partition node.

    Destroys the existing table; the caller has confirmed intent.
    """

    guard_not_live_root(device.kernel_path)
    cmd = ["parted", "--script", "--align", "optimal", device.path, "--", *parted_script(table)]
    res = run(cmd, check=False, dry_run=dry_run, timeout=120.0)
    if res.rc != 0:
        err = (res.err or res.out or "").strip()
        if BENIGN_PARTED_ERROR in err.lower():
            trace("partitioning.reread_benign", device=device.path, err=err)
        elif any(marker in err.lower() for marker in BUSY_MARKERS):
            raise ResourceBusyError(f"parted could not claim {device.path}: {err}", state={"device": device.path})
        else:
            raise InvalidLayoutError(
                f"parted rejected the layout for {device.path}: {err}",
                state={"device": device.path, "rc": res.rc, "cmd": cmd},
            )
    reread(device.path, dry_run=dry_run)

    handles: list[PartitionHandle] = []
    for part in table.partitions:
        path = partition_path(device.path, part.number)
        wait_for_path(path, settle_timeout, PartitionNotReadyError, what="partition", dry_run=dry_run)
        handles.append(PartitionHandle(part.number, part.name, part.flag, path))
    trace("partitioning.applied", device=device.path, partitions=[h.path for h in handles], dry_run=dry_run)
    return handles


def verify_layout(device: str, dry_run: bool = False) -> str:
    res = run(["parted", "--script", device, "print"], check=False, dry_run=dry_run)
    if res.rc != 0:
        warn("partitioning.verify_failed", device=device, rc=res.rc, err=(res.err or "").strip())
    return res.out or ""
