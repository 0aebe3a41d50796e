"""Best-effort teardown of state left behind by a previous run.

These are the only steps whose failure is ignored.  Absence of prior state
is the common case (nothing mounted, no arrays, no mappings), so a failing
step is recorded in its ``StepOutcome`` and traced, never raised.  Every
later stage propagates its errors.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from subprocess import CalledProcessError

from . import crypt, devices, mounts, raid, volumes
from .errors import ProvisionError
from .executil import trace, warn
from .model import StorageTopology

BEST_EFFORT_STEPS = (
    "unmount-target",
    "swapoff",
    "export-zfs-pools",
    "deactivate-volume-groups",
    "close-mappings",
    "stop-arrays",
)


@dataclass
class StepOutcome:
    name: str
    ok: bool
    detail: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def _rc_detail(res) -> tuple[bool, str]:
    return res.rc == 0, (res.err or res.out or "").strip()


def _unmount_target(topology: StorageTopology, dry_run: bool):
    return _rc_detail(mounts.unmount_all(topology.target, dry_run=dry_run))


def _swapoff(topology: StorageTopology, dry_run: bool):
    devices.swapoff_all(dry_run=dry_run)
    return True, ""


def _export_pools(topology: StorageTopology, dry_run: bool):
    names = list(dict.fromkeys(topology.zfs_pools() + volumes.imported_pools()))
    failed = [n for n in names if volumes.export_pool(n, dry_run=dry_run).rc != 0]
    return not failed, f"exported={names} failed={failed}"


def _deactivate_vgs(topology: StorageTopology, dry_run: bool):
    return _rc_detail(volumes.deactivate_all(dry_run=dry_run))


def _close_mappings(topology: StorageTopology, dry_run: bool):
    names = list(dict.fromkeys(topology.mapping_names() + crypt.list_crypt_mappings()))
    failed = [n for n in names if not crypt.close(n, dry_run=dry_run, check=False)]
    return not failed, f"closed={[n for n in names if n not in failed]} failed={failed}"


def _stop_arrays(topology: StorageTopology, dry_run: bool):
    return _rc_detail(raid.stop_all_arrays(dry_run=dry_run))


_STEPS = {
    "unmount-target": _unmount_target,
    "swapoff": _swapoff,
    "export-zfs-pools": _export_pools,
    "deactivate-volume-groups": _deactivate_vgs,
    "close-mappings": _close_mappings,
    "stop-arrays": _stop_arrays,
}


def teardown(topology: StorageTopology, dry_run: bool = False) -> list[StepOutcome]:
    outcomes: list[StepOutcome] = []
    for name in BEST_EFFORT_STEPS:
        try:
            ok, detail = _STEPS[name](topology, dry_run)
        except (ProvisionError, CalledProcessError, OSError) as exc:
            ok, detail = False, f"{type(exc).__name__}: {exc}"
        outcome = StepOutcome(name, ok, detail)
        if ok:
            trace("teardown.step", **outcome.to_dict())
        else:
            warn("teardown.step", **outcome.to_dict())
        outcomes.append(outcome)
    return outcomes
