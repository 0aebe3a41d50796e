"""CLI entrypoint for metalprov."""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Dict, Optional

from . import __version__
from .devices import list_devices, resolve
from .errors import (
    DeviceNotFoundError,
    DeviceNotReadyError,
    FormatFailedError,
    InvalidLayoutError,
    KeyMaterialMissingError,
    ProvisionError,
    RefuseSafeError,
    ResourceBusyError,
)
from .executil import append_jsonl, resolve_log_path, trace
from .model import Flags, StorageTopology
from .pipeline import build_plan, provision, write_artifact
from .teardown import teardown
from .topology import list_presets, load_preset, load_topology

RESULT_CODES: Dict[str, int] = {
    "PLAN_OK": 0,
    "DRYRUN_OK": 0,
    "PROVISION_OK": 0,
    "TEARDOWN_OK": 0,
    "PRESETS_OK": 0,
    "DEVICES_OK": 0,
    "FAIL_SAFETY_GUARD": 2,
    "FAIL_DEVICE_NOT_FOUND": 3,
    "FAIL_INVALID_LAYOUT": 4,
    "FAIL_NOT_READY": 5,
    "FAIL_FORMAT": 6,
    "FAIL_KEY_MATERIAL": 7,
    "FAIL_RESOURCE_BUSY": 8,
    "FAIL_USAGE": 9,
    "FAIL_UNHANDLED": 12,
}

# Most specific first; subclasses must precede their bases.
_ERROR_RESULTS = (
    (RefuseSafeError, "FAIL_SAFETY_GUARD"),
    (DeviceNotFoundError, "FAIL_DEVICE_NOT_FOUND"),
    (InvalidLayoutError, "FAIL_INVALID_LAYOUT"),
    (DeviceNotReadyError, "FAIL_NOT_READY"),
    (FormatFailedError, "FAIL_FORMAT"),
    (KeyMaterialMissingError, "FAIL_KEY_MATERIAL"),
    (ResourceBusyError, "FAIL_RESOURCE_BUSY"),
)

CLI_START_MONO = time.perf_counter()


def result_for(exc: BaseException) -> str:
    for cls, kind in _ERROR_RESULTS:
        if isinstance(exc, cls):
            return kind
    return "FAIL_UNHANDLED"


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time()), "version": __version__}
    if extra:
        payload.update(extra)
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def _add_topology_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("topology", nargs="?", help="topology JSON document")
    parser.add_argument("--preset", help="bundled preset name (see 'metalprov presets')")
    parser.add_argument("--disk", dest="disks", action="append", metavar="REF",
                        help="disk reference, repeat in topology order; overrides the document")
    parser.add_argument("--target", default=None, help="mount root (default from topology, /mnt)")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--yes", dest="assume_yes", action="store_true")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="metalprov", add_help=True)
    parser.add_argument("--version", action="version", version=f"metalprov {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    prov = sub.add_parser("provision", help="wipe, partition, assemble and mount")
    _add_topology_args(prov)
    prov.add_argument("--plan", action="store_true", help="print the computed plan and exit")
    prov.add_argument("--keep-autoassembly-policy", action="store_true",
                      help="leave the ignore-all mdadm policy in place after the run")

    down = sub.add_parser("teardown", help="unmount and stop everything a previous run left active")
    _add_topology_args(down)

    sub.add_parser("presets", help="list bundled presets")
    sub.add_parser("devices", help="list whole disks with their stable paths")
    return parser


def _load(args: argparse.Namespace) -> StorageTopology:
    if bool(args.topology) == bool(args.preset):
        _emit_result("FAIL_USAGE", extra={"why": "give exactly one of TOPOLOGY or --preset"})
    if args.preset:
        return load_preset(args.preset, disks=args.disks, target=args.target)
    return load_topology(args.topology, disks=args.disks, target=args.target)


def _run_plan(topology: StorageTopology) -> None:
    devices = [resolve(ref, dry_run=True) for ref in topology.disks]
    payload = build_plan(topology, devices).to_dict()
    artifact = write_artifact(f"plan-{topology.name}", payload)
    _emit_result("PLAN_OK", extra={"plan": payload, "artifact": artifact})


def _run_teardown(topology: StorageTopology, args: argparse.Namespace) -> None:
    if not (args.assume_yes or args.dry_run):
        raise RefuseSafeError("teardown stops arrays and closes mappings; confirm with --yes")
    steps = [o.to_dict() for o in teardown(topology, dry_run=args.dry_run)]
    _emit_result("TEARDOWN_OK", extra={"topology": topology.name, "steps": steps, "dry_run": args.dry_run})


def _main_impl(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    trace("cli.args", **{k: v for k, v in vars(args).items()})

    if args.command == "presets":
        _emit_result("PRESETS_OK", extra={"presets": list_presets()})

    try:
        if args.command == "devices":
            found = [{"path": d.path, "kernel": d.kernel_name, "size_bytes": d.size_bytes} for d in list_devices()]
            _emit_result("DEVICES_OK", extra={"devices": found})

        topology = _load(args)
        if args.command == "teardown":
            _run_teardown(topology, args)
        flags = Flags(
            plan=args.plan,
            dry_run=args.dry_run,
            assume_yes=args.assume_yes,
            keep_autoassembly_policy=args.keep_autoassembly_policy,
        )
        if flags.plan:
            _run_plan(topology)
        result = provision(topology, flags)
    except ProvisionError as exc:
        _emit_result(result_for(exc), extra={"error": str(exc), "state": exc.state})

    record = result.to_dict()
    _emit_result("DRYRUN_OK" if flags.dry_run else "PROVISION_OK", extra=record)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"error": f"{type(exc).__name__}: {exc}"})
    return 0


if __name__ == "__main__":
    sys.exit(main())
