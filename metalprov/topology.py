"""Load storage topologies from JSON documents and bundled presets."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from .errors import TopologyError
from .model import (
    PARTITION_FLAGS,
    ArrayIdentity,
    BootPolicy,
    DeviceSet,
    EncryptionPolicy,
    PartitionSpec,
    RaidPolicy,
    RawFilesystem,
    SizePolicy,
    StorageTopology,
    VolumePolicy,
    VolumeSpec,
)
from .paths import presets_dir

VOLUME_KINDS = ("lvm", "zfs", "none")


def _require(obj: dict, key: str, where: str) -> Any:
    if key not in obj or obj[key] in (None, ""):
        raise TopologyError(f"{where}: missing required key {key!r}")
    return obj[key]


def _mapping(obj: Any, where: str) -> dict:
    if not isinstance(obj, dict):
        raise TopologyError(f"{where}: expected an object, got {type(obj).__name__}")
    return obj


def _str_dict(obj: Any, where: str) -> dict[str, str]:
    return {str(k): str(v) for k, v in _mapping(obj or {}, where).items()}


def _size_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _partition_spec(obj: Any, where: str) -> PartitionSpec:
    obj = _mapping(obj, where)
    flag = obj.get("flag", "data")
    if flag not in PARTITION_FLAGS:
        raise TopologyError(f"{where}: unknown partition flag {flag!r}")
    if obj.get("end") is not None and obj.get("size") is not None:
        raise TopologyError(f"{where}: give either 'end' or 'size', not both")
    for key in ("start", "end", "size"):
        value = obj.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (str, int, float))):
            raise TopologyError(f"{where}: {key} must be a size string or a number of megabytes, got {value!r}")
    return PartitionSpec(
        name=str(_require(obj, "name", where)),
        flag=flag,
        start=_size_str(obj.get("start")),
        end=_size_str(obj.get("end")),
        size=_size_str(obj.get("size")),
    )


def _layout(items: Any, where: str) -> list[PartitionSpec]:
    if not isinstance(items, list):
        raise TopologyError(f"{where}: expected a list of partitions")
    return [_partition_spec(item, f"{where}[{i}]") for i, item in enumerate(items)]


def _size_policy(obj: Any, where: str) -> SizePolicy:
    if obj is None:
        return SizePolicy(percent_free=100)
    if isinstance(obj, str):
        return SizePolicy(size=obj)
    obj = _mapping(obj, where)
    if obj.get("size") is None and obj.get("percent_free") is None:
        raise TopologyError(f"{where}: size needs 'size' or 'percent_free'")
    return SizePolicy(
        size=obj.get("size"),
        percent_free=obj.get("percent_free"),
        slack=float(obj.get("slack", 0.05)),
    )


def _volume_spec(obj: Any, where: str) -> VolumeSpec:
    obj = _mapping(obj, where)
    return VolumeSpec(
        name=str(_require(obj, "name", where)),
        size=_size_policy(obj.get("size"), f"{where}.size"),
        fstype=obj.get("fstype", "ext4"),
        mountpoint=obj.get("mountpoint"),
        label=obj.get("label"),
        options=_str_dict(obj.get("options"), f"{where}.options"),
        mount_options=list(obj.get("mount_options") or []),
    )


def _volume_policy(obj: Any, where: str) -> VolumePolicy:
    obj = _mapping(obj or {"kind": "none"}, where)
    kind = obj.get("kind", "lvm")
    if kind not in VOLUME_KINDS:
        raise TopologyError(f"{where}: unknown volume kind {kind!r}")
    group = obj.get("group")
    if kind != "none" and not group:
        raise TopologyError(f"{where}: missing required key 'group'")
    specs = [_volume_spec(v, f"{where}.volumes[{i}]") for i, v in enumerate(obj.get("volumes") or [])]
    if kind == "none" and len(specs) > 1:
        raise TopologyError(f"{where}: kind 'none' carries at most one volume")
    return VolumePolicy(
        kind=kind,
        group=group,
        volumes=specs,
        vdev=obj.get("vdev"),
        pool_options=_str_dict(obj.get("pool_options"), f"{where}.pool_options"),
        dataset_options=_str_dict(obj.get("dataset_options"), f"{where}.dataset_options"),
    )


def _raid_policy(obj: Any, where: str) -> RaidPolicy | None:
    if obj is None:
        return None
    obj = _mapping(obj, where)
    identity = ArrayIdentity(
        name=str(_require(obj, "name", where)),
        homehost=str(_require(obj, "homehost", where)),
    )
    try:
        level = int(obj.get("level", 1))
    except (TypeError, ValueError) as exc:
        raise TopologyError(f"{where}: level must be an integer") from exc
    return RaidPolicy(level=level, identity=identity, devices=obj.get("devices"), metadata=obj.get("metadata"))


def _encryption_policy(obj: Any, where: str) -> EncryptionPolicy | None:
    if obj is None:
        return None
    obj = _mapping(obj, where)
    keyfile = obj.get("keyfile")
    return EncryptionPolicy(
        mapping=str(_require(obj, "mapping", where)),
        keyfile=os.path.expanduser(keyfile) if keyfile else None,
        cipher=obj.get("cipher"),
        generate_keyfile=bool(obj.get("generate_keyfile", False)),
    )


def _device_set(obj: Any, where: str) -> DeviceSet:
    obj = _mapping(obj, where)
    disks = obj.get("disks")
    if disks is not None and not all(isinstance(i, int) for i in disks):
        raise TopologyError(f"{where}.disks: expected a list of disk indices")
    return DeviceSet(
        name=str(_require(obj, "name", where)),
        partition=str(_require(obj, "partition", where)),
        disks=disks,
        raid=_raid_policy(obj.get("raid"), f"{where}.raid"),
        encryption=_encryption_policy(obj.get("encryption"), f"{where}.encryption"),
        volumes=_volume_policy(obj.get("volumes"), f"{where}.volumes"),
    )


def _raw_filesystem(obj: Any, where: str) -> RawFilesystem:
    obj = _mapping(obj, where)
    return RawFilesystem(
        partition=str(_require(obj, "partition", where)),
        disk=int(obj.get("disk", 0)),
        fstype=str(_require(obj, "fstype", where)),
        label=obj.get("label"),
        mountpoint=obj.get("mountpoint"),
        mount_options=list(obj.get("mount_options") or []),
    )


def from_dict(doc: dict, disks: list[str] | None = None, target: str | None = None) -> StorageTopology:
    """Build a ``StorageTopology``; ``disks``/``target`` override the document."""

    doc = _mapping(doc, "topology")
    boot = _mapping(doc.get("boot") or {}, "boot")
    disk_refs = list(disks or doc.get("disks") or [])
    if not disk_refs:
        raise TopologyError("topology: no disks given (set 'disks' or pass --disk)")
    topology = StorageTopology(
        name=str(doc.get("name") or "custom"),
        disks=disk_refs,
        layout=_layout(_require(doc, "layout", "topology"), "layout"),
        device_sets=[_device_set(d, f"device_sets[{i}]") for i, d in enumerate(doc.get("device_sets") or [])],
        raw_filesystems=[
            _raw_filesystem(r, f"raw_filesystems[{i}]") for i, r in enumerate(doc.get("raw_filesystems") or [])
        ],
        boot=BootPolicy(
            legacy=bool(boot.get("legacy", False)),
            uefi=bool(boot.get("uefi", False)),
            esp_size=str(boot.get("esp_size", "512MB")),
        ),
        layouts={str(k): _layout(v, f"layouts[{k}]") for k, v in _mapping(doc.get("layouts") or {}, "layouts").items()},
        target=target or doc.get("target") or "/mnt",
        mdadm_conf=doc.get("mdadm_conf") or "/etc/mdadm/mdadm.conf",
        mdadm_homehost=doc.get("mdadm_homehost"),
    )
    for ds in topology.device_sets:
        for idx in ds.disks or []:
            if not 0 <= idx < len(disk_refs):
                raise TopologyError(f"device set {ds.name}: disk index {idx} out of range for {len(disk_refs)} disks")
    for raw in topology.raw_filesystems:
        if not 0 <= raw.disk < len(disk_refs):
            raise TopologyError(f"raw filesystem {raw.partition}: disk index {raw.disk} out of range")
    return topology


def load_topology(path: str, disks: list[str] | None = None, target: str | None = None) -> StorageTopology:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            doc = json.load(fh)
    except FileNotFoundError as exc:
        raise TopologyError(f"topology file {path} not found") from exc
    except json.JSONDecodeError as exc:
        raise TopologyError(f"topology file {path} is not valid JSON: {exc}") from exc
    return from_dict(doc, disks=disks, target=target)


def list_presets() -> list[str]:
    return sorted(p.stem for p in Path(presets_dir()).glob("*.json"))


def load_preset(name: str, disks: list[str] | None = None, target: str | None = None) -> StorageTopology:
    path = Path(presets_dir()) / f"{name}.json"
    if not path.is_file():
        raise TopologyError(f"unknown preset {name!r}; available: {', '.join(list_presets())}")
    return load_topology(str(path), disks=disks, target=target)
