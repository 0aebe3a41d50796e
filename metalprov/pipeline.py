"""One parameterized provisioning pipeline over a ``StorageTopology``.

Stages run strictly in order, each one consuming the stable device paths
the previous one produced:

    resolve disks -> live-disk guard -> key material -> teardown
    -> [auto-assembly disabled] partition -> arrays -> LUKS -> pools/volumes
    -> mkfs -> identifier refresh -> mount -> persist array identity
"""
from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field, replace

from . import crypt, mounts, partitioning, raid, volumes
from .devices import partition_path, resolve
from .errors import RefuseSafeError, TopologyError
from .executil import trace, warn
from .model import (
    ROLE_PARTITION_TABLE,
    BlockDevice,
    DeviceSet,
    Flags,
    MountEntry,
    MountPlan,
    PartitionTable,
    ProvisionResult,
    StorageTopology,
    VolumePolicy,
    VolumeSpec,
)
from .paths import artifacts_dir
from .planner import plan as plan_partitions
from .safety import require_not_live
from .teardown import teardown


@dataclass
class StackPlan:
    device_set: DeviceSet
    members: list[str]
    array_path: str | None = None
    mapper_path: str | None = None

    @property
    def base(self) -> str:
        """Device the encryption layer (or the volume layer) sits on."""
        return self.array_path or self.members[0]

    @property
    def outputs(self) -> list[str]:
        if self.mapper_path:
            return [self.mapper_path]
        if self.array_path:
            return [self.array_path]
        return list(self.members)


@dataclass
class PoolPlan:
    policy: VolumePolicy
    devices: list[str] = field(default_factory=list)
    volumes: list[VolumeSpec] = field(default_factory=list)


@dataclass
class FilesystemPlan:
    device: str
    fstype: str | None
    label: str | None = None
    mountpoint: str | None = None
    options: list[str] = field(default_factory=list)


@dataclass
class ProvisionPlan:
    topology: StorageTopology
    devices: list[BlockDevice]
    tables: list[PartitionTable]
    stacks: list[StackPlan]
    pools: list[PoolPlan]
    filesystems: list[FilesystemPlan]
    mounts: MountPlan

    def to_dict(self) -> dict:
        return {
            "topology": self.topology.name,
            "target": self.topology.target,
            "disks": [
                {
                    "ref": ref,
                    "path": dev.path,
                    "kernel": dev.kernel_name,
                    "size_bytes": dev.size_bytes,
                    "role": dev.role,
                    "partitions": [
                        {"number": p.number, "name": p.name, "flag": p.flag, "start": p.start_arg, "end": p.end_arg}
                        for p in table.partitions
                    ],
                }
                for ref, dev, table in zip(self.topology.disks, self.devices, self.tables)
            ],
            "device_sets": [
                {
                    "name": s.device_set.name,
                    "members": s.members,
                    "array": s.array_path,
                    "mapping": s.mapper_path,
                }
                for s in self.stacks
            ],
            "pools": [
                {
                    "kind": p.policy.kind,
                    "name": p.policy.group,
                    "devices": p.devices,
                    "volumes": [v.name for v in p.volumes],
                }
                for p in self.pools
            ],
            "filesystems": [fs.__dict__ for fs in self.filesystems],
            "mounts": [{"source": e.source, "target": e.target, "fstype": e.fstype} for e in self.mounts.entries],
        }


def _member_paths(ds: DeviceSet, devices: list[BlockDevice], tables: list[PartitionTable]) -> list[str]:
    indices = ds.disks if ds.disks is not None else range(len(devices))
    members = []
    for idx in indices:
        part = tables[idx].by_name(ds.partition)
        if part is None:
            raise TopologyError(
                f"device set {ds.name}: {devices[idx].path} has no partition named {ds.partition!r}"
            )
        members.append(partition_path(devices[idx].path, part.number))
    return members


def build_plan(topology: StorageTopology, devices: list[BlockDevice]) -> ProvisionPlan:
    """Compute everything a run will do without touching any device."""

    if len(devices) != len(topology.disks):
        raise TopologyError(f"topology lists {len(topology.disks)} disks, got {len(devices)} devices")
    devices = [replace(dev, role=ROLE_PARTITION_TABLE) for dev in devices]
    tables = [
        plan_partitions(
            dev,
            topology.layout_for(ref, idx),
            legacy_boot=topology.boot.legacy,
            uefi_boot=topology.boot.uefi,
            esp_size=topology.boot.esp_size,
        )
        for idx, (ref, dev) in enumerate(zip(topology.disks, devices))
    ]

    stacks: list[StackPlan] = []
    for ds in topology.device_sets:
        members = _member_paths(ds, devices, tables)
        if not ds.raid and len(members) > 1 and (ds.encryption or ds.volumes.kind == "none"):
            raise TopologyError(
                f"device set {ds.name}: {len(members)} partitions need a raid policy to act as one device"
            )
        stacks.append(
            StackPlan(
                device_set=ds,
                members=members,
                array_path=ds.raid.identity.device_path if ds.raid else None,
                mapper_path=f"/dev/mapper/{ds.encryption.mapping}" if ds.encryption else None,
            )
        )

    pools: dict[tuple[str, str], PoolPlan] = {}
    filesystems: list[FilesystemPlan] = []
    for stack in stacks:
        policy = stack.device_set.volumes
        if policy.kind == "none":
            for spec in policy.volumes:
                filesystems.append(
                    FilesystemPlan(stack.outputs[0], spec.fstype, spec.label, spec.mountpoint, spec.mount_options)
                )
            continue
        pool = pools.setdefault((policy.kind, policy.group), PoolPlan(policy))
        pool.devices += stack.outputs
        pool.volumes += policy.volumes

    for pool in pools.values():
        group = pool.policy.group
        for spec in pool.volumes:
            if pool.policy.kind == "lvm":
                filesystems.append(
                    FilesystemPlan(volumes.lv_path(group, spec.name), spec.fstype, spec.label, spec.mountpoint, spec.mount_options)
                )
            else:
                filesystems.append(FilesystemPlan(f"{group}/{spec.name}", "zfs", None, spec.mountpoint, spec.mount_options))

    for raw in topology.raw_filesystems:
        part = tables[raw.disk].by_name(raw.partition)
        if part is None:
            raise TopologyError(f"raw filesystem: {devices[raw.disk].path} has no partition named {raw.partition!r}")
        filesystems.append(
            FilesystemPlan(
                partition_path(devices[raw.disk].path, part.number), raw.fstype, raw.label, raw.mountpoint, raw.mount_options
            )
        )

    labels = [fs.label for fs in filesystems if fs.label]
    if len(labels) != len(set(labels)):
        raise TopologyError(f"filesystem labels must be unique, got {labels}")

    entries = []
    for fs in filesystems:
        if not fs.mountpoint or not fs.fstype:
            continue
        source = mounts.label_path(fs.label) if fs.label and fs.fstype != "zfs" else fs.device
        entries.append(MountEntry(source, fs.mountpoint, fs.fstype, tuple(fs.options)))
    mount_order = mounts.validate_mount_plan(MountPlan(entries).ordered())

    return ProvisionPlan(
        topology=topology,
        devices=devices,
        tables=tables,
        stacks=stacks,
        pools=list(pools.values()),
        filesystems=filesystems,
        mounts=mount_order,
    )


def write_artifact(name: str, data: dict) -> str:
    stamp = time.strftime("%Y%m%dT%H%M%SZ", time.gmtime())
    path = os.path.join(artifacts_dir(), f"{name}-{stamp}.json")
    payload = dict(data)
    payload["artifact"] = path
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, default=str)
    except OSError as exc:
        warn("pipeline.artifact_failed", path=path, error=str(exc))
        return ""
    return path


def provision(topology: StorageTopology, flags: Flags) -> ProvisionResult:
    if not (flags.assume_yes or flags.dry_run):
        raise RefuseSafeError(
            "provisioning wipes every listed disk; confirm with --yes",
            state={"disks": topology.disks},
        )
    dry = flags.dry_run
    devices = [resolve(ref, dry_run=dry) for ref in topology.disks]
    require_not_live(devices)
    plan = build_plan(topology, devices)
    # key material is checked before anything destructive happens
    keys = {
        s.device_set.name: crypt.read_key_material(s.device_set.encryption, dry_run=dry)
        for s in plan.stacks
        if s.device_set.encryption
    }

    result = ProvisionResult(topology=topology.name, target=topology.target, devices=[d.path for d in devices])
    result.teardown = [o.to_dict() for o in teardown(topology, dry_run=dry)]

    with raid.AutoAssemblyPolicy(topology.mdadm_conf, keep=flags.keep_autoassembly_policy, dry_run=dry):
        for dev, table in zip(devices, plan.tables):
            handles = partitioning.apply(dev, table, dry_run=dry)
            result.partitions[dev.path] = [h.path for h in handles]
            partitioning.verify_layout(dev.path, dry_run=dry)

        for stack in plan.stacks:
            ds = stack.device_set
            if ds.raid:
                array = raid.build_array(
                    stack.members,
                    ds.raid.level,
                    ds.raid.devices or len(stack.members),
                    ds.raid.identity,
                    metadata=ds.raid.metadata,
                    dry_run=dry,
                )
                result.arrays.append(array)
            if ds.encryption:
                key = keys[ds.name]
                ref = crypt.format(stack.base, key, ds.encryption.cipher, dry_run=dry)
                crypt.open(ref, key, ds.encryption.mapping, dry_run=dry)
                result.mappings.append(ref)
        if result.arrays:
            raid.disable_resync(dry_run=dry)

        for pool_plan in plan.pools:
            pool = volumes.create_pool(pool_plan.devices, pool_plan.policy, dry_run=dry)
            result.pools.append(pool)
            for spec in pool_plan.volumes:
                volumes.create_volume(pool, spec.name, spec.size, spec.options, dry_run=dry)

        for fs in plan.filesystems:
            if fs.fstype:
                mounts.format_filesystem(fs.device, fs.fstype, fs.label, dry_run=dry)
        formatted = [fs for fs in plan.filesystems if fs.fstype and fs.fstype != "zfs"]
        mounts.refresh_identifiers(
            [fs.label for fs in formatted if fs.label],
            dry_run=dry,
            devices=[fs.device for fs in formatted],
        )
        if topology.boot.uefi:
            mounts.mount_efivars(dry_run=dry)
        result.mounts = mounts.mount_plan(plan.mounts, topology.target, dry_run=dry)

        if result.arrays:
            result.identity_record = raid.persist_identity(
                topology.target, result.arrays, homehost=topology.mdadm_homehost, dry_run=dry
            )

    trace(
        "pipeline.done",
        topology=topology.name,
        arrays=[a.path for a in result.arrays],
        mounts=[m.target for m in result.mounts],
        dry_run=dry,
    )
    result.artifact = write_artifact(f"provision-{topology.name}", result.to_dict())
    return result
