from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

REMAINDER = "100%"

ROLE_UNASSIGNED = "unassigned"
ROLE_PARTITION_TABLE = "partition-table"
ROLE_MEMBER = "member"

PARTITION_FLAGS = ("bios_grub", "esp", "data", "raid", "lvm")


@dataclass
class Flags:
    plan: bool = False
    dry_run: bool = False
    assume_yes: bool = False
    keep_autoassembly_policy: bool = False


@dataclass(frozen=True)
class BlockDevice:
    path: str
    kernel_name: str
    size_bytes: int
    role: str = ROLE_UNASSIGNED

    @property
    def kernel_path(self) -> str:
        return f"/dev/{self.kernel_name}"


@dataclass
class PartitionSpec:
    name: str
    flag: str = "data"
    start: Optional[str] = None
    end: Optional[str] = None
    size: Optional[str] = None

    @property
    def remainder(self) -> bool:
        return self.size is None and self.end in (None, REMAINDER)


@dataclass
class PlannedPartition:
    number: int
    name: str
    flag: str
    start_bytes: int
    end_bytes: int
    remainder: bool = False

    @property
    def start_arg(self) -> str:
        return _parted_unit(self.start_bytes)

    @property
    def end_arg(self) -> str:
        if self.remainder:
            return REMAINDER
        return _parted_unit(self.end_bytes)


def _parted_unit(value: int) -> str:
    # Whole megabytes keep parted's --align optimal effective.
    if value % 1_000_000 == 0:
        return f"{value // 1_000_000}MB"
    return f"{value}B"


@dataclass
class PartitionTable:
    device: BlockDevice
    partitions: list[PlannedPartition]
    label: str = "gpt"

    def by_name(self, name: str) -> PlannedPartition | None:
        for part in self.partitions:
            if part.name == name:
                return part
        return None


@dataclass(frozen=True)
class PartitionHandle:
    number: int
    name: str
    flag: str
    path: str


@dataclass(frozen=True)
class ArrayIdentity:
    name: str
    homehost: str

    @property
    def device_path(self) -> str:
        return f"/dev/md/{self.name}"

    @property
    def foreign_path(self) -> str:
        return f"/dev/md/{self.homehost}:{self.name}"


class ArrayState(Enum):
    ABSENT = "absent"
    STOPPED = "stopped"
    WIPED = "superblock-wiped"
    CREATED = "created"
    ASSEMBLED = "assembled"


@dataclass
class ArrayDevice:
    identity: ArrayIdentity
    path: str
    members: list[str]
    level: int
    state: ArrayState = ArrayState.ABSENT
    metadata: Optional[str] = None
    uuid: Optional[str] = None


@dataclass
class RaidPolicy:
    level: int
    identity: ArrayIdentity
    devices: Optional[int] = None
    metadata: Optional[str] = None


@dataclass
class EncryptionPolicy:
    mapping: str
    keyfile: Optional[str] = None
    cipher: Optional[str] = None
    generate_keyfile: bool = False


@dataclass
class EncryptedVolumeRef:
    device: str
    keyfile: str
    mapping: Optional[str] = None
    uuid: Optional[str] = None

    @property
    def mapper_path(self) -> str | None:
        if not self.mapping:
            return None
        return f"/dev/mapper/{self.mapping}"


@dataclass
class SizePolicy:
    size: Optional[str] = None
    percent_free: Optional[float] = None
    slack: float = 0.05


@dataclass
class VolumeSpec:
    name: str
    size: SizePolicy = field(default_factory=lambda: SizePolicy(percent_free=100))
    fstype: Optional[str] = "ext4"
    mountpoint: Optional[str] = None
    label: Optional[str] = None
    options: dict[str, str] = field(default_factory=dict)
    mount_options: list[str] = field(default_factory=list)


@dataclass
class VolumePolicy:
    kind: str = "lvm"
    group: Optional[str] = None
    volumes: list[VolumeSpec] = field(default_factory=list)
    vdev: Optional[str] = None
    pool_options: dict[str, str] = field(default_factory=dict)
    dataset_options: dict[str, str] = field(default_factory=dict)


@dataclass
class DeviceSet:
    name: str
    partition: str
    disks: Optional[list[int]] = None
    raid: Optional[RaidPolicy] = None
    encryption: Optional[EncryptionPolicy] = None
    volumes: VolumePolicy = field(default_factory=VolumePolicy)


@dataclass
class RawFilesystem:
    partition: str
    disk: int
    fstype: str
    label: Optional[str] = None
    mountpoint: Optional[str] = None
    mount_options: list[str] = field(default_factory=list)


@dataclass
class BootPolicy:
    legacy: bool = False
    uefi: bool = False
    esp_size: str = "512MB"


@dataclass
class StorageTopology:
    name: str
    disks: list[str]
    layout: list[PartitionSpec]
    device_sets: list[DeviceSet] = field(default_factory=list)
    raw_filesystems: list[RawFilesystem] = field(default_factory=list)
    boot: BootPolicy = field(default_factory=BootPolicy)
    layouts: dict[str, list[PartitionSpec]] = field(default_factory=dict)
    target: str = "/mnt"
    mdadm_conf: str = "/etc/mdadm/mdadm.conf"
    mdadm_homehost: Optional[str] = None

    def layout_for(self, disk_ref: str, index: int) -> list[PartitionSpec]:
        # per-disk overrides are keyed by reference or by position
        if disk_ref in self.layouts:
            return self.layouts[disk_ref]
        return self.layouts.get(str(index), self.layout)

    def mapping_names(self) -> list[str]:
        return [ds.encryption.mapping for ds in self.device_sets if ds.encryption]

    def volume_groups(self) -> list[str]:
        return [
            ds.volumes.group for ds in self.device_sets
            if ds.volumes.kind == "lvm" and ds.volumes.group
        ]

    def zfs_pools(self) -> list[str]:
        return [
            ds.volumes.group for ds in self.device_sets
            if ds.volumes.kind == "zfs" and ds.volumes.group
        ]


@dataclass
class Pool:
    kind: str
    name: str
    devices: list[str]


@dataclass
class Volume:
    pool: Pool
    name: str
    path: str
    size_arg: Optional[str] = None


@dataclass(frozen=True)
class MountEntry:
    source: str
    target: str
    fstype: Optional[str] = None
    options: tuple[str, ...] = ()


@dataclass
class MountPlan:
    entries: list[MountEntry] = field(default_factory=list)

    def ordered(self) -> "MountPlan":
        """Return a copy sorted parents-first; ties keep their input order."""

        def depth(entry: MountEntry) -> int:
            stripped = entry.target.strip("/")
            return 0 if not stripped else stripped.count("/") + 1

        return MountPlan(sorted(self.entries, key=depth))


@dataclass(frozen=True)
class MountedFilesystem:
    source: str
    target: str
    fstype: Optional[str]
    label: Optional[str] = None


@dataclass
class ProvisionResult:
    topology: str
    target: str
    devices: list[str] = field(default_factory=list)
    partitions: dict[str, list[str]] = field(default_factory=dict)
    arrays: list[ArrayDevice] = field(default_factory=list)
    mappings: list[EncryptedVolumeRef] = field(default_factory=list)
    pools: list[Pool] = field(default_factory=list)
    mounts: list[MountedFilesystem] = field(default_factory=list)
    identity_record: Optional[str] = None
    teardown: list[dict] = field(default_factory=list)
    artifact: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        for array in data["arrays"]:
            array["state"] = array["state"].value
        return data
