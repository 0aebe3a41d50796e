"""Partition planning: turn a layout of specs into concrete byte ranges.

Sizes follow parted's conventions: ``MB``/``GB`` are decimal, ``MiB``/``GiB``
are binary, a bare number is megabytes and ``N%`` is a fraction of the disk.
The reserved end marker ``100%`` means "everything that is left" and may only
appear on the last partition.
"""
from __future__ import annotations

import re

from .errors import InvalidLayoutError
from .executil import trace
from .model import REMAINDER, BlockDevice, PartitionSpec, PartitionTable, PlannedPartition

MB = 1_000_000

_UNITS = {
    "B": 1,
    "KB": 10**3,
    "MB": 10**6,
    "GB": 10**9,
    "TB": 10**12,
    "KIB": 2**10,
    "MIB": 2**20,
    "GIB": 2**30,
    "TIB": 2**40,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z%]*)\s*$")

BOOT_FLAGS = ("bios_grub", "esp")

BIOS_BOOT_NAME = "BIOS-boot-partition"
ESP_NAME = "EFI-system-partition"


def parse_size(expr: str | int | float, capacity: int) -> int:
    if isinstance(expr, bool):
        raise InvalidLayoutError(f"unparseable size {expr!r}")
    # numbers from JSON read like bare strings: megabytes
    m = _SIZE_RE.match(str(expr))
    if not m:
        raise InvalidLayoutError(f"unparseable size {expr!r}")
    value = float(m.group(1))
    unit = m.group(2).upper() or "MB"
    if unit == "%":
        if value > 100:
            raise InvalidLayoutError(f"percentage {expr!r} exceeds 100%")
        return int(capacity * value / 100)
    if unit not in _UNITS:
        raise InvalidLayoutError(f"unknown size unit in {expr!r}")
    return int(value * _UNITS[unit])


def _with_boot_partitions(
    specs: list[PartitionSpec], legacy_boot: bool, uefi_boot: bool, esp_size: str, capacity: int
) -> list[PartitionSpec]:
    leading = 0
    while leading < len(specs) and specs[leading].flag in BOOT_FLAGS:
        leading += 1
    for spec in specs[leading:]:
        if spec.flag in BOOT_FLAGS:
            raise InvalidLayoutError(
                f"{spec.flag} partition {spec.name!r} must precede all data partitions"
            )
    head = list(specs[:leading])
    present = {s.flag for s in head}
    if uefi_boot and "esp" not in present:
        head.append(PartitionSpec(ESP_NAME, "esp", size=esp_size))
    if legacy_boot and "bios_grub" not in present:
        following = head + list(specs[leading:])
        pinned = following[0] if following and following[0].start is not None else None
        if pinned is not None and parse_size(pinned.start, capacity) < 2 * MB:
            raise InvalidLayoutError(
                f"legacy boot puts {BIOS_BOOT_NAME} at 1MB-2MB, but {pinned.flag} partition {pinned.name!r} "
                f"starts at {pinned.start}; start it at 2MB or declare the bios_grub partition yourself",
                state={"partition": pinned.name, "start": pinned.start},
            )
        head.insert(0, PartitionSpec(BIOS_BOOT_NAME, "bios_grub", "1MB", "2MB"))
    # bios_grub stays first when both boot modes are requested
    head.sort(key=lambda s: 0 if s.flag == "bios_grub" else 1)
    return head + list(specs[leading:])


def plan(
    device: BlockDevice,
    specs: list[PartitionSpec],
    legacy_boot: bool = False,
    uefi_boot: bool = False,
    esp_size: str = "512MB",
) -> PartitionTable:
    """Compute partition boundaries for ``device``.

    A spec without ``start`` begins where the previous one ended (1MB for the
    first partition).  ``end`` is absolute, ``size`` is relative to the start.
    Raises ``InvalidLayoutError`` on overlap, overflow, a misplaced remainder
    marker or a boot partition that is not at the front.
    """

    capacity = device.size_bytes
    full = _with_boot_partitions(specs, legacy_boot, uefi_boot, esp_size, capacity)
    if not full:
        raise InvalidLayoutError(f"empty partition layout for {device.path}")
    planned: list[PlannedPartition] = []
    prev_end = MB
    for idx, spec in enumerate(full):
        last = idx == len(full) - 1
        start = parse_size(spec.start, capacity) if spec.start is not None else prev_end
        if start < prev_end:
            raise InvalidLayoutError(
                f"partition {spec.name!r} starts at {start} inside the previous partition (ends {prev_end})",
                state={"device": device.path, "partition": spec.name},
            )
        if spec.remainder:
            if not last:
                raise InvalidLayoutError(
                    f"only the last partition may use the remainder marker {REMAINDER!r}; {spec.name!r} is not last",
                    state={"device": device.path, "partition": spec.name},
                )
            end = capacity
        elif spec.size is not None:
            end = start + parse_size(spec.size, capacity)
        else:
            end = parse_size(spec.end, capacity)
        if end <= start:
            raise InvalidLayoutError(
                f"partition {spec.name!r} ends at {end}, not after its start {start}",
                state={"device": device.path, "partition": spec.name},
            )
        if end > capacity:
            raise InvalidLayoutError(
                f"partition {spec.name!r} ends at {end}, beyond the {capacity} bytes of {device.path}",
                state={"device": device.path, "partition": spec.name, "capacity": capacity},
            )
        planned.append(PlannedPartition(idx + 1, spec.name, spec.flag, start, end, remainder=spec.remainder))
        prev_end = end
    trace(
        "planner.plan",
        device=device.path,
        capacity=capacity,
        partitions=[(p.number, p.name, p.start_arg, p.end_arg) for p in planned],
    )
    return PartitionTable(device=device, partitions=planned)
