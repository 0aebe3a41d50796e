import json
import os

import pytest

from metalprov import pipeline, raid
from metalprov.errors import KeyMaterialMissingError, RefuseSafeError, TopologyError
from metalprov.model import ArrayIdentity, Flags
from metalprov.topology import from_dict, load_preset

from conftest import DISK_A, DISK_B, DISK_C, DISK_D

GO = Flags(assume_yes=True)


def _preset(name, disks, tmp_path, **overrides):
    topo = load_preset(name, disks=disks, target=str(tmp_path / "mnt"))
    topo.mdadm_conf = str(tmp_path / "rescue" / "mdadm.conf")
    for key, value in overrides.items():
        setattr(topo, key, value)
    return topo


def _mirror_root(tmp_path):
    doc = {
        "name": "mirror-root",
        "boot": {"legacy": True},
        "layout": [{"name": "root-partition"}],
        "device_sets": [{
            "name": "root",
            "partition": "root-partition",
            "raid": {"level": 1, "name": "root0", "homehost": "hetzner"},
            "volumes": {"kind": "none", "volumes": [{"name": "root", "fstype": "ext4", "label": "root", "mountpoint": "/"}]},
        }],
        "mdadm_conf": str(tmp_path / "rescue" / "mdadm.conf"),
    }
    return from_dict(doc, disks=[DISK_A, DISK_B], target=str(tmp_path / "mnt"))


def _layout(host):
    return sorted(host.mount_table)


def test_confirmation_required(host, tmp_path):
    topo = _preset("hetzner-dedicated", [DISK_A, DISK_B], tmp_path)
    with pytest.raises(RefuseSafeError):
        pipeline.provision(topo, Flags())
    assert host.commands == []


def test_mirror_root_leaves_one_root_and_no_stale_mappings(host, tmp_path):
    host.add_stale_array("old0", [f"{DISK_A}-part2", f"{DISK_B}-part2"])
    host.add_stale_mapping("old-crypt", "/dev/md/old0")
    topo = _mirror_root(tmp_path)

    result = pipeline.provision(topo, GO)

    roots = [m for m in result.mounts if m.target == topo.target]
    assert len(roots) == 1
    assert roots[0].source == "/dev/disk/by-label/root"
    assert host.mappings == {}
    assert list(host.arrays) == ["/dev/md/root0"]
    assert host.arrays["/dev/md/root0"]["members"] == [f"{DISK_A}-part2", f"{DISK_B}-part2"]
    assert result.mappings == []
    assert [a.identity.name for a in result.arrays] == ["root0"]


def test_rerun_is_idempotent(host, tmp_path):
    topo = _preset("hetzner-dedicated", [DISK_A, DISK_B], tmp_path)
    first = pipeline.provision(topo, GO)
    layout = _layout(host)
    second = pipeline.provision(topo, GO)

    assert _layout(host) == layout
    assert [(m.source, m.target) for m in second.mounts] == [(m.source, m.target) for m in first.mounts]
    assert list(host.arrays) == ["/dev/md/root0"]
    assert list(host.vgs) == ["vg0"]
    assert all(step["ok"] for step in second.teardown)


def test_array_identity_survives_reboot(host, tmp_path):
    topo = _preset("hetzner-dedicated", [DISK_A, DISK_B], tmp_path)
    result = pipeline.provision(topo, GO)

    record = result.identity_record
    assert record == os.path.join(topo.target, "etc", "mdadm.conf")
    identity = ArrayIdentity("root0", "hetzner")
    built = result.arrays[0]
    # resolvable right after creation
    assert built.path == "/dev/md/root0"
    # and after a simulated reboot, from the installed system's record alone
    config = raid.read_identity_config(record)
    assert raid.resolve_array_path(identity, config) == built.path
    assert config["arrays"][0]["UUID"] == built.uuid


def test_autoassembly_policy_restored_after_run(host, tmp_path):
    topo = _preset("hetzner-dedicated", [DISK_A, DISK_B], tmp_path)
    conf = tmp_path / "rescue" / "mdadm.conf"
    conf.parent.mkdir()
    conf.write_text("HOMEHOST <system>\n", encoding="utf-8")

    pipeline.provision(topo, GO)
    assert conf.read_text(encoding="utf-8") == "HOMEHOST <system>\n"

    pipeline.provision(topo, Flags(assume_yes=True, keep_autoassembly_policy=True))
    assert conf.read_text(encoding="utf-8") == raid.IGNORE_ALL_POLICY


def test_ovh_layout(host, tmp_path):
    key = tmp_path / "luks.key"
    key.write_bytes(b"s" * 64)
    topo = _preset("ovh-dedicated", [DISK_A, DISK_B, DISK_C, DISK_D], tmp_path)
    for ds in topo.device_sets:
        if ds.encryption:
            ds.encryption.keyfile = str(key)

    result = pipeline.provision(topo, GO)
    target = topo.target
    assert [m.target for m in result.mounts] == [
        target, f"{target}/data", f"{target}/boot/ESP0", f"{target}/boot/ESP1",
    ]
    assert sorted(host.mappings) == ["data0-unencrypted", "data1-unencrypted"]
    assert host.vgs == {"vg0": ["/dev/mapper/data0-unencrypted", "/dev/mapper/data1-unencrypted"]}
    assert len(result.partitions[DISK_A]) == 3 and len(result.partitions[DISK_C]) == 2

    again = pipeline.provision(topo, GO)
    assert [m.target for m in again.mounts] == [m.target for m in result.mounts]
    assert sorted(host.mappings) == ["data0-unencrypted", "data1-unencrypted"]


def test_missing_key_fails_before_anything_destructive(host, tmp_path):
    topo = _preset("ovh-dedicated", [DISK_A, DISK_B, DISK_C, DISK_D], tmp_path)
    for ds in topo.device_sets:
        if ds.encryption:
            ds.encryption.keyfile = str(tmp_path / "absent.key")
    with pytest.raises(KeyMaterialMissingError):
        pipeline.provision(topo, GO)
    assert not host.ran(["parted"])
    assert not host.ran(["mdadm"])


def test_zfs_uefi_layout(host, tmp_path):
    topo = _preset("hetzner-zfs-uefi", [DISK_A, DISK_B], tmp_path)
    result = pipeline.provision(topo, GO)

    target = topo.target
    assert [(m.source, m.target) for m in result.mounts] == [
        ("root_pool/root/nixos", target),
        ("root_pool/home", f"{target}/home"),
        ("/dev/disk/by-label/ESP", f"{target}/boot/efi"),
        ("root_pool/postgres", f"{target}/var/lib/postgres"),
    ]
    assert host.datasets == {
        "root_pool/root", "root_pool/root/nixos", "root_pool/home", "root_pool/reserved", "root_pool/postgres",
    }
    assert host.ran(["mkfs.fat", "-F", "32", "-n", "ESP", "/dev/md/boot_efi"])

    pipeline.provision(topo, GO)
    assert host.pools == {"root_pool"}


def test_single_disk_cloud(host, tmp_path):
    topo = _preset("hetzner-cloud", [DISK_A], tmp_path)
    result = pipeline.provision(topo, GO)
    assert result.arrays == [] and result.identity_record is None
    assert host.ran(["mkfs.ext4", "-F", "-L", "root", f"{DISK_A}-part2"])
    assert [m.target for m in result.mounts] == [topo.target]


def test_dry_run_changes_nothing(host, tmp_path):
    topo = _preset("hetzner-dedicated", [DISK_A, DISK_B], tmp_path)
    result = pipeline.provision(topo, Flags(dry_run=True))
    assert host.arrays == {} and host.mount_table == []
    assert not os.path.exists(topo.mdadm_conf)
    with open(result.artifact, encoding="utf-8") as fh:
        assert json.load(fh)["topology"] == topo.name


def test_plan_rejects_duplicate_labels_and_unraided_sets(host, tmp_path):
    topo = _preset("hetzner-dedicated", [DISK_A, DISK_B], tmp_path)
    devices = [pipeline.resolve(ref) for ref in topo.disks]

    topo.device_sets[0].raid = None
    topo.device_sets[0].volumes.kind = "none"
    with pytest.raises(TopologyError):
        pipeline.build_plan(topo, devices)

    topo = _preset("ovh-dedicated", [DISK_A, DISK_B, DISK_C, DISK_D], tmp_path)
    topo.raw_filesystems[1].label = "esp0"
    devices = [pipeline.resolve(ref) for ref in topo.disks]
    with pytest.raises(TopologyError):
        pipeline.build_plan(topo, devices)


def test_plan_to_dict(host, tmp_path):
    topo = _preset("hetzner-dedicated", [DISK_A, DISK_B], tmp_path)
    plan = pipeline.build_plan(topo, [pipeline.resolve(ref) for ref in topo.disks])
    data = plan.to_dict()
    assert data["disks"][0]["partitions"][0]["flag"] == "bios_grub"
    assert data["device_sets"][0]["array"] == "/dev/md/root0"
    assert data["pools"] == [
        {"kind": "lvm", "name": "vg0", "devices": ["/dev/md/root0"], "volumes": ["root0"]},
    ]
    assert data["mounts"] == [{"source": "/dev/disk/by-label/root", "target": "/", "fstype": "ext4"}]


def test_unlabeled_filesystem_waits_for_its_uuid(host, tmp_path):
    doc = {
        "name": "bare-root",
        "boot": {"legacy": True},
        "layout": [{"name": "root-partition"}],
        "raw_filesystems": [{"partition": "root-partition", "disk": 0, "fstype": "ext4", "mountpoint": "/"}],
        "mdadm_conf": str(tmp_path / "rescue" / "mdadm.conf"),
    }
    topo = from_dict(doc, disks=[DISK_A], target=str(tmp_path / "mnt"))
    root = f"{DISK_A}-part2"

    result = pipeline.provision(topo, GO)
    first = host.fs_uuids[root]
    assert f"/dev/disk/by-uuid/{first}" in host.waited
    assert [(m.source, m.target) for m in result.mounts] == [(root, topo.target)]

    pipeline.provision(topo, GO)
    assert host.fs_uuids[root] != first
    assert f"/dev/disk/by-uuid/{host.fs_uuids[root]}" in host.waited
