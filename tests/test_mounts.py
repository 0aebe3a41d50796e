from subprocess import CalledProcessError

import pytest

from metalprov import mounts
from metalprov.errors import (
    DeviceNotReadyError,
    FormatFailedError,
    LabelNotReadyError,
    MountOrderError,
    ResourceBusyError,
)
from metalprov.model import MountEntry, MountPlan


def test_root_mounts_before_home():
    plan = MountPlan([
        MountEntry("/dev/disk/by-label/home", "/home", "ext4"),
        MountEntry("/dev/disk/by-label/root", "/", "ext4"),
    ]).ordered()
    assert [e.target for e in mounts.validate_mount_plan(plan).entries] == ["/", "/home"]


def test_child_before_parent_is_rejected():
    plan = MountPlan([
        MountEntry("/dev/disk/by-label/home", "/home", "ext4"),
        MountEntry("/dev/disk/by-label/root", "/", "ext4"),
    ])
    with pytest.raises(MountOrderError) as exc:
        mounts.validate_mount_plan(plan)
    assert exc.value.state == {"child": "/home", "parent": "/"}

    with pytest.raises(MountOrderError):
        mounts.validate_mount_plan(MountPlan([MountEntry("a", "relative/path")]))
    with pytest.raises(MountOrderError):
        mounts.validate_mount_plan(MountPlan([MountEntry("a", "/data"), MountEntry("b", "/data/")]))


def test_siblings_keep_input_order():
    plan = MountPlan([
        MountEntry("x", "/boot/ESP1"),
        MountEntry("y", "/data"),
        MountEntry("z", "/boot/ESP0"),
        MountEntry("r", "/"),
    ]).ordered()
    assert [e.target for e in plan.entries] == ["/", "/data", "/boot/ESP1", "/boot/ESP0"]


def test_mount_plan_mounts_under_root(host, tmp_path):
    root = str(tmp_path / "mnt")
    plan = MountPlan([
        MountEntry("/dev/disk/by-label/root", "/", "ext4"),
        MountEntry("root_pool/home", "/home", "zfs", ("noatime",)),
    ])
    mounted = mounts.mount_plan(plan, root)

    assert [m.target for m in mounted] == [root, f"{root}/home"]
    assert mounted[0].label == "root" and mounted[1].label is None
    assert host.ran(["mount", "-t", "zfs", "-o", "noatime", "root_pool/home", f"{root}/home"])
    assert host.ran(["mkdir", "-p", f"{root}/home"])


def test_format_filesystem_commands(host):
    host.nodes.update({"/dev/md/root0", "/dev/sda1"})
    mounts.format_filesystem("/dev/md/root0", "ext4", "root")
    mounts.format_filesystem("/dev/sda1", "vfat", "esp0")
    mounts.format_filesystem("root_pool/home", "zfs")

    assert host.ran(["mkfs.ext4", "-F", "-L", "root", "/dev/md/root0"])
    assert host.ran(["mkfs.fat", "-F", "32", "-n", "esp0", "/dev/sda1"])
    assert not host.ran(["mkfs.zfs"])
    with pytest.raises(FormatFailedError):
        mounts.format_filesystem("/dev/sda1", "ntfs")
    with pytest.raises(FormatFailedError):
        mounts.format_filesystem("/dev/missing", "ext4")


def test_format_refuses_mounted_or_held_device(host):
    host.nodes.add("/dev/md/root0")
    host.mount_table.append(("/dev/md/root0", "/mnt", "ext4"))
    with pytest.raises(ResourceBusyError) as exc:
        mounts.format_filesystem("/dev/md/root0", "ext4", "root")
    assert exc.value.state["mountpoints"] == ["/mnt"]

    host.mount_table.clear()
    host.add_stale_mapping("data0-unencrypted", "/dev/md/root0")
    with pytest.raises(ResourceBusyError):
        mounts.format_filesystem("/dev/md/root0", "ext4", "root")


def test_refresh_identifiers_waits_for_labels(host):
    host.nodes.add("/dev/md/root0")
    mounts.format_filesystem("/dev/md/root0", "ext4", "root")
    assert mounts.refresh_identifiers(["root"]) == ["/dev/disk/by-label/root"]
    with pytest.raises(LabelNotReadyError):
        mounts.refresh_identifiers(["never-made"])


def test_refresh_identifiers_waits_for_new_uuid(host, monkeypatch):
    host.nodes.add("/dev/md/root0")
    mounts.format_filesystem("/dev/md/root0", "ext4")
    first = mounts.refresh_identifiers([], devices=["/dev/md/root0"])
    assert len(first) == 1 and first[0].startswith("/dev/disk/by-uuid/")

    # reformatting keeps the label link but changes the UUID
    mounts.format_filesystem("/dev/md/root0", "ext4", "root")
    monkeypatch.setattr(mounts, "udev_trigger", lambda: None)
    with pytest.raises(LabelNotReadyError):
        mounts.refresh_identifiers(["root"], devices=["/dev/md/root0"])

    monkeypatch.setattr(mounts, "udev_trigger", host.udev_trigger)
    label, uuid = mounts.refresh_identifiers(["root"], devices=["/dev/md/root0"])
    assert label == "/dev/disk/by-label/root"
    assert uuid != first[0] and uuid in host.nodes


def test_format_and_mount_unlabeled_waits_for_uuid(host, tmp_path):
    host.nodes.add("/dev/md/root0")
    mounted = mounts.format_and_mount("/dev/md/root0", "ext4", "/", root=str(tmp_path))
    assert mounted.source == "/dev/md/root0"
    link = f"{mounts.BY_UUID}/{host.fs_uuids['/dev/md/root0']}"
    assert [p for p in host.waited if p.startswith(mounts.BY_UUID)] == [link]


def test_format_and_mount(host, tmp_path):
    host.nodes.add("/dev/mapper/vg0-root0")
    mounted = mounts.format_and_mount("/dev/mapper/vg0-root0", "ext4", "/", label="root", root=str(tmp_path))
    assert mounted.source == "/dev/disk/by-label/root"
    assert host.mounted_targets() == [str(tmp_path)]


def test_mount_failures_use_error_kinds(host, monkeypatch, tmp_path):
    plan = MountPlan([MountEntry("/dev/disk/by-label/root", "/", "ext4")])
    host.mount_table.append(("/dev/sdz1", str(tmp_path), "ext4"))
    with pytest.raises(ResourceBusyError) as exc:
        mounts.mount_plan(plan, str(tmp_path))
    assert exc.value.state["target"] == str(tmp_path)

    def missing(cmd, **kwargs):
        if cmd[0] == "mount":
            raise CalledProcessError(32, cmd, "", "mount: /mnt: special device /dev/disk/by-label/root does not exist.")
        return host.run(cmd, **kwargs)

    monkeypatch.setattr(mounts, "run", missing)
    with pytest.raises(DeviceNotReadyError):
        mounts.mount_plan(plan, "/mnt")


def test_unmount_all_is_recursive(host):
    host.mount_table += [("a", "/mnt", "ext4"), ("b", "/mnt/home", "ext4"), ("c", "/srv", "ext4")]
    assert mounts.unmount_all("/mnt").rc == 0
    assert host.mounted_targets() == ["/srv"]
    assert mounts.unmount_all("/mnt").rc == 32


def test_mount_efivars(host, tmp_path, monkeypatch):
    assert mounts.mount_efivars() is False

    efivars = tmp_path / "efivars"
    efivars.mkdir()
    monkeypatch.setattr(mounts, "EFIVARS", str(efivars))
    assert mounts.mount_efivars() is True
    assert mounts.mount_efivars() is False
