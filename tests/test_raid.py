import json
from types import SimpleNamespace

import pytest

from metalprov import executil, raid
from metalprov.errors import DeviceNotFoundError, FormatFailedError, ResourceBusyError
from metalprov.model import ArrayDevice, ArrayIdentity, ArrayState

from conftest import DISK_A, DISK_B

MEMBERS = [f"{DISK_A}-part2", f"{DISK_B}-part2"]
ROOT0 = ArrayIdentity("root0", "hetzner")


def test_array_build_rejects_skipped_states():
    build = raid.ArrayBuild(ROOT0)
    build.advance(ArrayState.STOPPED)
    with pytest.raises(RuntimeError):
        build.advance(ArrayState.CREATED)


def test_auto_assembly_policy_is_scoped(tmp_path):
    conf = tmp_path / "mdadm" / "mdadm.conf"
    conf.parent.mkdir()
    conf.write_text("DEVICE partitions\n", encoding="utf-8")

    with raid.AutoAssemblyPolicy(str(conf)):
        assert conf.read_text(encoding="utf-8") == raid.IGNORE_ALL_POLICY
    assert conf.read_text(encoding="utf-8") == "DEVICE partitions\n"

    fresh = tmp_path / "fresh.conf"
    with pytest.raises(ValueError):
        with raid.AutoAssemblyPolicy(str(fresh)):
            assert fresh.exists()
            raise ValueError("stage failed")
    assert not fresh.exists()

    with raid.AutoAssemblyPolicy(str(fresh), keep=True):
        pass
    assert fresh.read_text(encoding="utf-8").startswith("AUTO -all")


def test_build_array_sequence(host):
    host.add_stale_array("old0", MEMBERS)
    host.nodes.update(MEMBERS)

    array = raid.build_array(MEMBERS, 1, 2, ROOT0)

    assert array.path == "/dev/md/root0"
    assert array.state is ArrayState.ASSEMBLED
    assert array.uuid
    create = host.ran(["mdadm", "--create"])[0]
    assert "--homehost=hetzner" in create
    assert "--name=root0" in create
    assert "--level=1" in create and "--raid-devices=2" in create
    order = [c[:2] for c in host.commands]
    assert order.index(["mdadm", "--stop"]) < order.index(["mdadm", "--zero-superblock"])
    assert order.index(["mdadm", "--create"]) < order.index(["wipefs", "-a"])
    assert "/dev/md/old0" not in host.arrays


def test_build_array_traces_level(host):
    host.nodes.update(MEMBERS)
    raid.build_array(MEMBERS, 1, 2, ROOT0)

    with open(executil.resolve_log_path(), encoding="utf-8") as fh:
        records = [json.loads(line) for line in fh if line.strip()]
    created = [r for r in records if r["event"] == "raid.create"]
    assert created[0]["level"] == "TRACE"
    assert created[0]["raid_level"] == 1
    assert created[0]["path"] == "/dev/md/root0"


def test_build_array_metadata_and_busy_members(host):
    host.nodes.update(MEMBERS)
    array = raid.build_array(MEMBERS, 1, 2, ArrayIdentity("boot_efi", "htz"), metadata="1.0")
    assert "--metadata=1.0" in host.ran(["mdadm", "--create"])[0]
    assert array.metadata == "1.0"

    host.add_stale_mapping("holder", MEMBERS[0])
    with pytest.raises(ResourceBusyError):
        raid.build_array(MEMBERS, 1, 2, ArrayIdentity("root1", "htz"))


def test_zero_superblock_outcomes(monkeypatch):
    monkeypatch.setattr(raid, "run", lambda cmd, **kw: SimpleNamespace(rc=0, out="", err=""))
    assert raid.zero_superblock("/dev/sda2") is True

    monkeypatch.setattr(
        raid, "run",
        lambda cmd, **kw: SimpleNamespace(rc=1, out="", err="mdadm: Unrecognised md component device - /dev/sda2"),
    )
    assert raid.zero_superblock("/dev/sda2") is False

    monkeypatch.setattr(
        raid, "run",
        lambda cmd, **kw: SimpleNamespace(rc=1, out="", err="mdadm: Couldn't open /dev/sda2 for write"),
    )
    with pytest.raises(ResourceBusyError):
        raid.zero_superblock("/dev/sda2")


def test_wipe_failure_is_format_failed(monkeypatch):
    def failing(cmd, **kwargs):
        raise raid.CalledProcessError(1, cmd, "", "wipefs: error: /dev/md/root0: probing initialization failed")

    monkeypatch.setattr(raid, "run", failing)
    with pytest.raises(FormatFailedError):
        raid._wipe_signatures("/dev/md/root0")


def test_disable_resync(tmp_path):
    knob = tmp_path / "speed_limit_max"
    knob.write_text("200000\n", encoding="utf-8")
    assert raid.disable_resync(str(knob)) is True
    assert knob.read_text(encoding="utf-8") == "0\n"
    assert raid.disable_resync(str(tmp_path / "missing")) is False


def _assembled(identity, uuid="a1b2c3d4:00000000:11111111:22222222", metadata=None):
    return ArrayDevice(identity, identity.device_path, list(MEMBERS), 1, ArrayState.ASSEMBLED, metadata, uuid)


def test_identity_record_round_trip(tmp_path):
    arrays = [_assembled(ROOT0)]
    path = raid.persist_identity(str(tmp_path), arrays, homehost="<ignore>")
    assert path == str(tmp_path / "etc" / "mdadm.conf")
    text = (tmp_path / "etc" / "mdadm.conf").read_text(encoding="utf-8")
    assert text.splitlines()[0] == "HOMEHOST <ignore>"
    assert "name=hetzner:root0" in text

    config = raid.read_identity_config(path)
    assert config["homehost"] == "<ignore>"
    assert config["arrays"][0]["UUID"] == "a1b2c3d4:00000000:11111111:22222222"


def test_render_identity_defaults_homehost():
    same = raid.render_identity_config([_assembled(ROOT0)])
    assert same.startswith("HOMEHOST hetzner\n")
    mixed = raid.render_identity_config([_assembled(ROOT0), _assembled(ArrayIdentity("data0", "ovh"))])
    assert mixed.startswith("HOMEHOST <ignore>\n")
    assert "metadata=1.2" in mixed


def test_resolve_array_path_local_and_foreign():
    assert raid.resolve_array_path(ROOT0, {"homehost": "hetzner", "arrays": []}) == "/dev/md/root0"
    assert raid.resolve_array_path(ROOT0, {"homehost": "<ignore>", "arrays": []}) == "/dev/md/root0"
    assert raid.resolve_array_path(ROOT0, {"homehost": "rescue", "arrays": []}) == "/dev/md/hetzner:root0"
    assert raid.resolve_array_path(ROOT0, None) == "/dev/md/hetzner:root0"
    pinned = {"homehost": "rescue", "arrays": [{"device": "/dev/md/root0", "name": "hetzner:root0"}]}
    assert raid.resolve_array_path(ROOT0, pinned) == "/dev/md/root0"


def test_assemble_array_uses_identity_path(host):
    host.nodes.update(MEMBERS)
    raid.build_array(MEMBERS, 1, 2, ROOT0)
    raid.stop_all_arrays()
    assert host.arrays == {}

    host.nodes.add(ROOT0.device_path)
    array = raid.assemble_array(ROOT0, MEMBERS)
    assert host.ran(["mdadm", "--assemble", "--run", "/dev/md/root0"])
    assert array.state is ArrayState.ASSEMBLED and array.uuid


def test_assemble_array_failures_use_error_kinds(monkeypatch):
    def failing(err):
        def fake_run(cmd, **kwargs):
            raise raid.CalledProcessError(1, cmd, "", err)
        return fake_run

    monkeypatch.setattr(raid, "run", failing("mdadm: no recogniseable superblock on /dev/sda2"))
    with pytest.raises(DeviceNotFoundError) as exc:
        raid.assemble_array(ROOT0, MEMBERS)
    assert exc.value.state["array"] == "root0"

    monkeypatch.setattr(raid, "run", failing("mdadm: cannot open device /dev/sda2: Device or resource busy"))
    with pytest.raises(ResourceBusyError):
        raid.assemble_array(ROOT0, MEMBERS)
