import pytest

from metalprov import executil, mounts, raid

from fakes import GB, FakeHost

DISK_A = "/dev/disk/by-id/ata-FAKE_SERIAL_A"
DISK_B = "/dev/disk/by-id/ata-FAKE_SERIAL_B"
DISK_C = "/dev/disk/by-id/ata-FAKE_SERIAL_C"
DISK_D = "/dev/disk/by-id/ata-FAKE_SERIAL_D"


@pytest.fixture(autouse=True)
def _isolated_paths(tmp_path, monkeypatch):
    """Keep trace logs and artifacts inside the test's tmp dir."""

    monkeypatch.setenv("METALPROV_BASE_PATH", str(tmp_path / "state"))
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)


@pytest.fixture
def host(tmp_path, monkeypatch):
    fake = FakeHost(
        {
            DISK_A: ("sda", 1000 * GB),
            DISK_B: ("sdb", 1000 * GB),
            DISK_C: ("sdc", 1000 * GB),
            DISK_D: ("sdd", 1000 * GB),
        }
    ).install(monkeypatch)
    speed = tmp_path / "speed_limit_max"
    speed.write_text("200000\n", encoding="utf-8")
    monkeypatch.setattr(raid, "SPEED_LIMIT_MAX", str(speed))
    monkeypatch.setattr(mounts, "EFIVARS", str(tmp_path / "no-efivars"))
    return fake
