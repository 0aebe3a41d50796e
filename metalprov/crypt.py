"""LUKS lifecycle for encrypted device sets.

``format`` and ``open`` mirror the cryptsetup verbs and shadow the builtins
inside this module; keyfiles are written through ``os.open``.
"""

from __future__ import annotations

import os
import stat
from subprocess import CalledProcessError

from .devices import dm_name, holders, uuid_of
from .errors import (
    DeviceNotReadyError,
    FormatFailedError,
    KeyMaterialMissingError,
    ProvisionError,
    ResourceBusyError,
)
from .executil import run, trace, udev_settle, wait_for_path
from .model import ROLE_MEMBER, BlockDevice, EncryptedVolumeRef, EncryptionPolicy

KEY_BYTES = 64


def _ensure_file_secure(path: str) -> None:
    try:
        os.chmod(path, 0o400)
    except OSError as exc:
        trace("crypt.keyfile.chmod_failed", path=path, error=str(exc))
    st = os.stat(path)
    if stat.S_IMODE(st.st_mode) != 0o400:
        raise PermissionError(f"keyfile {path} must have mode 0400")


def _generate_keyfile(path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, mode=0o700, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o400)
    try:
        os.write(fd, os.urandom(KEY_BYTES))
        os.fsync(fd)
    finally:
        os.close(fd)
    trace("crypt.keyfile.generated", path=path, length=KEY_BYTES)


def read_key_material(policy: EncryptionPolicy, dry_run: bool = False) -> str:
    """Return the keyfile path for ``policy``, generating it when allowed.

    No key material ships with metalprov: either the operator provides a
    non-empty keyfile or the topology opts into ``generate_keyfile``.
    """

    if not policy.keyfile:
        raise KeyMaterialMissingError(
            f"no keyfile configured for mapping {policy.mapping}",
            state={"mapping": policy.mapping},
        )
    path = policy.keyfile
    present = os.path.isfile(path) and os.path.getsize(path) > 0
    if not present:
        if not policy.generate_keyfile:
            raise KeyMaterialMissingError(
                f"keyfile {path} for mapping {policy.mapping} is missing or empty",
                state={"mapping": policy.mapping, "keyfile": path},
            )
        if dry_run:
            trace("crypt.keyfile.generate", path=path, dry_run=True)
            return path
        _generate_keyfile(path)
    _ensure_file_secure(path)
    return path


def open_mappings_on(device: str) -> list[str]:
    """Names of device-mapper targets currently stacked on ``device``."""

    names = []
    for holder in holders(device):
        if holder.startswith("dm-"):
            names.append(dm_name(holder) or holder)
    return names


def list_crypt_mappings() -> list[str]:
    res = run(["dmsetup", "ls", "--target", "crypt"], check=False)
    if res.rc != 0:
        return []
    names = []
    for line in (res.out or "").splitlines():
        fields = line.split()
        if fields and fields[0] != "No":
            names.append(fields[0])
    return names


def is_open(name: str) -> bool:
    return run(["cryptsetup", "status", name], check=False).rc == 0


def format(device: str, key: str, cipher: str | None = None, dry_run: bool = False) -> EncryptedVolumeRef:
    busy = open_mappings_on(device)
    if busy:
        raise ResourceBusyError(
            f"{device} still has open mappings: {', '.join(busy)}; close them before formatting",
            state={"device": device, "mappings": busy},
        )
    cmd = ["cryptsetup", "--batch-mode", "luksFormat"]
    if cipher:
        cmd += ["--cipher", cipher]
    cmd += [device, key]
    try:
        run(cmd, check=True, dry_run=dry_run, timeout=360.0)
    except CalledProcessError as exc:
        msg = (exc.stderr or exc.stdout or "").strip() or f"exit status {exc.returncode}"
        raise FormatFailedError(
            f"luksFormat failed on {device}: {msg}",
            state={"device": device, "rc": exc.returncode, "stderr": (exc.stderr or "").strip()},
        ) from exc
    udev_settle()
    uuid = "" if dry_run else uuid_of(device)
    trace("crypt.format", device=device, uuid=uuid, cipher=cipher, dry_run=dry_run)
    return EncryptedVolumeRef(device=device, keyfile=key, uuid=uuid or None)


def open(
    ref: EncryptedVolumeRef,
    key: str,
    name: str,
    dry_run: bool = False,
    settle_timeout: float = 5.0,
) -> BlockDevice:
    if not dry_run and is_open(name):
        raise ResourceBusyError(f"mapping {name} is already open", state={"mapping": name})
    cmd = ["cryptsetup", "luksOpen", ref.device, name, "--key-file", key]
    try:
        run(cmd, check=True, dry_run=dry_run, timeout=120.0)
    except CalledProcessError as exc:
        msg = (exc.stderr or exc.stdout or "").strip() or f"exit status {exc.returncode}"
        if "no key available" in msg.lower():
            raise KeyMaterialMissingError(
                f"keyfile {key} does not unlock {ref.device}",
                state={"device": ref.device, "mapping": name},
            ) from exc
        raise ProvisionError(f"luksOpen {ref.device} as {name} failed: {msg}", state={"rc": exc.returncode}) from exc
    ref.mapping = name
    path = ref.mapper_path
    wait_for_path(path, settle_timeout, DeviceNotReadyError, what="mapping", dry_run=dry_run)
    trace("crypt.open", device=ref.device, mapping=name, dry_run=dry_run)
    return BlockDevice(path=path, kernel_name=name, size_bytes=0, role=ROLE_MEMBER)


def close(name: str, dry_run: bool = False, check: bool = True) -> bool:
    res = run(["cryptsetup", "luksClose", name], check=False, dry_run=dry_run, timeout=60.0)
    if res.rc != 0 and check:
        raise ResourceBusyError(
            f"could not close mapping {name}: {(res.err or '').strip()}",
            state={"mapping": name, "rc": res.rc},
        )
    udev_settle()
    return res.rc == 0
