"""Software RAID (mdadm) lifecycle and array identity persistence.

Arrays are created with an explicit ``--name``/``--homehost`` pair.  At boot
mdadm only hands out the short ``/dev/md/<name>`` path when the array is
"local", i.e. its homehost matches the ``HOMEHOST`` line of the installed
system's ``mdadm.conf`` (or that line says ``<ignore>``).  Otherwise the
array shows up under the foreign name ``/dev/md/<homehost>:<name>``.  The
identity therefore has to be written into the target root, not just passed
to ``mdadm --create``.
"""
from __future__ import annotations

import os
from subprocess import CalledProcessError

from .devices import holders
from .errors import DeviceNotFoundError, DeviceNotReadyError, FormatFailedError, ResourceBusyError
from .executil import run, trace, udev_settle, wait_for_path, warn
from .model import ArrayDevice, ArrayIdentity, ArrayState

DEFAULT_CONF = "/etc/mdadm/mdadm.conf"
SPEED_LIMIT_MAX = "/proc/sys/dev/raid/speed_limit_max"
DEFAULT_METADATA = "1.2"

# Disables incremental assembly: udev would otherwise re-assemble old arrays
# from leftover superblocks as soon as new partition tables appear.
IGNORE_ALL_POLICY = "AUTO -all\nARRAY <ignore> UUID=00000000:00000000:00000000:00000000\n"

_NO_SUPERBLOCK = ("no superblock", "unrecognised md component", "unrecognized md component")

_TRANSITIONS = {
    ArrayState.ABSENT: {ArrayState.STOPPED},
    ArrayState.STOPPED: {ArrayState.WIPED},
    ArrayState.WIPED: {ArrayState.CREATED},
    ArrayState.CREATED: {ArrayState.ASSEMBLED},
    ArrayState.ASSEMBLED: {ArrayState.STOPPED},
}


class ArrayBuild:
    """Tracks one array through absent -> stopped -> wiped -> created -> assembled."""

    def __init__(self, identity: ArrayIdentity):
        self.identity = identity
        self.state = ArrayState.ABSENT
        self.history = [ArrayState.ABSENT]

    def advance(self, state: ArrayState) -> ArrayState:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"array {self.identity.name}: illegal transition {self.state.value} -> {state.value}"
            )
        trace("raid.state", array=self.identity.name, frm=self.state.value, to=state.value)
        self.state = state
        self.history.append(state)
        return state


class AutoAssemblyPolicy:
    """Scoped ignore-all auto-assembly policy for the rescue system's mdadm.

    Entering writes the ignore-all policy; leaving restores whatever was
    there before (or removes the file) unless ``keep`` is set.
    """

    def __init__(self, conf_path: str = DEFAULT_CONF, keep: bool = False, dry_run: bool = False):
        self.conf_path = conf_path
        self.keep = keep
        self.dry_run = dry_run
        self._previous: str | None = None

    def __enter__(self) -> "AutoAssemblyPolicy":
        try:
            with open(self.conf_path, "r", encoding="utf-8") as fh:
                self._previous = fh.read()
        except FileNotFoundError:
            self._previous = None
        if self.dry_run:
            trace("raid.autoassembly.disable", path=self.conf_path, dry_run=True)
            return self
        os.makedirs(os.path.dirname(self.conf_path) or ".", exist_ok=True)
        with open(self.conf_path, "w", encoding="utf-8") as fh:
            fh.write(IGNORE_ALL_POLICY)
        trace("raid.autoassembly.disable", path=self.conf_path, had_previous=self._previous is not None)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.dry_run or self.keep:
            trace("raid.autoassembly.kept", path=self.conf_path, dry_run=self.dry_run)
            return False
        if self._previous is None:
            try:
                os.remove(self.conf_path)
            except FileNotFoundError:
                pass
        else:
            with open(self.conf_path, "w", encoding="utf-8") as fh:
                fh.write(self._previous)
        trace("raid.autoassembly.restored", path=self.conf_path, removed=self._previous is None)
        return False


def stop_all_arrays(dry_run: bool = False):
    res = run(["mdadm", "--stop", "--scan"], check=False, dry_run=dry_run)
    udev_settle()
    return res


def stop_arrays_on(members: list[str], dry_run: bool = False) -> list[str]:
    """Stop every md array the boot environment assembled on ``members``."""

    stopped: list[str] = []
    for member in members:
        for holder in holders(member):
            if not holder.startswith("md") or holder in stopped:
                continue
            res = run(["mdadm", "--stop", f"/dev/{holder}"], check=False, dry_run=dry_run)
            if res.rc != 0:
                raise ResourceBusyError(
                    f"could not stop array {holder} holding {member}: {(res.err or '').strip()}",
                    state={"member": member, "array": holder},
                )
            stopped.append(holder)
    if stopped:
        trace("raid.stopped_existing", arrays=stopped)
        udev_settle()
    return stopped


def zero_superblock(member: str, dry_run: bool = False) -> bool:
    """Zero the md superblock on ``member``; returns False when there was none."""

    res = run(["mdadm", "--zero-superblock", "--force", member], check=False, dry_run=dry_run)
    if res.rc == 0:
        return True
    text = f"{res.out or ''}\n{res.err or ''}".lower()
    if any(marker in text for marker in _NO_SUPERBLOCK):
        trace("raid.zero_superblock.absent", member=member)
        return False
    raise ResourceBusyError(
        f"could not zero superblock on {member}: {(res.err or res.out or '').strip()}",
        state={"member": member, "rc": res.rc},
    )


def disable_resync(path: str | None = None, dry_run: bool = False) -> bool:
    """Cap md resync speed at zero for the rest of the rescue session."""

    path = path or SPEED_LIMIT_MAX
    if dry_run:
        trace("raid.resync_disabled", path=path, dry_run=True)
        return True
    if not os.path.exists(path):
        warn("raid.resync_knob_missing", path=path)
        return False
    with open(path, "w", encoding="utf-8") as fh:
        fh.write("0\n")
    trace("raid.resync_disabled", path=path)
    return True


def _wipe_signatures(path: str, dry_run: bool = False):
    # mdadm --create does not clear old filesystem or LVM signatures inside the array
    try:
        run(["wipefs", "-a", path], check=True, dry_run=dry_run, timeout=120.0)
    except CalledProcessError as exc:
        msg = (exc.stderr or exc.stdout or "").strip() or f"exit status {exc.returncode}"
        if "busy" in msg.lower():
            raise ResourceBusyError(f"wipefs could not open {path}: {msg}", state={"device": path}) from exc
        raise FormatFailedError(f"wipefs failed on {path}: {msg}", state={"device": path}) from exc


def array_uuid(path: str) -> str:
    res = run(["mdadm", "--detail", "--export", path], check=False)
    for line in (res.out or "").splitlines():
        key, _, value = line.partition("=")
        if key.strip() == "MD_UUID":
            return value.strip()
    return ""


def build_array(
    members: list[str],
    level: int,
    raid_devices: int,
    identity: ArrayIdentity,
    metadata: str | None = None,
    dry_run: bool = False,
    settle_timeout: float = 5.0,
) -> ArrayDevice:
    build = ArrayBuild(identity)
    stop_arrays_on(members, dry_run=dry_run)
    build.advance(ArrayState.STOPPED)

    for member in members:
        zero_superblock(member, dry_run=dry_run)
    build.advance(ArrayState.WIPED)

    path = identity.device_path
    cmd = [
        "mdadm", "--create", "--run", "--verbose", path,
        f"--level={level}",
        f"--raid-devices={raid_devices}",
        f"--homehost={identity.homehost}",
        f"--name={identity.name}",
    ]
    if metadata:
        cmd.append(f"--metadata={metadata}")
    cmd += list(members)
    try:
        run(cmd, check=True, dry_run=dry_run, timeout=120.0)
    except CalledProcessError as exc:
        msg = (exc.stderr or exc.stdout or "").strip() or f"exit status {exc.returncode}"
        if "busy" in msg.lower():
            raise ResourceBusyError(f"mdadm could not claim members of {path}: {msg}", state={"members": members}) from exc
        raise FormatFailedError(
            f"mdadm --create failed for {path}: {msg}",
            state={"array": identity.name, "members": members, "rc": exc.returncode},
        ) from exc
    build.advance(ArrayState.CREATED)

    # Assembly can auto-activate volume groups found on the new array and
    # keep it busy for wipefs.
    run(["vgchange", "-an"], check=False, dry_run=dry_run)
    wait_for_path(path, settle_timeout, DeviceNotReadyError, what="array", dry_run=dry_run)
    _wipe_signatures(path, dry_run=dry_run)
    build.advance(ArrayState.ASSEMBLED)

    uuid = "" if dry_run else array_uuid(path)
    trace("raid.create", array=identity.name, homehost=identity.homehost, path=path, members=members, raid_level=level, uuid=uuid)
    return ArrayDevice(
        identity=identity,
        path=path,
        members=list(members),
        level=level,
        state=build.state,
        metadata=metadata,
        uuid=uuid or None,
    )


def assemble_array(
    identity: ArrayIdentity,
    members: list[str],
    level: int = 1,
    dry_run: bool = False,
    settle_timeout: float = 5.0,
) -> ArrayDevice:
    path = identity.device_path
    try:
        run(["mdadm", "--assemble", "--run", path, *members], check=True, dry_run=dry_run, timeout=120.0)
    except CalledProcessError as exc:
        msg = (exc.stderr or exc.stdout or "").strip() or f"exit status {exc.returncode}"
        state = {"array": identity.name, "members": list(members), "rc": exc.returncode}
        if "busy" in msg.lower():
            raise ResourceBusyError(f"mdadm could not claim members of {path}: {msg}", state=state) from exc
        raise DeviceNotFoundError(f"mdadm could not assemble {path}: {msg}", state=state) from exc
    wait_for_path(path, settle_timeout, DeviceNotReadyError, what="array", dry_run=dry_run)
    uuid = "" if dry_run else array_uuid(path)
    return ArrayDevice(identity, path, list(members), level, ArrayState.ASSEMBLED, uuid=uuid or None)


def render_identity_config(arrays: list[ArrayDevice], homehost: str | None = None) -> str:
    if homehost is None:
        tags = {a.identity.homehost for a in arrays}
        homehost = tags.pop() if len(tags) == 1 else "<ignore>"
    lines = [f"HOMEHOST {homehost}"]
    for array in arrays:
        parts = [
            "ARRAY",
            array.identity.device_path,
            f"metadata={array.metadata or DEFAULT_METADATA}",
            f"name={array.identity.homehost}:{array.identity.name}",
        ]
        if array.uuid:
            parts.append(f"UUID={array.uuid}")
        lines.append(" ".join(parts))
    return "\n".join(lines) + "\n"


def persist_identity(root: str, arrays: list[ArrayDevice], homehost: str | None = None, dry_run: bool = False) -> str:
    """Write array identities to ``<root>/etc/mdadm.conf`` and return the path.

    The installed system must carry this record in its own configuration
    (and initrd) or the arrays come back under foreign names after reboot.
    """

    path = os.path.join(root, "etc", "mdadm.conf")
    text = render_identity_config(arrays, homehost)
    if dry_run:
        trace("raid.identity.persist", path=path, dry_run=True, text=text)
        return path
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(text)
    trace("raid.identity.persist", path=path, arrays=[a.identity.name for a in arrays])
    return path


def read_identity_config(path: str) -> dict:
    config: dict = {"homehost": None, "arrays": []}
    with open(path, "r", encoding="utf-8") as fh:
        for raw in fh:
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            keyword, _, rest = line.partition(" ")
            if keyword == "HOMEHOST":
                config["homehost"] = rest.strip()
            elif keyword == "ARRAY":
                fields = rest.split()
                entry = {"device": fields[0] if fields else ""}
                for item in fields[1:]:
                    key, _, value = item.partition("=")
                    entry[key] = value
                config["arrays"].append(entry)
    return config


def resolve_array_path(identity: ArrayIdentity, config: dict | None) -> str:
    """Device path mdadm gives ``identity`` when assembling under ``config``."""

    config = config or {}
    full_name = f"{identity.homehost}:{identity.name}"
    for entry in config.get("arrays") or []:
        if entry.get("name") in (full_name, identity.name) and entry.get("device"):
            return entry["device"]
    homehost = config.get("homehost")
    if homehost in ("<ignore>", identity.homehost):
        return identity.device_path
    return identity.foreign_path
