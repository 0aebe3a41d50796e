"""Error taxonomy for provisioning runs."""


class ProvisionError(RuntimeError):
    """Base class; carries optional diagnostic state for the result record."""

    def __init__(self, message: str, *, state: dict | None = None) -> None:
        super().__init__(message)
        self.state = state or {}


class DeviceNotFoundError(ProvisionError):
    """A device reference did not resolve to a block device."""


class InvalidLayoutError(ProvisionError):
    """Partition layout overlaps, overflows or misplaces a reserved marker."""


class TopologyError(InvalidLayoutError):
    """The topology document is malformed."""


class MountOrderError(InvalidLayoutError):
    """A mount plan mounts a child before its parent."""


class DeviceNotReadyError(ProvisionError):
    """A device node or identifier did not become visible in time."""


class PartitionNotReadyError(DeviceNotReadyError):
    pass


class LabelNotReadyError(DeviceNotReadyError):
    pass


class FormatFailedError(ProvisionError):
    """Formatting (LUKS header or filesystem) failed."""


class KeyMaterialMissingError(ProvisionError):
    pass


class ResourceBusyError(ProvisionError):
    """Pre-existing active state blocks a destructive operation."""


class RefuseSafeError(ProvisionError):
    """Refused to touch the disk backing the running system."""
