"""Custom exceptions for vm-images."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from vmimages.models import CommandResult


class BuildError(RuntimeError):
    """Raised on unrecoverable configuration, download or tool errors."""


class ConfigNotFound(BuildError):
    """No config.yaml backs the requested image name."""


class ConfigInvalid(BuildError):
    """A config document is missing required fields or has malformed values."""


class MissingSecret(BuildError):
    """SSH public key or root password was not supplied."""


class UnsupportedArch(BuildError):
    """The requested architecture is not one of the supported tags."""


class VmIdInUse(BuildError):
    """The hypervisor already knows a VM with the requested id."""


class ReleaseNotFound(BuildError):
    """The release API returned no usable tag."""


class InvalidDigest(BuildError):
    """A SHA-256 digest or checksum file is malformed."""


class DigestMismatch(BuildError):
    """A downloaded or cached file does not match its expected digest."""


class DownloadError(BuildError):
    """A network transfer failed."""


class ToolMissing(BuildError):
    """A required external command is not installed."""


class StorageNotFound(BuildError):
    """The requested Proxmox storage does not exist."""


class ToolFailed(BuildError):
    """An external command exited non-zero."""

    def __init__(self, result: "CommandResult") -> None:
        self.result = result
        detail = (result.stderr or result.stdout or "").strip()
        message = f"Command failed ({result.returncode}): {' '.join(result.args)}"
        if detail:
            message += f"\n{detail}"
        super().__init__(message)
