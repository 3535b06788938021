"""
kubestrap/errors.py

Error taxonomy for the cluster bootstrap flow. Every error raised by kubestrap
derives from KubestrapError, so a caller can catch the whole family at once or
pick out a single failure mode (e.g. UnexpectedInstanceCountError).

The bootstrapper annotates an in-flight error with the stage that failed and
the action being attempted, without changing its type:

    try:
        await ca.create_root()
    except KubestrapError as exc:
        raise exc.annotate(BootstrapStage.INIT_CA, "could not create root")

str(exc) then reads "could not create root: <underlying cause>".
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from kubestrap.models.bootstrap import BootstrapStage


class KubestrapError(Exception):
    """Base class for every kubestrap failure.

    Attributes:
        message: The underlying cause, without any stage annotation.
        stage: The bootstrap stage that failed, once annotated.
        action: Human-readable description of what was being attempted.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.stage: Optional[BootstrapStage] = None
        self.action: Optional[str] = None

    def annotate(self, stage: BootstrapStage, action: str) -> KubestrapError:
        """Record the failing stage and action; returns self for `raise`."""
        if self.stage is None:
            self.stage = stage
            self.action = action
        return self

    def __str__(self) -> str:
        if self.action:
            return f"{self.action}: {self.message}"
        return self.message


class ExternalToolError(KubestrapError):
    """A key-generation or signing step failed (tool missing, bad permissions...)."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class RootNotFoundError(KubestrapError):
    """A leaf certificate was requested before the CA root was created."""


class RootExistsError(KubestrapError):
    """create_root was called on an existing root without force."""


class StaleRootError(KubestrapError):
    """ca.pem on disk does not match the root generation recorded at creation."""


class KeyRegistrationError(KubestrapError):
    """The cloud key registry lookup or upload failed."""


class RemoteCommandError(KubestrapError):
    """A remote command kept failing until the retry budget was exhausted."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class RemoteCopyError(KubestrapError):
    """A file transfer to the remote host exited non-zero."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class UnexpectedInstanceCountError(KubestrapError):
    """A single create call yielded zero or several instance records."""

    def __init__(self, count: int) -> None:
        super().__init__(f"received unexpected number of instances: {count}")
        self.count = count


class MissingAddressError(KubestrapError):
    """The created instance reports no IPv4 address."""


class CloudAPIError(KubestrapError):
    """The cloud provider answered with a non-success status."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class BootstrapError(KubestrapError):
    """Wraps a non-kubestrap failure (OS error, invalid response...) raised mid-run."""
