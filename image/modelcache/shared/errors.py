# ---------------------------------------------------------------------------- #

from __future__ import annotations

# ---------------------------------------------------------------------------- #


class ProvisionerError(Exception):
    pass


class ConfigValidationError(ProvisionerError, ValueError):
    """The config file is malformed or contradictory. The previously applied
    config stays in effect."""


class RequestValidationError(ProvisionerError, ValueError):
    """A provisioning or deletion request cannot be served. Raised before any
    helper pod is created."""


class DispatchError(ProvisionerError, RuntimeError):
    """Creating, reading, or running a helper pod failed."""


class HelperPodTimeoutError(ProvisionerError, TimeoutError):
    """A helper pod did not succeed within the configured number of
    seconds."""

    seconds: int

    def __init__(self, message: str, seconds: int) -> None:
        super().__init__(message)
        self.seconds = seconds


# ---------------------------------------------------------------------------- #
