"""Error taxonomy.

Only ConfigValidationError and ProvisionError (during the initial boot) are
allowed to end the process. Everything else is scoped to a connection or to
the supervisor loop that raised it.
"""


class RelayServiceError(Exception):
    pass


class ConfigValidationError(RelayServiceError):
    """Malformed identity token or unusable working directory."""


class ProvisionError(RelayServiceError):
    """Every candidate source for an artifact was exhausted."""

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


class FatalProvisionError(ProvisionError):
    """Retrying cannot help: the target path is a directory or no release
    asset exists for this machine."""


class SpawnError(RelayServiceError):
    """The backend executable could not be launched."""


class BackendUnavailableError(RelayServiceError, ConnectionError):
    """The backend's local port refused the relay's connection."""


class BridgeIOError(RelayServiceError, ConnectionError):
    """One side of an established bridge failed."""
