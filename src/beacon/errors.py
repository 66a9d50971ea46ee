"""Exception types shared by the registry, config server and clients."""


class BeaconError(Exception):
    """Base class for all Beacon errors."""

    retryable = False


class ConfigError(BeaconError, ValueError):
    """Invalid Beacon settings (bad durations, ports, ...)."""


class ValidationError(BeaconError, ValueError):
    """Malformed instance data submitted for registration."""


class ConfigNotFoundError(BeaconError, LookupError):
    """No configuration document exists for the requested triple."""


class ConfigStoreError(BeaconError):
    """The backing store holds a document that cannot be read."""


class ConfigStoreUnavailable(ConfigStoreError):
    """The backing store cannot be reached right now; try again later."""

    retryable = True


class ServiceUnavailableError(BeaconError):
    """A remote registry or config server did not answer in time."""

    retryable = True
