class RegistryError(Exception):
    """Base class for registry provisioning errors."""


class RegistryNotFoundError(RegistryError):
    pass


class RegistryAlreadyExistsError(RegistryError):
    pass


class RegistryPortNotFoundError(RegistryError):
    pass


class RegistryNotReadyError(RegistryError):
    """The registry did not answer its health endpoint in time, or crashed."""


class RegistryUnexpectedStatusError(RegistryError):
    def __init__(self, status_code: int):
        super().__init__(f"registry returned unexpected status: {status_code}")
        self.status_code = status_code


class HealthCheckCancelledError(RegistryError):
    pass


class PartialCredentialsError(RegistryError, ValueError):
    """Only one of username / password was given for an upstream."""


class NodeConfigurationError(RegistryError):
    """Writing container runtime configuration into a node failed."""
