class SandboxException(Exception):
    pass


class NotFoundException(SandboxException):
    pass


class EnvironmentBusyException(SandboxException):
    pass


class ProtocolError(SandboxException):
    pass


class ProvisioningError(SandboxException):
    category = "provisioning"

    def __init__(self, cause: str | BaseException) -> None:
        self.cause = cause
        super().__init__(f"{self.category} failed: {cause}")


class CreationError(ProvisioningError):
    category = "creation"


class InstallError(ProvisioningError):
    category = "install"


class FetchError(ProvisioningError):
    category = "fetch"


class ConfigurationError(ProvisioningError):
    category = "configuration"


class ConfigValidationError(ProvisioningError):
    category = "validation"


class StartupError(ProvisioningError):
    category = "startup"


ERRORS_BY_CATEGORY: dict[str, type[ProvisioningError]] = {
    cls.category: cls
    for cls in (CreationError, InstallError, FetchError, ConfigurationError, ConfigValidationError, StartupError)
}
