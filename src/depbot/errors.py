"""Domain errors for depbot."""


class DepbotError(RuntimeError):
    """Raised when an update run or job cannot continue safely."""


class ConfigurationError(DepbotError):
    """Raised when the update configuration is missing or invalid."""


class ProvisioningError(DepbotError):
    """Raised when job credentials cannot be resolved."""


class ContainerRuntimeError(DepbotError):
    """Raised when the container runtime fails to run an updater."""


class ImagePullError(ContainerRuntimeError):
    """Raised when an updater or proxy image cannot be pulled."""


class JobTimeoutError(ContainerRuntimeError):
    """Raised when a job exceeds its wall-clock timeout."""


class ProviderError(DepbotError):
    """Raised when the source-control provider rejects a request."""
