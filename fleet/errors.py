# fleet/errors.py


class FleetError(RuntimeError):
    """Base class for failures surfaced by a provisioning run."""


class ConfigError(FleetError):
    """Invalid or missing configuration. Never retried."""


class InvalidStrategy(ConfigError):
    pass


class ProvisioningError(FleetError):
    """
    Raised when the provisioner exhausts its attempt rounds.
    `errors` holds every batch failure seen during the run, oldest first.
    """

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])


class RegistrationError(FleetError):
    """Raised when stragglers are still left after the retry budget is spent."""
