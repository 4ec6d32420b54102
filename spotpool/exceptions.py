class AutoscalerError(Exception):
    pass


class ConfigurationError(AutoscalerError):
    """Invalid configuration; fatal at startup."""


class TransientMetricReadFailure(AutoscalerError):
    """A metric read failed or timed out; the next period tries again."""


class ProvisioningFailure(AutoscalerError):
    """A compute or provisioning call failed; local state was not advanced."""

    def __init__(self, msg, step=None):
        super().__init__(msg)
        self.step = step
