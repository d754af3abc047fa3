"""Error taxonomy for the scaling control plane.

Only genuine failures are exceptions. Expected conditions such as cooldown
suppression, clamped adjustments, stale samples and no-op registrations are
reported through return values.
"""


class ServiceScalerError(Exception):
    """Base class for all control-plane errors."""


class ConfigurationError(ServiceScalerError, ValueError):
    """Raised at load time for invalid capacity bounds, alarms or step tables."""


class TransientIOError(ServiceScalerError):
    """Raised by external clients when an orchestrator, metric or directory call fails.

    Call sites retry these with bounded exponential backoff; they never reach
    the scaling decision logic.
    """

    def __init__(self, operation: str, message: str = ""):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}" if message else f"{operation} failed")
