"""Domain errors for pgupgrader."""


class UpgraderError(RuntimeError):
    """Raised when the upgrade cannot continue safely."""


class ValidationError(UpgraderError):
    """Bad or missing inputs, detected before anything is mutated."""


class ResourceError(UpgraderError):
    """Container runtime failed to create, start or exec something."""


class NotReadyError(UpgraderError, TimeoutError):
    """An instance did not answer its readiness probe within the retry budget."""


class TransferError(UpgraderError):
    """Copying the data directory to or from staging failed."""


class RollbackFailure(UpgraderError):
    """Restoring the data directory from staging failed. Manual recovery required."""


class UpgradeInterrupted(UpgraderError):
    """The operator aborted the run (SIGINT/SIGTERM)."""
