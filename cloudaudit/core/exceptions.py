"""
Exception types raised by the inspection core.
"""


class CloudAuditError(Exception):
    """Base class for inspection core errors."""


class ItemKeyError(CloudAuditError, ValueError):
    """A sort key could not be built or does not match the persisted layout."""


class InvalidStateTransition(CloudAuditError):
    """A run was asked to move to a state its current state does not allow."""

    def __init__(self, run_id: str, current: str, target: str):
        self.run_id = run_id
        self.current = current
        self.target = target
        super().__init__(f"Run {run_id}: cannot transition {current} -> {target}")


class UnknownCheckError(CloudAuditError):
    """The check catalog has no entry for the requested check id."""


class CredentialError(CloudAuditError):
    """Temporary credentials could not be obtained or are unusable."""


class CredentialsExpiredError(CredentialError):
    """Credentials reached their expiry; never retried."""


class RunTimeoutError(CloudAuditError):
    """A run exceeded its soft timeout at a checkpoint."""


class ResultStoreError(CloudAuditError):
    """A read or write against the result store failed."""
