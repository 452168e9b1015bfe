"""Remediation engine error taxonomy."""


class RemediationError(Exception):
    """Base class for engine errors."""


class RuleConfigurationError(RemediationError):
    """A rule cannot be used as authored (bad trigger, unknown action type)."""

    def __init__(self, message: str, rule_id: str | None = None):
        super().__init__(message)
        self.rule_id = rule_id


class EvaluationError(RemediationError):
    """A condition could not be evaluated against the current signals."""


class InvalidTransitionError(RemediationError):
    """An execution was moved along an edge the state machine does not allow."""


class LedgerWriteError(RemediationError):
    """The execution ledger rejected or failed a write."""
