"""
Failure taxonomy of the engine.

None of these ever reach the telemetry source: the component that raises
them is also the one that logs and counts them.
"""


class GuardianError(Exception):
    """Base class for every error raised by the engine."""


class InputRejected(GuardianError):
    """Malformed or out-of-range telemetry/activity input. Dropped, no alert."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class ResolutionMiss(GuardianError):
    """Unknown device/vehicle, or more than one active trip for a vehicle."""

    def __init__(self, kind: str, subject):
        self.kind = kind
        self.subject = subject
        super().__init__(f"{kind}: {subject}")


class EvaluationFailure(GuardianError):
    """A rule could not be computed, usually because of bad reference data."""

    def __init__(self, rule: str, detail: str = ""):
        self.rule = rule
        self.detail = detail
        super().__init__(f"{rule}: {detail}" if detail else rule)


class DeliveryFailure(GuardianError):
    """Publishing an outbound event failed or timed out."""
