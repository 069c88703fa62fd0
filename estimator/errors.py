"""
Error taxonomy.

ValidationError:  malformed caller input (amount, date, duration). Raised
                  before any mutation; nothing changes.
CalculationError: internal fault while computing one item or surface. Caught
                  per item and folded into the result's errors[].
ConsistencyError: state that contradicts an invariant (duplicate deposit,
                  stale measurement type, unknown catalog entry). Repaired
                  with a warning where a safe default exists, raised otherwise.
"""

from .models import IssueKind


class EstimatorError(Exception):
    """Base class. Carries a machine-readable code and context dict."""

    kind = IssueKind.CALCULATION
    default_code = "ESTIMATOR_ERROR"

    def __init__(self, message: str, code: str = None, context: dict = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context or {}

    def to_issue(self):
        """Convert to a CalcIssue for a result's errors/warnings list."""
        from .schemas import CalcIssue
        return CalcIssue(
            message=self.message,
            code=self.code,
            kind=self.kind,
            context=self.context,
        )


class ValidationError(EstimatorError, ValueError):
    kind = IssueKind.VALIDATION
    default_code = "VALIDATION_ERROR"


class CalculationError(EstimatorError):
    kind = IssueKind.CALCULATION
    default_code = "CALCULATION_ERROR"


class ConsistencyError(EstimatorError):
    kind = IssueKind.CONSISTENCY
    default_code = "CONSISTENCY_ERROR"
