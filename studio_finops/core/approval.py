"""
Spend approval gate.

Any estimate above the silent-spend threshold must carry explicit human
approval before a billable call is made. The gate is pure: it never
touches storage or the network, so it cannot fail for infrastructural
reasons.
"""

from typing import Dict

DEFAULT_APPROVAL_THRESHOLD = 0.01


class RequiresApproval(Exception):
    """Raised when an estimate exceeds the threshold without prior approval.

    This is a control signal, not a failure. The caller must surface the
    estimate to a human and resubmit the identical request with approval.
    """
    code = "PRECONDITION_FAILED"

    def __init__(self, estimated_amount: float, threshold: float):
        super().__init__(
            f"Cost ${estimated_amount:.4f} exceeds manual approval limit (${threshold:.4f})"
        )
        self.estimated_amount = estimated_amount
        self.threshold = threshold

    def to_dict(self) -> Dict[str, object]:
        return {
            "code": self.code,
            "estimatedCost": self.estimated_amount,
            "threshold": self.threshold,
            "message": str(self),
        }


class ApprovalGate:
    """Guardrail enforcing human sign-off above a fixed spend threshold."""

    def __init__(self, threshold: float = DEFAULT_APPROVAL_THRESHOLD):
        if threshold < 0:
            raise ValueError("approval threshold must be >= 0")
        self.threshold = threshold

    def authorize(self, estimated_amount: float, already_approved: bool = False) -> None:
        """Validate an estimate against the threshold.

        Args:
            estimated_amount: Amount from the pricing registry
            already_approved: Whether a human already approved this spend

        Raises:
            RequiresApproval: If amount > threshold and not already approved
        """
        if estimated_amount > self.threshold and not already_approved:
            raise RequiresApproval(estimated_amount, self.threshold)
