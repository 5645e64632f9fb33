from order_plane.recovery.manager import FailureRecoveryManager, SubmissionOutcome

__all__ = ["FailureRecoveryManager", "SubmissionOutcome"]
