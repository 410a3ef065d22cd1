from __future__ import annotations


class CoreError(Exception):
    """Base class for errors raised by the credit/job core."""


class JobValidationError(CoreError, ValueError):
    """Raised when a generation request is malformed. Names the first bad field."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InsufficientCredits(CoreError):
    """Raised when an account cannot pay for a job."""

    def __init__(self, account_id: str, balance: int, required: int) -> None:
        super().__init__("Insufficient credits")
        self.account_id = account_id
        self.balance = balance
        self.required = required


class InvalidTransition(CoreError):
    """Raised when a job is asked to leave a terminal state."""

    def __init__(self, job_id: object, current: str, target: str) -> None:
        super().__init__(f"job {job_id} is {current}, cannot become {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobNotFound(CoreError, LookupError):
    pass


class AccountNotFound(CoreError, LookupError):
    pass


class TransientFault(CoreError):
    """Storage or network unavailability. Safe for the caller to retry."""


class StorageUnavailable(TransientFault):
    pass


class DispatchFailed(TransientFault):
    pass


class LedgerInvariantViolation(CoreError):
    """A balance was observed in a state that must never exist."""


class UnknownPlan(CoreError, ValueError):
    """Raised when a checkout names a plan that cannot be bought."""

    def __init__(self, plan_id: str) -> None:
        super().__init__("Invalid plan ID")
        self.plan_id = plan_id
