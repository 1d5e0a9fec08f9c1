"""Exception taxonomy for the account automation engine.

Every exception carries a stable ``code`` so the manager facade can
report a machine-readable classification next to the message.
"""


class AutomationError(Exception):
    """Base exception for the automation engine."""

    code = "automation_error"

    def __init__(self, message: str, code: str = None):
        """Initialize exception with message and classification code.

        Args:
            message: Human-readable message
            code: Overrides the class-level classification code
        """
        self.message = message
        if code:
            self.code = code
        super().__init__(self.message)


class ValidationError(AutomationError):
    """Bad definition, step reference or missing parameter. Never retried."""

    code = "validation_error"

    def __init__(self, message: str = "Validation failed"):
        super().__init__(message)


class AccountNotAliveError(AutomationError):
    """The vendor reports the account as not alive."""

    code = "account_not_alive"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} is not alive")


class VendorCallError(AutomationError):
    """A vendor API call failed. Counts against the retry budget."""

    code = "vendor_call_failed"

    def __init__(self, message: str = "Vendor call failed", status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class LockUnavailableError(AutomationError):
    """A named lock is held by someone else."""

    code = "lock_unavailable"

    def __init__(self, lock_key: str, message: str = None):
        self.lock_key = lock_key
        super().__init__(message or f"Could not acquire lock: {lock_key}")


class StepTimeoutError(AutomationError):
    """A step exceeded its configured timeout."""

    code = "step_timeout"

    def __init__(self, action: str, timeout_ms: int):
        self.action = action
        self.timeout_ms = timeout_ms
        super().__init__(f"Step '{action}' timed out after {timeout_ms}ms")


class UnrecoverableError(AutomationError):
    """Recovery validation failed for an instance."""

    code = "unrecoverable"

    def __init__(self, message: str = "Workflow is unrecoverable"):
        super().__init__(message)


class NotFoundError(AutomationError):
    """Account, definition or instance not found."""

    code = "not_found"

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class ConflictError(AutomationError):
    """Active instance already exists, or the transition is not allowed."""

    code = "conflict"

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message)


class SchedulingError(AutomationError):
    """Deferred re-entry could not be handed to the task scheduler."""

    code = "scheduling_failed"

    def __init__(self, message: str = "Failed to schedule workflow step"):
        super().__init__(message)


class TextGenerationError(AutomationError):
    """The AI text generator could not produce bio or prompt text. Retried like a vendor failure."""

    code = "text_generation_failed"

    def __init__(self, message: str = "Text generation failed", status_code: int = None):
        self.status_code = status_code
        super().__init__(message)
