from typing import Any, Dict, List, Optional


class LifecycleError(Exception):
    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> Dict[str, Any]:
        return {"error": self.message, "error_code": self.error_code}


class NotFoundError(LifecycleError):
    status_code = 404
    error_code = "not_found"


class InvalidTransitionError(LifecycleError):
    status_code = 409
    error_code = "invalid_transition"

    def __init__(self, message: str, current_status: str) -> None:
        super().__init__(message)
        self.current_status = current_status

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["current_status"] = self.current_status
        return detail


class ValidationFailedError(LifecycleError):
    status_code = 422
    error_code = "validation_error"

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.details = details or []

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["details"] = self.details
        return detail


class ExecutorFailureError(LifecycleError):
    status_code = 502
    error_code = "executor_failure"


class ConcurrencyConflictError(LifecycleError):
    status_code = 409
    error_code = "conflict_state_version"

    def __init__(
        self,
        message: str = "State version conflict. Refresh session and retry.",
        expected_version: Optional[int] = None,
        current_version: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.expected_version = expected_version
        self.current_version = current_version

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        if self.expected_version is not None:
            detail["expected_version"] = self.expected_version
        if self.current_version is not None:
            detail["current_version"] = self.current_version
        return detail


class StaleVersionError(ConcurrencyConflictError):
    pass


class ExecutionStopped(Exception):
    pass
