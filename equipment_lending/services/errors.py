from __future__ import annotations


class LendingError(RuntimeError):
    status_code = 400
    default_code = "lending_error"

    def __init__(self, detail: str, code: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code or self.default_code

    def to_payload(self) -> dict:
        return {"detail": self.detail, "code": self.code}


class ValidationFailed(LendingError):
    status_code = 400
    default_code = "invalid_input"


class PolicyDenied(LendingError):
    status_code = 422
    default_code = "policy_denied"


class NotFound(LendingError):
    status_code = 404
    default_code = "not_found"


class StateConflict(LendingError):
    status_code = 409
    default_code = "wrong_state"

    def __init__(self, detail: str, code: str | None = None, *, retryable: bool = False) -> None:
        super().__init__(detail, code)
        self.retryable = retryable


class ScheduleConflict(LendingError):
    status_code = 409
    default_code = "schedule_conflict"


class Forbidden(LendingError):
    status_code = 403
    default_code = "forbidden"


class InfrastructureError(LendingError):
    status_code = 503
    default_code = "store_unavailable"
