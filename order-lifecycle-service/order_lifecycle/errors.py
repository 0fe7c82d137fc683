
class LifecycleError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None, **context):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context

    def to_detail(self) -> dict:
        detail = {"code": self.code, "message": self.message}
        detail.update(self.context)
        return detail


class ValidationError(LifecycleError):
    status_code = 400
    code = "VALIDATION_ERROR"


class Forbidden(LifecycleError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(LifecycleError):
    status_code = 404
    code = "NOT_FOUND"


class IllegalTransition(LifecycleError):
    status_code = 409
    code = "ILLEGAL_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None, allowed: list | None = None):
        message = f"Cannot move order from '{from_status}' to '{to_status}'"
        if reason:
            message = f"{message}: {reason}"
        context = {"from_status": from_status, "to_status": to_status}
        if allowed is not None:
            context["allowed_targets"] = allowed
        super().__init__(message, **context)
        self.from_status = from_status
        self.to_status = to_status


class Conflict(LifecycleError):
    status_code = 409
    code = "CONFLICT"


class AlreadyAccepted(Conflict):
    code = "ALREADY_ACCEPTED"


class Expired(LifecycleError):
    status_code = 409
    code = "REQUEST_EXPIRED"
