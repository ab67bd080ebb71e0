# control-plane/core/exceptions.py
"""
Error taxonomy for fleet operations

Each error carries a stable error_code so the API layer can render
{"error": ..., "error_code": ...} without inspecting messages.
Remote command failures are NOT part of this hierarchy: they travel as
CommandResult values (see core.remote).
"""


class FleetError(Exception):
    error_code = "FLEET_ERROR"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "error_code": self.error_code}


class NotFoundError(FleetError):
    error_code = "NOT_FOUND"
    status_code = 404


class ConflictError(FleetError):
    error_code = "CONFLICT"
    status_code = 409


class AddressPoolExhaustedError(ConflictError):
    error_code = "ADDRESS_POOL_EXHAUSTED"


class InvalidStateError(FleetError):
    error_code = "INVALID_STATE"
    status_code = 409


class InvalidTransitionError(InvalidStateError):
    error_code = "INVALID_TRANSITION"

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'")
        self.current = current
        self.target = target


class HostBusyError(InvalidStateError):
    error_code = "HOST_BUSY"
    status_code = 423


class HostUnreachableError(FleetError):
    error_code = "HOST_UNREACHABLE"
    status_code = 502

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class ValidationFailedError(FleetError):
    error_code = "VALIDATION_FAILED"
    status_code = 422
