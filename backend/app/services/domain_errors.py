"""
Domain error taxonomy.

Every error carries a stable ``code`` so the HTTP layer can map it to a
status without inspecting messages:

  ValidationError          VALIDATION_ERROR             -> 400
  InvalidStatusTransition  INVALID_STATUS_TRANSITION    -> 409
  EvidencePolicyViolation  EVIDENCE_REQUIRED            -> 422
  NotFoundError            NOT_FOUND                    -> 404
"""


class DomainError(Exception):
    """Base class for business-rule violations."""
    code = "DOMAIN_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(DomainError):
    """Structural problem with the input: empty field, malformed location, unknown enum value."""
    code = "VALIDATION_ERROR"


class InvalidStatusTransition(DomainError):
    """Raised by the Issue lifecycle when the requested status edge does not exist."""
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current_status, requested_status):
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Invalid status transition: {_status_name(current_status)} -> "
            f"{_status_name(requested_status)}"
        )


class EvidencePolicyViolation(DomainError):
    """
    Raised by the workflow policy when required photo evidence is missing.

    ``missing_phase`` names the photo phase (BEFORE / AFTER) the caller has
    to upload before retrying.
    """
    code = "EVIDENCE_REQUIRED"

    def __init__(self, missing_phase, message: str):
        self.missing_phase = missing_phase
        super().__init__(message)


class NotFoundError(DomainError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


def _status_name(status) -> str:
    return getattr(status, "value", str(status))
