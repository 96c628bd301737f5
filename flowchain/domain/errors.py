"""Errors raised by the engine, its repositories and services.

Each error carries a stable ``error_code`` and the HTTP status the API maps
it to; ``details`` holds structured context (validation issues, the
unmatched resolution of a stuck instance, and so on).
"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": {"code": self.error_code, "message": self.message, "details": self.details}}


# --- 401 / 403 ---

class AuthenticationError(DomainError):
    """Bearer token missing, malformed, expired or for another audience"""
    error_code, http_status = "AUTHENTICATION_ERROR", 401


class AuthorizationError(DomainError):
    error_code, http_status = "AUTHORIZATION_ERROR", 403


class Unauthorized(AuthorizationError):
    """The actor holds none of the roles assigned to the step, or not the role it decided as"""
    error_code = "UNAUTHORIZED"


# --- 400 ---

class ValidationError(DomainError):
    error_code, http_status = "VALIDATION_ERROR", 400


class DefinitionValidationError(ValidationError):
    """A definition failed publish-time checks; ``details['errors']`` lists every issue"""
    error_code = "DEFINITION_VALIDATION_ERROR"


# --- 404 ---

class NotFoundError(DomainError):
    error_code, http_status = "NOT_FOUND", 404


class FlowChainNotFoundError(NotFoundError):
    error_code = "FLOW_CHAIN_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    error_code = "INSTANCE_NOT_FOUND"


class StageNotFoundError(NotFoundError):
    error_code = "STAGE_NOT_FOUND"


class StepNotFoundError(NotFoundError):
    error_code = "STEP_NOT_FOUND"


# --- 409 ---

class ConflictError(DomainError):
    error_code, http_status = "CONFLICT", 409


class ConcurrencyError(ConflictError):
    """The instance kept changing underneath us through every allowed retry"""
    error_code = "CONCURRENCY_CONFLICT"


class AlreadyExistsError(ConflictError):
    error_code = "ALREADY_EXISTS"


class ActiveInstanceExists(AlreadyExistsError):
    """The asset already has a non-terminal instance of this flow chain"""
    error_code = "ACTIVE_INSTANCE_EXISTS"


class StepNotActive(ConflictError):
    error_code = "STEP_NOT_ACTIVE"


class InstanceTerminal(ConflictError):
    error_code = "INSTANCE_TERMINAL"


class InstanceBlocked(ConflictError):
    """Decisions are refused until an operator overrides the instance"""
    error_code = "INSTANCE_BLOCKED"


# --- engine halts, never reach the caller of a decision directly ---

class EngineError(DomainError):
    error_code, http_status = "ENGINE_ERROR", 500


class StuckInstance(EngineError):
    """A stage or step resolution matched no transition"""
    error_code, http_status = "STUCK_INSTANCE", 422


class MaxRetriesExceeded(EngineError):
    """A stage was entered more often than the rework bound allows"""
    error_code, http_status = "MAX_RETRIES_EXCEEDED", 422


# --- 502 ---

class ExternalServiceError(DomainError):
    error_code, http_status = "EXTERNAL_SERVICE_ERROR", 502


class RoleServiceError(ExternalServiceError):
    error_code = "ROLE_SERVICE_ERROR"
