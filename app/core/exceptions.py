"""SSO error kinds.

Each kind is an ``HTTPException`` so FastAPI renders it directly with the
matching status and a ``{"error": <kind>, "message": <text>}`` body.
``security_relevant`` marks rejections that may indicate an attack or a broken
IdP trust relationship; they are logged on the security logger and audited.
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class SSOError(HTTPException):
    http_status: int = status.HTTP_400_BAD_REQUEST
    error_code: str = "sso_error"
    security_relevant: bool = False

    def __init__(self, message: str, *, extra: Optional[Dict[str, Any]] = None):
        detail: Dict[str, Any] = {"error": self.error_code, "message": message}
        if extra:
            detail.update(extra)
        super().__init__(status_code=self.http_status, detail=detail)
        self.message = message

    def __str__(self) -> str:
        return f"{self.error_code}: {self.message}"


class NotFoundError(SSOError):
    http_status = status.HTTP_404_NOT_FOUND
    error_code = "not_found"


class PlanRestrictedError(SSOError):
    http_status = status.HTTP_403_FORBIDDEN
    error_code = "plan_restricted"


class ConflictError(SSOError):
    http_status = status.HTTP_409_CONFLICT
    error_code = "conflict"


class InvalidConfigError(SSOError):
    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "invalid_config"


class DomainMismatchError(SSOError):
    http_status = status.HTTP_403_FORBIDDEN
    error_code = "domain_mismatch"
    security_relevant = True


class CertMismatchError(SSOError):
    http_status = status.HTTP_401_UNAUTHORIZED
    error_code = "cert_mismatch"
    security_relevant = True


class InvalidOrExpiredStateError(SSOError):
    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "invalid_or_expired_state"


class DiscoveryFailedError(SSOError):
    http_status = status.HTTP_502_BAD_GATEWAY
    error_code = "discovery_failed"


class TokenExchangeFailedError(SSOError):
    http_status = status.HTTP_502_BAD_GATEWAY
    error_code = "token_exchange_failed"


class InvalidTokenError(SSOError):
    http_status = status.HTTP_401_UNAUTHORIZED
    error_code = "invalid_token"
    security_relevant = True


class MissingEmailClaimError(SSOError):
    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "missing_email_claim"


class MalformedResponseError(SSOError):
    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "malformed_response"
