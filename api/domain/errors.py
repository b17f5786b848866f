# SPDX-License-Identifier: Apache-2.0

"""
Error taxonomy for the passwordless authentication flow.

Every failure the flow can report is one of the closed set of codes in
AuthErrorCode. Callers match on the code, never on message text.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class AuthErrorCode(str, Enum):
    """Closed set of error codes returned by the auth flow."""
    INVALID_PHONE = "INVALID_PHONE"
    RATE_LIMITED = "RATE_LIMITED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    OTP_INVALID = "OTP_INVALID"
    OTP_EXPIRED = "OTP_EXPIRED"
    OTP_ALREADY_USED = "OTP_ALREADY_USED"
    SID_EXPIRED = "SID_EXPIRED"
    MAGIC_LINK_INVALID = "MAGIC_LINK_INVALID"
    MAGIC_LINK_EXPIRED = "MAGIC_LINK_EXPIRED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    USER_CREATION_CONFLICT = "USER_CREATION_CONFLICT"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    USER_NOT_FOUND = "USER_NOT_FOUND"


class ErrorCategory(str, Enum):
    """How a caller is expected to recover from an error."""
    INPUT = "input"
    FLOW_CONTROL = "flow_control"
    SESSION_STATE = "session_state"
    CONFLICT = "conflict"
    DELIVERY = "delivery"


_HTTP_STATUS = {
    AuthErrorCode.INVALID_PHONE: 400,
    AuthErrorCode.RATE_LIMITED: 429,
    AuthErrorCode.DELIVERY_FAILED: 503,
    AuthErrorCode.OTP_INVALID: 401,
    AuthErrorCode.OTP_EXPIRED: 410,
    AuthErrorCode.OTP_ALREADY_USED: 409,
    AuthErrorCode.SID_EXPIRED: 404,
    AuthErrorCode.MAGIC_LINK_INVALID: 404,
    AuthErrorCode.MAGIC_LINK_EXPIRED: 410,
    AuthErrorCode.VALIDATION_ERROR: 422,
    AuthErrorCode.USER_CREATION_CONFLICT: 409,
    AuthErrorCode.ILLEGAL_TRANSITION: 409,
    AuthErrorCode.USER_NOT_FOUND: 404,
}

_CATEGORY = {
    AuthErrorCode.INVALID_PHONE: ErrorCategory.INPUT,
    AuthErrorCode.VALIDATION_ERROR: ErrorCategory.INPUT,
    AuthErrorCode.RATE_LIMITED: ErrorCategory.FLOW_CONTROL,
    AuthErrorCode.DELIVERY_FAILED: ErrorCategory.DELIVERY,
    AuthErrorCode.OTP_INVALID: ErrorCategory.SESSION_STATE,
    AuthErrorCode.OTP_EXPIRED: ErrorCategory.SESSION_STATE,
    AuthErrorCode.OTP_ALREADY_USED: ErrorCategory.SESSION_STATE,
    AuthErrorCode.SID_EXPIRED: ErrorCategory.SESSION_STATE,
    AuthErrorCode.MAGIC_LINK_INVALID: ErrorCategory.SESSION_STATE,
    AuthErrorCode.MAGIC_LINK_EXPIRED: ErrorCategory.SESSION_STATE,
    AuthErrorCode.ILLEGAL_TRANSITION: ErrorCategory.SESSION_STATE,
    AuthErrorCode.USER_NOT_FOUND: ErrorCategory.SESSION_STATE,
    AuthErrorCode.USER_CREATION_CONFLICT: ErrorCategory.CONFLICT,
}

_MESSAGES = {
    AuthErrorCode.INVALID_PHONE: "Número de telefone inválido",
    AuthErrorCode.RATE_LIMITED: "Aguarde {retry_after} segundos para solicitar novo código",
    AuthErrorCode.DELIVERY_FAILED: "Não foi possível enviar o código. Tente novamente",
    AuthErrorCode.OTP_INVALID: "Código incorreto, tente novamente",
    AuthErrorCode.OTP_EXPIRED: "Código expirado, solicite um novo código",
    AuthErrorCode.OTP_ALREADY_USED: "Este código já foi utilizado",
    AuthErrorCode.SID_EXPIRED: "Sessão expirada ou inválida",
    AuthErrorCode.MAGIC_LINK_INVALID: "Link inválido",
    AuthErrorCode.MAGIC_LINK_EXPIRED: "Link expirado, solicite um novo código",
    AuthErrorCode.VALIDATION_ERROR: "Dados inválidos",
    AuthErrorCode.USER_CREATION_CONFLICT: "Conta em criação, tente novamente",
    AuthErrorCode.ILLEGAL_TRANSITION: "Operação inválida para a etapa atual",
    AuthErrorCode.USER_NOT_FOUND: "Usuário não encontrado",
}


@dataclass(frozen=True)
class AuthError:
    """Typed error returned by flow operations."""
    code: AuthErrorCode
    message: str
    retry_after: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return http_status_for(self.code)

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORY[self.code]

    @property
    def retryable(self) -> bool:
        """Whether retrying the same action can succeed without restarting."""
        return self.category in (
            ErrorCategory.FLOW_CONTROL,
            ErrorCategory.CONFLICT,
            ErrorCategory.DELIVERY,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.retry_after is not None:
            data["retryAfter"] = self.retry_after
        data.update(self.details)
        return data


def http_status_for(code: AuthErrorCode) -> int:
    """Map an error code to its HTTP status."""
    return _HTTP_STATUS[code]


def auth_error(code: AuthErrorCode, message: Optional[str] = None,
               retry_after: Optional[int] = None, **details: Any) -> AuthError:
    """
    Build an AuthError with the default user-facing message for its code.

    Args:
        code: Error code
        message: Optional message overriding the default
        retry_after: Seconds to wait before retrying (rate limits)
        **details: Extra fields surfaced to the client

    Returns:
        AuthError instance
    """
    if message is None:
        message = _MESSAGES[code].format(retry_after=retry_after)
    return AuthError(code=code, message=message, retry_after=retry_after, details=details)
