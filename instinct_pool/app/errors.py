"""
=============================================================================
INSTINCT POOL - Errores Tipados del Motor de Liquidación
=============================================================================
Cada fallo del motor se expone como una excepción tipada para que el cliente
pueda distinguir "reintentar más tarde" de "esto es terminal".

Principios:
- Ningún fallo se traga en silencio
- Un fallo nunca deja estado parcial: reintentar es seguro
- Cada tipo lleva un `code` estable y una bandera `retryable`
=============================================================================
"""

from typing import Any, Dict, Optional


class PoolError(Exception):
    """Clase base para todos los fallos del motor."""

    code = "POOL_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


# =============================================================================
# AUTORIZACIÓN
# =============================================================================

class AuthorizationError(PoolError):
    """Un no-operador invocó una operación exclusiva del operador."""
    code = "AUTHORIZATION_FAILURE"


# =============================================================================
# ESTADO INVÁLIDO
# =============================================================================

class InvalidStateError(PoolError):
    """La operación no está permitida en el estado actual."""
    code = "INVALID_STATE"


class InvalidRunStatusError(InvalidStateError):
    code = "INVALID_RUN_STATUS"


class RunNotSettledError(InvalidStateError):
    code = "RUN_NOT_SETTLED"
    retryable = True


class PlatformPausedError(InvalidStateError):
    code = "PLATFORM_PAUSED"
    retryable = True


class PlatformNotPausedError(InvalidStateError):
    code = "PLATFORM_NOT_PAUSED"


class PlatformNotInitializedError(InvalidStateError):
    code = "PLATFORM_NOT_INITIALIZED"


class RunNotFoundError(InvalidStateError):
    code = "RUN_NOT_FOUND"


class ParticipationNotFoundError(InvalidStateError):
    code = "PARTICIPATION_NOT_FOUND"


class StaleStateError(InvalidStateError):
    """El registro cambió entre la lectura y la escritura (compare-and-update)."""
    code = "STALE_STATE"
    retryable = True


# =============================================================================
# RANGOS, BALANCES Y ARITMÉTICA
# =============================================================================

class OutOfRangeError(PoolError):
    """Monto, conteo de participantes, fee o votos fuera de la política."""
    code = "OUT_OF_RANGE"


class BalanceMismatchError(PoolError):
    """El balance reportado no coincide con el balance real en custodia."""
    code = "BALANCE_MISMATCH"
    retryable = True


class ArithmeticOverflowError(PoolError):
    """Un paso aritmético verificado desbordaría el dominio permitido."""
    code = "ARITHMETIC_OVERFLOW"


class InsufficientFundsError(PoolError):
    """El pago calculado excede el balance disponible en custodia."""
    code = "INSUFFICIENT_FUNDS"
    retryable = True


# =============================================================================
# OPERACIONES YA REALIZADAS
# =============================================================================

class AlreadyDoneError(PoolError):
    """Operación duplicada (inicialización o retiro repetido)."""
    code = "ALREADY_DONE"


class AlreadyWithdrawnError(AlreadyDoneError):
    code = "ALREADY_WITHDRAWN"
