"""
=============================================================================
INSTINCT POOL - Aritmética Verificada
=============================================================================
Todos los montos viven en unidades base del token (enteros sin signo de 64
bits). Las multiplicaciones usan un intermedio de 128 bits. Cualquier paso
que salga del dominio aborta la operación completa: nunca se envuelve ni se
satura en silencio un valor que afecta fondos.
=============================================================================
"""

from .errors import ArithmeticOverflowError, OutOfRangeError


U64_MAX = 2**64 - 1
U128_MAX = 2**128 - 1


def ensure_u64(value: int, label: str = "value") -> int:
    """Valida que un monto externo pertenezca al dominio u64."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise OutOfRangeError(f"{label} must be an integer amount of base units")
    if value < 0 or value > U64_MAX:
        raise OutOfRangeError(f"{label} outside the u64 domain: {value}")
    return value


def checked_add(a: int, b: int) -> int:
    result = a + b
    if result > U64_MAX:
        raise ArithmeticOverflowError(f"addition overflow: {a} + {b}")
    return result


def checked_sub(a: int, b: int) -> int:
    if b > a:
        raise ArithmeticOverflowError(f"subtraction underflow: {a} - {b}")
    return a - b


def checked_mul(a: int, b: int, limit: int = U128_MAX) -> int:
    result = a * b
    if result > limit:
        raise ArithmeticOverflowError(f"multiplication overflow: {a} * {b}")
    return result


def mul_div_floor(a: int, b: int, denominator: int) -> int:
    """
    Calcula floor(a * b / denominator) con intermedio de 128 bits.

    El resultado debe volver a caber en u64; si no, se rechaza.
    """
    if denominator == 0:
        raise ArithmeticOverflowError("division by zero")
    product = checked_mul(a, b)
    result = product // denominator
    if result > U64_MAX:
        raise ArithmeticOverflowError(f"result exceeds u64: {a} * {b} / {denominator}")
    return result
