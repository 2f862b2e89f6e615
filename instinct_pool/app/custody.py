"""
=============================================================================
INSTINCT POOL - Colaborador de Custodia de Activos
=============================================================================
Interfaz mínima con la custodia del token estable: consultar balance y
transferir entre cuentas. El motor nunca acuña ni quema; eso es del host.

En producción, esto debe ser reemplazado por el programa de custodia del
token (transferencias firmadas). La implementación en memoria sirve para el
servicio de desarrollo y las pruebas.
=============================================================================
"""

import logging
from collections import defaultdict
from typing import Dict, Protocol, Sequence, Tuple

from .checked_math import U64_MAX
from .errors import ArithmeticOverflowError, InsufficientFundsError, OutOfRangeError
from .ledger_types import PoolState, Run, RunStatus, Update


logger = logging.getLogger(__name__)


class CustodyBackend(Protocol):
    """Operaciones que el motor necesita del colaborador de custodia."""

    def open_account(self, account: str) -> None:
        ...

    def balance_of(self, account: str) -> int:
        ...

    def transfer(self, source: str, destination: str, amount: int) -> None:
        ...


class InMemoryCustody:
    """
    Custodia en memoria. Cada transferencia es atómica: valida ambos lados
    antes de mover una sola unidad.
    """

    def __init__(self):
        self.balances: Dict[str, int] = defaultdict(int)

    def open_account(self, account: str) -> None:
        self.balances.setdefault(account, 0)

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def transfer(self, source: str, destination: str, amount: int) -> None:
        if amount <= 0:
            raise OutOfRangeError(f"transfer amount must be positive: {amount}")
        available = self.balance_of(source)
        if available < amount:
            raise InsufficientFundsError(
                f"account {source} holds {available}, cannot move {amount}",
                {"account": source, "available": available, "requested": amount},
            )
        if self.balance_of(destination) + amount > U64_MAX:
            raise ArithmeticOverflowError(f"account {destination} would overflow u64")

        self.balances[source] = available - amount
        self.balances[destination] += amount
        logger.debug("[CUSTODY] %s -> %s: %s", source, destination, amount)

    # Operaciones del host (fondeo de billeteras, resultado del trading)

    def mint(self, account: str, amount: int) -> None:
        if self.balance_of(account) + amount > U64_MAX:
            raise ArithmeticOverflowError(f"account {account} would overflow u64")
        self.balances[account] += amount

    def burn(self, account: str, amount: int) -> None:
        available = self.balance_of(account)
        if available < amount:
            raise InsufficientFundsError(f"account {account} holds {available}")
        self.balances[account] = available - amount


# =============================================================================
# TRANSFERENCIA + CONTABILIDAD ATÓMICA
# =============================================================================

def transfer_and_commit(
    custody: CustodyBackend,
    state: PoolState,
    source: str,
    destination: str,
    amount: int,
    updates: Sequence[Update],
    transitions: Sequence[Tuple[Run, RunStatus]] = (),
) -> None:
    """
    Orden obligatorio: verificar -> transferir -> registrar.

    Si el registro falla después de transferir, la transferencia se revierte
    antes de propagar el error: nunca queda un movimiento sin contabilidad.
    """
    state.verify_versions(updates)
    if amount > 0:
        custody.transfer(source, destination, amount)
    try:
        state.commit(updates, transitions)
    except Exception:
        if amount > 0:
            custody.transfer(destination, source, amount)
            logger.error(
                "[CUSTODY] Bookkeeping failed, reversed %s from %s to %s",
                amount, destination, source,
            )
        raise
