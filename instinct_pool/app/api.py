"""
=============================================================================
INSTINCT POOL - Endpoints REST
=============================================================================
API REST del motor de liquidación.
Incluye:
- Operador (/operator): plataforma, ciclo de vida de runs, estadísticas de
  decisiones, fees y emergencia. Autenticado con API key Bearer.
- Participantes (/runs/{run_id}): depósito, retiro y vista previa del pago,
  identificados con el header X-Participant-Id (y X-Participant-Token
  cuando hay secreto configurado).
- Consultas públicas de solo lectura.

Montos: enteros en unidades base del token (USDC = 6 decimales).
=============================================================================
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .checked_math import U64_MAX
from .custody import InMemoryCustody
from .database import PoolRepository
from .engine import PoolEngine
from .errors import OutOfRangeError
from .events import broadcast


logger = logging.getLogger(__name__)


# =============================================================================
# SERVICIO
# =============================================================================

class PoolService:
    """
    Motor + persistencia opcional.
    Las mutaciones se serializan: operación -> persistencia -> evento.
    Si la persistencia falla, el motor vuelve al checkpoint previo y el
    error se propaga: memoria y BD nunca divergen.
    """

    def __init__(self, engine: PoolEngine, repository: Optional[PoolRepository] = None):
        self.engine = engine
        self.repository = repository
        self.lock = asyncio.Lock()

    async def persist(self) -> None:
        if self.repository is None:
            return
        balances = None
        if isinstance(self.engine.custody, InMemoryCustody):
            balances = dict(self.engine.custody.balances)
        await self.repository.save_state(self.engine.state, self.engine.ledger, balances)

    async def execute(self, operation: Callable[..., Any], *args: Any) -> Any:
        async with self.lock:
            if self.repository is None:
                return operation(*args)
            checkpoint = self.engine.checkpoint()
            result = operation(*args)
            try:
                await self.persist()
            except Exception:
                logger.exception(
                    "[DB] Persist failed, rolling back %s", getattr(operation, "__name__", operation)
                )
                self.engine.rollback(checkpoint)
                raise
        return result


def get_service(request: Request) -> PoolService:
    return request.app.state.service


# =============================================================================
# SECURITY
# =============================================================================

security = HTTPBearer()


async def get_operator(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """
    Verifica la API key del operador y retorna su identidad.
    Sin API key configurada, ningún endpoint de operador está disponible.
    """
    config = request.app.state.service.engine.config
    expected = config.OPERATOR_API_KEY
    if not expected or not secrets.compare_digest(
        credentials.credentials.encode(), expected.encode()
    ):
        logger.warning("[ACCESS] Rejected operator credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid operator credentials",
        )
    return config.OPERATOR_ID


def issue_participant_token(secret: str, participant: str) -> str:
    """Token HMAC-SHA256 que el operador entrega a cada participante."""
    return hmac.new(secret.encode(), participant.encode(), hashlib.sha256).hexdigest()


async def get_participant(
    request: Request,
    participant_id: str = Header(..., alias="X-Participant-Id", min_length=1, max_length=255),
    token: Optional[str] = Header(None, alias="X-Participant-Token"),
) -> str:
    """
    Identidad del participante.

    SOLO DESARROLLO: sin INSTINCT_PARTICIPANT_TOKEN_SECRET el header
    X-Participant-Id se acepta sin verificar. Con el secreto configurado,
    cada request debe traer X-Participant-Token = HMAC-SHA256(secreto, id).
    """
    secret = request.app.state.service.engine.config.PARTICIPANT_TOKEN_SECRET
    if not secret:
        return participant_id
    expected = issue_participant_token(secret, participant_id)
    if token is None or not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning("[ACCESS] Rejected participant token for %s", participant_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid participant token",
        )
    return participant_id


# =============================================================================
# SCHEMAS
# =============================================================================

class PlatformCreateRequest(BaseModel):
    fee_bps: Optional[int] = Field(None, ge=0, le=10000)


class FeeRateRequest(BaseModel):
    fee_bps: int = Field(..., ge=0, le=10000)


class RunCreateRequest(BaseModel):
    run_id: int = Field(..., ge=0, le=U64_MAX)
    min_deposit: int = Field(..., ge=0, le=U64_MAX)
    max_deposit: int = Field(..., ge=0, le=U64_MAX)
    max_participants: int = Field(..., ge=0)


class SettleRequest(BaseModel):
    final_balance: int = Field(..., ge=0, le=U64_MAX)


class DecisionOutcomeRequest(BaseModel):
    participant: str = Field(..., min_length=1, max_length=255)
    correct: int = Field(..., ge=0)
    total: int = Field(..., ge=0)


class TransferRequest(BaseModel):
    """Monto y destino (retiro de fees o de emergencia)."""
    amount: int = Field(..., gt=0, le=U64_MAX)
    destination: str = Field(..., min_length=1, max_length=255)


class DepositRequest(BaseModel):
    amount: int = Field(..., gt=0, le=U64_MAX)


class CustodyCreditRequest(BaseModel):
    """Acreditación de la custodia de desarrollo (fondeo o resultado del trading)."""
    account: str = Field(..., min_length=1, max_length=255)
    amount: int = Field(..., gt=0, le=U64_MAX)


def platform_to_dict(platform) -> Dict[str, Any]:
    return {
        "operator": platform.operator,
        "fee_bps": platform.fee_bps,
        "total_runs": platform.total_runs,
        "is_paused": platform.is_paused,
        "total_fees_collected": platform.total_fees_collected,
        "fees_withdrawn": platform.fees_withdrawn,
        "fee_account": platform.fee_account,
    }


# =============================================================================
# ROUTERS
# =============================================================================

operator_router = APIRouter(prefix="/operator", tags=["Operator"])
participant_router = APIRouter(prefix="/runs", tags=["Participants"])
public_router = APIRouter(tags=["Public"])


# -----------------------------------------------------------------------------
# Operador: plataforma
# -----------------------------------------------------------------------------

@operator_router.post("/platform", status_code=status.HTTP_201_CREATED)
async def create_platform(
    body: PlatformCreateRequest,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    platform = await service.execute(service.engine.create_platform, operator, body.fee_bps)
    return platform_to_dict(platform)


@operator_router.post("/platform/pause")
async def pause_platform(
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    platform = await service.execute(service.engine.pause, operator)
    await broadcast("platform:paused", {"operator": operator})
    return platform_to_dict(platform)


@operator_router.post("/platform/resume")
async def resume_platform(
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    platform = await service.execute(service.engine.resume, operator)
    await broadcast("platform:resumed", {"operator": operator})
    return platform_to_dict(platform)


@operator_router.put("/platform/fee")
async def set_fee_rate(
    body: FeeRateRequest,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    platform = await service.execute(service.engine.set_fee_rate, operator, body.fee_bps)
    return platform_to_dict(platform)


@operator_router.post("/fees/withdraw")
async def withdraw_collected_fees(
    body: TransferRequest,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    platform = await service.execute(
        service.engine.withdraw_collected_fees, operator, body.amount, body.destination
    )
    return platform_to_dict(platform)


@operator_router.get("/treasury")
async def treasury_summary(
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    summary = service.engine.treasury_summary()
    summary["chain"] = service.engine.ledger.verify_chain()
    return summary


@operator_router.get("/audit")
async def audit_platform(
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    return service.engine.audit_platform().to_dict()


@operator_router.post("/custody/credit")
async def credit_custody(
    body: CustodyCreditRequest,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    """
    Solo para la custodia en memoria: fondea billeteras de prueba
    (`wallet:<participante>`) o acredita el resultado del trading en un vault.
    """
    custody = service.engine.custody
    if not isinstance(custody, InMemoryCustody):
        raise OutOfRangeError("Custody credits are only available with development custody")
    await service.execute(custody.mint, body.account, body.amount)
    logger.info("[CUSTODY] %s credited %s to %s", operator, body.amount, body.account)
    return {"account": body.account, "balance": custody.balance_of(body.account)}


@operator_router.post("/participants/{participant}/token")
async def create_participant_token(
    participant: str,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    """Emite el token que el participante envía en X-Participant-Token."""
    secret = service.engine.config.PARTICIPANT_TOKEN_SECRET
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Participant tokens are disabled",
        )
    logger.info("[ACCESS] %s issued a token for %s", operator, participant)
    return {"participant": participant, "token": issue_participant_token(secret, participant)}


# -----------------------------------------------------------------------------
# Operador: ciclo de vida de runs
# -----------------------------------------------------------------------------

@operator_router.post("/runs", status_code=status.HTTP_201_CREATED)
async def create_run(
    body: RunCreateRequest,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    run = await service.execute(
        service.engine.create_run,
        operator, body.run_id, body.min_deposit, body.max_deposit, body.max_participants,
    )
    snapshot = run.snapshot()
    await broadcast("run:created", snapshot)
    return snapshot


@operator_router.post("/runs/{run_id}/start")
async def start_run(
    run_id: int,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    run = await service.execute(service.engine.start_run, operator, run_id)
    snapshot = run.snapshot()
    await broadcast("run:started", snapshot, run_id=run_id)
    return snapshot


@operator_router.post("/runs/{run_id}/settle")
async def settle_run(
    run_id: int,
    body: SettleRequest,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    breakdown = await service.execute(
        service.engine.settle_run, operator, run_id, body.final_balance
    )
    payload = {"run_id": run_id, **breakdown.to_dict()}
    await broadcast("run:settled", payload, run_id=run_id)
    return payload


@operator_router.post("/runs/{run_id}/votes")
async def record_decision_outcome(
    run_id: int,
    body: DecisionOutcomeRequest,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    participation = await service.execute(
        service.engine.record_decision_outcome,
        operator, run_id, body.participant, body.correct, body.total,
    )
    return participation.snapshot()


@operator_router.get("/runs/{run_id}/audit")
async def audit_run(
    run_id: int,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    return service.engine.audit_run(run_id).to_dict()


# -----------------------------------------------------------------------------
# Operador: emergencia
# -----------------------------------------------------------------------------

@operator_router.post("/runs/{run_id}/emergency/request")
async def request_emergency_withdraw(
    run_id: int,
    body: TransferRequest,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    request = await service.execute(
        service.engine.request_emergency_withdraw,
        operator,
        run_id,
        body.amount,
        body.destination,
    )
    delay = service.engine.config.EMERGENCY_TIMELOCK_SECONDS
    return {
        "run_id": request.run_id,
        "amount": request.amount,
        "destination": request.destination,
        "requested_at": request.requested_at,
        "executable_at": request.executable_at(delay),
    }


@operator_router.post("/runs/{run_id}/emergency/cancel")
async def cancel_emergency_withdraw(
    run_id: int,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    request = await service.execute(service.engine.cancel_emergency_withdraw, operator, run_id)
    return {"run_id": request.run_id, "cancelled": True}


@operator_router.post("/runs/{run_id}/emergency")
async def emergency_withdraw(
    run_id: int,
    body: TransferRequest,
    operator: str = Depends(get_operator),
    service: PoolService = Depends(get_service),
):
    run = await service.execute(
        service.engine.emergency_withdraw, operator, run_id, body.amount, body.destination
    )
    return run.snapshot()


# -----------------------------------------------------------------------------
# Participantes
# -----------------------------------------------------------------------------

@participant_router.post("/{run_id}/deposit")
async def deposit(
    run_id: int,
    body: DepositRequest,
    participant: str = Depends(get_participant),
    service: PoolService = Depends(get_service),
):
    participation = await service.execute(
        service.engine.deposit, participant, run_id, body.amount
    )
    return participation.snapshot()


@participant_router.post("/{run_id}/withdraw")
async def withdraw(
    run_id: int,
    participant: str = Depends(get_participant),
    service: PoolService = Depends(get_service),
):
    quote = await service.execute(service.engine.withdraw, participant, run_id)
    payload = {"run_id": run_id, **quote.to_dict()}
    await broadcast("run:withdrawal", payload, run_id=run_id)
    return payload


@participant_router.get("/{run_id}/payout-preview")
async def preview_payout(
    run_id: int,
    participant: str = Depends(get_participant),
    service: PoolService = Depends(get_service),
):
    quote = service.engine.preview_payout(run_id, participant)
    return {
        "run_id": run_id,
        "formatted_payout": service.engine.format_amount(quote.payout),
        **quote.to_dict(),
    }


# -----------------------------------------------------------------------------
# Consultas públicas
# -----------------------------------------------------------------------------

@public_router.get("/platform")
async def get_platform(service: PoolService = Depends(get_service)):
    return platform_to_dict(service.engine.get_platform())


@public_router.get("/runs/{run_id}")
async def get_run(run_id: int, service: PoolService = Depends(get_service)):
    snapshot = service.engine.get_run(run_id).snapshot()
    snapshot["custody_balance"] = service.engine.custody_balance(run_id)
    return snapshot


@public_router.get("/runs/{run_id}/participations")
async def list_participations(
    run_id: int, service: PoolService = Depends(get_service)
) -> List[Dict[str, Any]]:
    return [p.snapshot() for p in service.engine.list_participations(run_id)]


@public_router.get("/runs/{run_id}/participations/{participant}")
async def get_participation(
    run_id: int, participant: str, service: PoolService = Depends(get_service)
):
    return service.engine.get_participation(run_id, participant).snapshot()
