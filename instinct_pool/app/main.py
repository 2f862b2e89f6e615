"""
=============================================================================
INSTINCT POOL - Punto de Entrada Principal (FastAPI + Socket.IO)
=============================================================================
Servicio del motor de liquidación del pool de fondos custodiados.

Integra:
- FastAPI para REST API
- Socket.IO para eventos de runs en tiempo real
- SQLAlchemy async para persistencia (si INSTINCT_DATABASE_URL está definido)
- Middleware de seguridad y CORS

Ejecutar:
    uvicorn instinct_pool.app.main:combined_app
=============================================================================
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import socketio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import PoolService, operator_router, participant_router, public_router
from .config import PoolConfig, configure_logging
from .custody import InMemoryCustody
from .database import PoolRepository, create_session_factory, init_models
from .engine import PoolEngine
from .errors import (
    AlreadyDoneError,
    ArithmeticOverflowError,
    AuthorizationError,
    BalanceMismatchError,
    InsufficientFundsError,
    InvalidStateError,
    OutOfRangeError,
    ParticipationNotFoundError,
    PoolError,
    RunNotFoundError,
)
from .events import sio


logger = logging.getLogger(__name__)

VERSION = "0.1.0"

# El tipo más específico gana (se recorre el MRO de la excepción)
ERROR_STATUS = {
    RunNotFoundError: 404,
    ParticipationNotFoundError: 404,
    AuthorizationError: 403,
    InvalidStateError: 409,
    BalanceMismatchError: 409,
    InsufficientFundsError: 409,
    AlreadyDoneError: 409,
    OutOfRangeError: 422,
    ArithmeticOverflowError: 422,
}


def status_for(exc: PoolError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


# =============================================================================
# LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestiona el ciclo de vida de la aplicación."""
    config: PoolConfig = app.state.config
    configure_logging(config)
    logger.info("[INSTINCT] Starting service v%s", VERSION)

    db_engine = None
    if app.state.service is None:
        custody = InMemoryCustody()
        repository = None
        state = ledger = None
        if config.DATABASE_URL:
            db_engine, session_factory = create_session_factory(config.DATABASE_URL)
            await init_models(db_engine)
            repository = PoolRepository(session_factory)
            state, ledger = await repository.load_state()
            custody.balances.update(await repository.load_balances())
            chain = ledger.verify_chain()
            if chain["integrity_status"] != "OK":
                logger.critical("[LEDGER] Broken entries on load: %s", chain["broken_entries"])
        app.state.service = PoolService(
            PoolEngine(config=config, custody=custody, state=state, ledger=ledger),
            repository,
        )

    if not config.OPERATOR_API_KEY:
        logger.warning("[INSTINCT] INSTINCT_OPERATOR_API_KEY not set, operator routes disabled")
    if not config.PARTICIPANT_TOKEN_SECRET:
        logger.warning(
            "[INSTINCT] INSTINCT_PARTICIPANT_TOKEN_SECRET not set, participant ids are unverified"
        )
    yield

    logger.info("[INSTINCT] Shutting down")
    if db_engine is not None:
        await db_engine.dispose()


# =============================================================================
# APLICACIÓN FASTAPI
# =============================================================================

def create_app(
    config: Optional[PoolConfig] = None,
    service: Optional[PoolService] = None,
) -> FastAPI:
    """
    Construye la aplicación. `service` permite inyectar un motor ya armado
    (pruebas o custodia externa).
    """
    app = FastAPI(
        title="Instinct Pool API",
        description="""
        ## Motor de liquidación de pools de fondos custodiados

        ### Estados del Run (FSM):
        WAITING -> ACTIVE -> SETTLED

        ### Montos:
        Enteros en unidades base del token (USDC = 6 decimales)
        """,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.config = config or (service.engine.config if service else PoolConfig.from_env())
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configurar dominios específicos en producción
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Agrega headers de seguridad a las respuestas."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.exception_handler(PoolError)
    async def pool_error_handler(request: Request, exc: PoolError):
        status_code = status_for(exc)
        if status_code >= 409:
            logger.warning("[API] %s %s -> %s: %s", request.method, request.url.path, exc.code, exc)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/health")
    async def health_check():
        """Endpoint de health check para Docker y load balancers."""
        return {
            "status": "healthy",
            "service": "instinct-pool",
            "version": VERSION,
            "timestamp": time.time()
        }

    app.include_router(public_router, prefix="/api/v1")
    app.include_router(participant_router, prefix="/api/v1")
    app.include_router(operator_router, prefix="/api/v1")
    return app


app = create_app()

# Socket.IO envuelve a FastAPI para que los upgrades de WebSocket funcionen
combined_app = socketio.ASGIApp(sio, other_asgi_app=app)
