"""
=============================================================================
INSTINCT POOL - Configuración del Motor
=============================================================================
Umbrales de política del pool y parámetros del servicio.

Jerarquía (mayor a menor prioridad):
1. Variables de entorno con prefijo INSTINCT_
2. Valores por defecto de PoolConfig
=============================================================================
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

ENV_PREFIX = "INSTINCT_"


@dataclass
class PoolConfig:
    """Configuración de políticas del pool y del servicio."""

    # Comisión de la plataforma (basis points, 10000 = 100%)
    MAX_FEE_BPS: int = 2000
    DEFAULT_FEE_BPS: int = 1500

    # Límites de participantes por run
    MIN_PARTICIPANTS_LIMIT: int = 2
    MAX_PARTICIPANTS_LIMIT: int = 1000
    MIN_PARTICIPANTS_TO_START: int = 2

    # Duración mínima de la fase activa antes de liquidar (segundos)
    MIN_RUN_DURATION_SECONDS: int = 300

    # Estadísticas de decisiones: 1% de bono por decisión correcta
    MAX_DECISIONS: int = 12
    BONUS_PERCENT_PER_DECISION: int = 1

    # "net": beneficio después del fee | "gross": beneficio antes del fee
    BONUS_PROFIT_BASIS: str = "net"

    # Retiro de emergencia en dos fases (0 = ejecución inmediata)
    EMERGENCY_TIMELOCK_SECONDS: int = 0

    # Token de custodia (USDC: 6 decimales)
    TOKEN_DECIMALS: int = 6
    TOKEN_SYMBOL: str = "USDC"

    # Servicio
    OPERATOR_ID: str = "operator"
    OPERATOR_API_KEY: str = ""
    # Vacío = X-Participant-Id sin verificar (solo desarrollo)
    PARTICIPANT_TOKEN_SECRET: str = ""
    DATABASE_URL: Optional[str] = None
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # text | json

    def __post_init__(self):
        if not 0 <= self.MAX_FEE_BPS <= 10000:
            raise ValueError("MAX_FEE_BPS must be within [0, 10000]")
        if not 0 <= self.DEFAULT_FEE_BPS <= self.MAX_FEE_BPS:
            raise ValueError("DEFAULT_FEE_BPS must be within [0, MAX_FEE_BPS]")
        if self.MIN_PARTICIPANTS_LIMIT < 2:
            raise ValueError("MIN_PARTICIPANTS_LIMIT must be at least 2")
        if self.MAX_PARTICIPANTS_LIMIT < self.MIN_PARTICIPANTS_LIMIT:
            raise ValueError("MAX_PARTICIPANTS_LIMIT must be >= MIN_PARTICIPANTS_LIMIT")
        if self.MIN_PARTICIPANTS_TO_START < 2:
            raise ValueError("MIN_PARTICIPANTS_TO_START must be greater than 1")
        if self.MIN_RUN_DURATION_SECONDS < 0:
            raise ValueError("MIN_RUN_DURATION_SECONDS must be non-negative")
        if self.MAX_DECISIONS <= 0:
            raise ValueError("MAX_DECISIONS must be positive")
        if self.BONUS_PROFIT_BASIS not in ("net", "gross"):
            raise ValueError("BONUS_PROFIT_BASIS must be 'net' or 'gross'")
        if self.EMERGENCY_TIMELOCK_SECONDS < 0:
            raise ValueError("EMERGENCY_TIMELOCK_SECONDS must be non-negative")
        if self.LOG_FORMAT not in ("text", "json"):
            raise ValueError("LOG_FORMAT must be 'text' or 'json'")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "PoolConfig":
        """
        Construye la configuración aplicando overrides de entorno.

        Ejemplo:
            INSTINCT_MAX_FEE_BPS=1000
            INSTINCT_DATABASE_URL=postgresql+asyncpg://...
        """
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}

        for f in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{f.name}")
            if raw is None:
                continue
            if f.type in (int, "int"):
                overrides[f.name] = int(raw)
            else:
                overrides[f.name] = raw

        if overrides:
            logger.info("[CONFIG] Overrides from environment: %s", sorted(overrides))
        return cls(**overrides)


# =============================================================================
# LOGGING
# =============================================================================

class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(config: PoolConfig) -> None:
    """Instala el handler raíz según LOG_LEVEL y LOG_FORMAT."""
    handler = logging.StreamHandler()
    if config.LOG_FORMAT == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(config.LOG_LEVEL.upper())
