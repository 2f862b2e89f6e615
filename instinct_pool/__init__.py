"""
Instinct Pool - motor de liquidación de pools de fondos custodiados.
"""

from .app.config import PoolConfig
from .app.engine import PoolEngine
from .app.errors import PoolError

__all__ = ["PoolConfig", "PoolEngine", "PoolError"]
