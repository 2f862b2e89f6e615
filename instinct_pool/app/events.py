"""
=============================================================================
INSTINCT POOL - Eventos en Tiempo Real (Socket.IO)
=============================================================================
Notifica a los clientes cada transición relevante de un run.

Eventos emitidos:
- run:created, run:started, run:settled, run:withdrawal
- platform:paused, platform:resumed

Los clientes pueden suscribirse a un run concreto con `watch_run`; los
eventos de run se emiten a su sala y los de plataforma a todos.
=============================================================================
"""

import logging
import time
from typing import Any, Dict, Optional

import socketio


logger = logging.getLogger(__name__)


class SocketConfig:
    """Configuración del servidor de WebSockets."""

    HEARTBEAT_INTERVAL = 25          # Segundos entre heartbeats
    HEARTBEAT_TIMEOUT = 20           # Timeout para considerar desconexión


sio = socketio.AsyncServer(
    async_mode='asgi',
    cors_allowed_origins='*',
    ping_timeout=SocketConfig.HEARTBEAT_TIMEOUT,
    ping_interval=SocketConfig.HEARTBEAT_INTERVAL
)


def run_room(run_id: int) -> str:
    return f"run_{run_id}"


@sio.event
async def connect(sid: str, environ: dict, auth: dict = None):
    logger.debug("[WS] Connected: %s", sid)
    await sio.emit('connected', {
        'sid': sid,
        'server_time': time.time()
    }, room=sid)


@sio.event
async def disconnect(sid: str):
    logger.debug("[WS] Disconnected: %s", sid)


@sio.event
async def watch_run(sid: str, data: dict):
    """Suscribe al cliente a los eventos de un run."""
    try:
        run_id = int(data['run_id'])
    except (KeyError, TypeError, ValueError):
        await sio.emit('error', {'message': 'run_id is required'}, room=sid)
        return
    await sio.enter_room(sid, run_room(run_id))
    await sio.emit('watching', {'run_id': run_id}, room=sid)


@sio.event
async def unwatch_run(sid: str, data: dict):
    try:
        run_id = int(data['run_id'])
    except (KeyError, TypeError, ValueError):
        await sio.emit('error', {'message': 'run_id is required'}, room=sid)
        return
    await sio.leave_room(sid, run_room(run_id))


async def broadcast(event: str, payload: Dict[str, Any], run_id: Optional[int] = None) -> None:
    """
    Emite un evento después de una operación exitosa.
    Con run_id, solo a la sala del run; sin él, a todos los clientes.
    """
    payload = dict(payload, server_time=time.time())
    room = run_room(run_id) if run_id is not None else None
    await sio.emit(event, payload, room=room)
    logger.debug("[WS] %s -> %s", event, room or "*")
