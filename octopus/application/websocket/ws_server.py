from typing import Optional
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import uuid
import structlog

from .schema.events import RunMessageEvent
from octopus.domain.models.run_state import Message, MessageType, RunStatus

logger = structlog.get_logger(__name__)

router = APIRouter()


def is_final_message(message: Message) -> bool:
    """The orchestrator closes every execution with an INFO carrying the final status"""
    if message.type != MessageType.INFO:
        return False
    status = message.payload.get("status")
    return status is not None and RunStatus(status).is_terminal


@router.websocket("/ws/runs/{run_id}")
async def run_stream(websocket: WebSocket, run_id: str, user_id: Optional[str] = None):
    """Stream a run's log followed by its live messages"""

    services = websocket.app.state.services
    run = services.repository.find(run_id)
    if run is None or run.owner_id != user_id:
        await websocket.close(code=1008, reason="Unknown run")
        return

    connection_id = str(uuid.uuid4())
    manager = services.connection_manager
    channel = None

    try:
        # subscribe and copy the backlog without yielding, so nothing is missed or repeated
        channel = services.orchestrator.bus.open_channel(run_id, maxsize=services.settings.channel_maxsize)
        backlog = list(run.log)
        finished = run.status.is_terminal or any(is_final_message(m) for m in backlog)

        await manager.connect(websocket, connection_id, run_id, run.owner_id)

        for message in backlog:
            if not await manager.send_event(connection_id, RunMessageEvent.wrap(message)):
                return
        if finished:
            return

        async for message in channel:
            if not await manager.send_event(connection_id, RunMessageEvent.wrap(message)):
                break
            if is_final_message(message):
                break

    except WebSocketDisconnect:
        logger.info("Client disconnected", connection_id=connection_id, run_id=run_id)
    except Exception as e:
        logger.error("WebSocket error", error=str(e), run_id=run_id)
        await manager.send_error(connection_id, "stream interrupted", error_code="STREAM_ERROR")
    finally:
        if channel is not None:
            channel.close()
        await manager.disconnect(connection_id)
