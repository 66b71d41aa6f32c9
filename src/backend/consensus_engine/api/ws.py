"""
WebSocket endpoint for real-time consensus streaming.

The frontend connects here to watch a turn as it happens:
  - Stage changes (framing → routing → gathering → judging → criticizing)
  - The experts chosen by the router
  - Each worker result as it lands
  - Judge synthesis fragments
  - The finished turn, with its confidence marker extracted
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from consensus_engine.agent.orchestrator import GENERIC_FAILURE_MESSAGE, TurnCallbacks
from consensus_engine.agent.turns import TurnService
from consensus_engine.api.deps import get_turn_service
from consensus_engine.models.schemas import (
    ChatTurn,
    ExpertProfile,
    TurnStage,
    TurnSubmission,
    WorkerResult,
)
from consensus_engine.tools.judge import to_display

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/consensus")
async def consensus_websocket(
    websocket: WebSocket,
    service: TurnService = Depends(get_turn_service),
):
    """
    WebSocket endpoint for one consensus turn.

    Protocol:
      Client sends: {"session_id": optional, "prompt": "...", "attachments": [...]}
      Server sends: JSON messages for each pipeline event

    Message types:
      - {"type": "ack", "session_id": "..."}
      - {"type": "stage", "stage": "routing"}
      - {"type": "experts_selected", "experts": [...]}
      - {"type": "worker_update", "results": [...]}
      - {"type": "chunk", "content": "..."}
      - {"type": "complete", "turn": {...}, "consensus": {"confidence": ..., "content": ...}}
      - {"type": "error", "message": "..."}
    """
    await websocket.accept()
    connected = True

    async def send(message: Dict[str, Any]) -> None:
        # The turn keeps running and persisting after the client goes away
        nonlocal connected
        if not connected:
            return
        try:
            await websocket.send_json(message)
        except Exception as e:
            connected = False
            logger.info(f"WebSocket client went away: {e}")

    try:
        raw = await websocket.receive_text()
        data = json.loads(raw)
        session_id = data.pop("session_id", None)
        submission = TurnSubmission(**data)

        store = service.store
        if session_id is None:
            session_id = (await store.create_session()).id
        elif store.get_session(session_id) is None:
            await send({"type": "error", "message": f"Session {session_id} not found"})
            return

        await send({
            "type": "ack",
            "session_id": session_id,
            "message": "Prompt received. Starting consensus pipeline...",
        })

        async def on_stage_change(stage: TurnStage) -> None:
            await send({"type": "stage", "stage": stage.value})

        async def on_experts_selected(experts: List[ExpertProfile]) -> None:
            await send({
                "type": "experts_selected",
                "experts": [e.model_dump(mode="json") for e in experts],
            })

        async def on_worker_update(results: List[WorkerResult]) -> None:
            await send({
                "type": "worker_update",
                "results": [r.model_dump(mode="json") for r in results],
            })

        async def on_synthesis_chunk(fragment: str) -> None:
            await send({"type": "chunk", "content": fragment})

        async def on_complete(turn: ChatTurn) -> None:
            await send({
                "type": "complete",
                "session_id": session_id,
                "turn": turn.model_dump(mode="json"),
                "consensus": to_display(turn.consensus_content).model_dump(),
            })

        async def on_error(message: str) -> None:
            await send({"type": "error", "message": message})

        await service.submit(
            session_id,
            submission,
            TurnCallbacks(
                on_stage_change=on_stage_change,
                on_experts_selected=on_experts_selected,
                on_worker_update=on_worker_update,
                on_synthesis_chunk=on_synthesis_chunk,
                on_complete=on_complete,
                on_error=on_error,
            ),
        )

    except WebSocketDisconnect:
        pass
    except json.JSONDecodeError:
        await send({"type": "error", "message": "Invalid JSON received"})
    except (ValidationError, TypeError) as e:
        await send({"type": "error", "message": f"Invalid submission: {e}"})
    except Exception:
        logger.exception("WebSocket turn failed")
        await send({"type": "error", "message": GENERIC_FAILURE_MESSAGE})
    finally:
        if connected:
            try:
                await websocket.close()
            except RuntimeError:
                pass
