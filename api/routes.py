import asyncio
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from agent.orchestrator import AssistantOrchestrator, TurnAbortedError, TurnFailedError
from services.audit_service import audit_service

router = APIRouter()
logger = structlog.get_logger()

CLIENT_CLOSED_REQUEST = 499
DISCONNECT_POLL_SECONDS = 0.5


class ChatMessage(BaseModel):
    role: str
    content: Any


class AssistantTurnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    messages: List[ChatMessage]
    model: Optional[str] = None
    conversation_id: Optional[str] = Field(None, alias="conversationId")


class HealthResponse(BaseModel):
    status: str
    version: str


def get_orchestrator(request: Request) -> AssistantOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Assistant is not initialised")
    return orchestrator


def get_audit_service():
    return audit_service


async def _watch_disconnect(request: Request, signal: asyncio.Event) -> None:
    while not signal.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected, aborting turn")
            signal.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@router.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(status="healthy", version="1.0.0")


@router.post("/assistant")
async def run_assistant(
    body: AssistantTurnRequest,
    request: Request,
    orchestrator: AssistantOrchestrator = Depends(get_orchestrator),
):
    signal = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, signal))

    try:
        result = await orchestrator.invoke(
            [m.model_dump() for m in body.messages],
            model=body.model,
            conversation_id=body.conversation_id,
            signal=signal,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TurnAbortedError as e:
        return JSONResponse(
            status_code=CLIENT_CLOSED_REQUEST,
            content={"error": "aborted", "conversationId": e.conversation_id, "requestId": e.request_id},
        )
    except TurnFailedError as e:
        logger.error("Assistant request failed", error=str(e), request_id=e.request_id)
        return JSONResponse(
            status_code=500,
            content={"error": str(e), "conversationId": e.conversation_id, "requestId": e.request_id},
        )
    finally:
        watcher.cancel()

    return result.to_response()


@router.get("/conversations/{conversation_id}/tool-calls")
async def list_tool_calls(
    conversation_id: str,
    limit: int = 200,
    audit=Depends(get_audit_service),
) -> Dict[str, Any]:
    limit = min(max(1, limit), 1000)
    calls = await audit.get_tool_calls(conversation_id, limit=limit)
    return {"conversationId": conversation_id, "toolCalls": calls}
