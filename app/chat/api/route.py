from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from typing import Optional
from app.chat.api.dto import BaseResponse, ChatStreamRequest, RenameSessionDTO
from app.chat.api.handler import handle_chat_stream, prepare_turn
from app.chat.service.session_service import SessionService
from app.llm.service.llm_service import LLMService
from app.core.exceptions import ChatServiceError, InternalFailure
from app.core.logger import get_logger
from app.auth.api.dependencies import CurrentUserDep

chat_router = APIRouter(prefix="/chat", tags=["Chat"])
logger = get_logger("ChatRouter")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # for Nginx
}


def get_session_service(request: Request) -> Optional[SessionService]:
    """Dependency to get session service from app.state."""
    return getattr(request.app.state, "session_service", None)


def get_llm_service(request: Request) -> Optional[LLMService]:
    """Dependency to get LLM service from app.state."""
    return getattr(request.app.state, "llm_service", None)


def _require(service, name: str):
    if not service:
        raise HTTPException(status_code=503, detail=f"{name} not available")
    return service


@chat_router.post("/stream")
async def chat_stream_api(
    body: ChatStreamRequest,
    current_user: CurrentUserDep,
    session_service: Optional[SessionService] = Depends(get_session_service),
    llm_service: Optional[LLMService] = Depends(get_llm_service),
):
    """
    Streaming chat endpoint (Server-Sent Events).
    Validation happens before the response starts; after that, failures
    are reported as an in-band ``error`` frame.
    """
    session_service = _require(session_service, "Session service")
    llm_service = _require(llm_service, "LLM service")

    try:
        ctx = await prepare_turn(session_service, current_user["user_id"], body)
    except ChatServiceError as e:
        raise e.to_http()
    except Exception as e:
        logger.error(f"Error preparing chat turn for user_id={current_user['user_id']}: {e}", exc_info=True)
        raise InternalFailure("Failed to process chat request").to_http()

    return StreamingResponse(
        handle_chat_stream(ctx, session_service, llm_service),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@chat_router.get("/history", response_model=BaseResponse)
async def get_history(
    current_user: CurrentUserDep,
    session_service: Optional[SessionService] = Depends(get_session_service),
):
    """All of the caller's sessions with messages, most recently updated first."""
    session_service = _require(session_service, "Session service")

    try:
        sessions = await session_service.list_sessions(current_user["user_id"])
    except Exception as e:
        logger.error(f"Error listing sessions for user_id={current_user['user_id']}: {e}", exc_info=True)
        raise InternalFailure("Failed to fetch history").to_http()

    return BaseResponse(
        status=True,
        message="History fetched successfully",
        data={"sessions": [s.to_wire() for s in sessions]},
    )


@chat_router.patch("/session/{session_id}", response_model=BaseResponse)
async def rename_session(
    session_id: str,
    rename_data: RenameSessionDTO,
    current_user: CurrentUserDep,
    session_service: Optional[SessionService] = Depends(get_session_service),
):
    session_service = _require(session_service, "Session service")

    try:
        session = await session_service.rename_session(session_id, current_user["user_id"], rename_data.title)
    except ChatServiceError as e:
        raise e.to_http()
    except Exception as e:
        logger.error(f"Error renaming session {session_id}: {e}", exc_info=True)
        raise InternalFailure("Failed to rename chat").to_http()

    return BaseResponse(
        status=True,
        message="Chat renamed successfully",
        data={"session": session.to_wire()},
    )


@chat_router.delete("/session/{session_id}", response_model=BaseResponse)
async def delete_session(
    session_id: str,
    current_user: CurrentUserDep,
    session_service: Optional[SessionService] = Depends(get_session_service),
):
    """Delete a session and every message in it."""
    session_service = _require(session_service, "Session service")

    try:
        await session_service.delete_session(session_id, current_user["user_id"])
    except ChatServiceError as e:
        raise e.to_http()
    except Exception as e:
        logger.error(f"Error deleting session {session_id}: {e}", exc_info=True)
        raise InternalFailure("Failed to delete chat").to_http()

    logger.info(f"Deleted session_id={session_id}")
    return BaseResponse(
        status=True,
        message="Chat deleted successfully",
        data={"ok": True, "sessionId": session_id},
    )
