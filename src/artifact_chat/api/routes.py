import json
import logging
from dataclasses import asdict

from fastapi import APIRouter, Body, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from ..agent.orchestrator import CONTINUATION_REGENERATE_ERROR
from ..data.snapshot import build_snapshot, export_conversation, import_payload
from .models import (
    ArtifactUpdateRequest,
    ChatRequest,
    ConversationOut,
    CreateConversationRequest,
    RegenerateRequest,
    RenameRequest,
)
from .sse import EVENT_FORMATTERS, sse_done, sse_error, sse_init

logger = logging.getLogger(__name__)
router = APIRouter()


def _conversation_out(conversation) -> ConversationOut:
    return ConversationOut(
        id=conversation.id,
        title=conversation.title,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def _require_conversation(request: Request, conversation_id: str):
    conversation = request.app.state.graph.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


def _stream(events):
    async def event_generator():
        try:
            async for event in events:
                if event.type == "init":
                    yield sse_init(json.loads(event.data))
                elif event.type == "done":
                    yield sse_done(json.loads(event.data))
                else:
                    yield EVENT_FORMATTERS[event.type](event.data)
        except Exception as e:
            logger.exception("Error in chat stream")
            yield sse_error(str(e))
            yield sse_done({"error": str(e)})
        finally:
            await events.aclose()

    return EventSourceResponse(event_generator(), ping=15)


# --- Turns ---


@router.post("/api/chat")
async def chat_endpoint(req: ChatRequest, request: Request):
    graph = request.app.state.graph
    orchestrator = request.app.state.orchestrator

    conversation_id = req.conversation_id
    if not conversation_id:
        conversation_id = graph.create_conversation().id
    elif graph.get_conversation(conversation_id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    attachments = [
        {"fileName": a.file_name, "fileType": a.file_type, "fileData": a.file_data}
        for a in req.attachments
    ]
    events = orchestrator.stream_message(
        conversation_id,
        req.message,
        images=req.images,
        attachments=attachments,
        artifact_ids=req.artifact_ids,
        provider=req.provider,
        model=req.model,
    )
    return _stream(events)


@router.post("/api/conversations/{conversation_id}/messages/{message_id}/regenerate")
async def regenerate_endpoint(
    conversation_id: str, message_id: str, request: Request, req: RegenerateRequest | None = None
):
    conversation = _require_conversation(request, conversation_id)
    message = conversation.messages.get(message_id)
    if message is None or message.role != "assistant":
        raise HTTPException(status_code=404, detail="Assistant message not found")
    orchestrator = request.app.state.orchestrator
    if request.app.state.graph.is_continuation_reply(conversation_id, message_id):
        raise HTTPException(status_code=409, detail=CONTINUATION_REGENERATE_ERROR)

    req = req or RegenerateRequest()
    events = orchestrator.stream_regenerate(
        conversation_id, message_id, provider=req.provider, model=req.model
    )
    return _stream(events)


@router.post("/api/conversations/{conversation_id}/cancel")
async def cancel_turn(conversation_id: str, request: Request):
    _require_conversation(request, conversation_id)
    return {"cancelled": request.app.state.orchestrator.cancel(conversation_id)}


# --- Conversations ---


@router.get("/api/conversations")
async def list_conversations(request: Request):
    return [_conversation_out(c) for c in request.app.state.graph.list_conversations()]


@router.post("/api/conversations")
async def create_conversation(request: Request, req: CreateConversationRequest | None = None):
    graph = request.app.state.graph
    if req and req.title:
        conversation = graph.create_conversation(title=req.title)
    else:
        conversation = graph.create_conversation()
    await request.app.state.orchestrator.persist(conversation.id)
    return _conversation_out(conversation)


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, request: Request):
    _require_conversation(request, conversation_id)
    graph = request.app.state.graph
    orchestrator = request.app.state.orchestrator
    return {
        "conversation": build_snapshot(graph, request.app.state.artifacts, conversation_id),
        "chain": [asdict(e) for e in graph.active_chain(conversation_id)],
        "status": asdict(orchestrator.status(conversation_id)),
    }


@router.patch("/api/conversations/{conversation_id}")
async def rename_conversation(conversation_id: str, req: RenameRequest, request: Request):
    graph = request.app.state.graph
    if not graph.rename_conversation(conversation_id, req.title):
        raise HTTPException(status_code=404, detail="Conversation not found")
    await request.app.state.orchestrator.persist(conversation_id)
    return _conversation_out(graph.get_conversation(conversation_id))


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, request: Request):
    if not request.app.state.graph.delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    orchestrator = request.app.state.orchestrator
    orchestrator.forget(conversation_id)
    await orchestrator.remove_persisted(conversation_id)
    return {"deleted": conversation_id}


@router.delete("/api/conversations")
async def clear_conversations(request: Request):
    orchestrator = request.app.state.orchestrator
    removed = request.app.state.graph.clear_all()
    for conversation_id in removed:
        orchestrator.forget(conversation_id)
    await orchestrator.remove_persisted()
    logger.info("Cleared %d conversations", len(removed))
    return {"deleted": removed}


@router.delete("/api/conversations/{conversation_id}/messages/{message_id}")
async def delete_branch(conversation_id: str, message_id: str, request: Request):
    _require_conversation(request, conversation_id)
    if not request.app.state.graph.delete_branch(conversation_id, message_id):
        raise HTTPException(status_code=404, detail="Message not found")
    await request.app.state.orchestrator.persist(conversation_id)
    return {"deleted": message_id}


@router.post("/api/conversations/{conversation_id}/messages/{message_id}/versions/{version_id}/activate")
async def switch_version(conversation_id: str, message_id: str, version_id: str, request: Request):
    _require_conversation(request, conversation_id)
    graph = request.app.state.graph
    if not graph.switch_active_version(conversation_id, message_id, version_id):
        raise HTTPException(status_code=404, detail="Version not found")
    await request.app.state.orchestrator.persist(conversation_id)
    return {"chain": [asdict(e) for e in graph.active_chain(conversation_id)]}


# --- Artifacts ---


@router.get("/api/conversations/{conversation_id}/artifacts/{artifact_id}")
async def get_artifact(conversation_id: str, artifact_id: str, request: Request):
    container = request.app.state.artifacts.get_artifact(conversation_id, artifact_id)
    if container is None:
        raise HTTPException(status_code=404, detail="Artifact not found")
    return container.to_dict()


@router.put("/api/conversations/{conversation_id}/artifacts/{artifact_id}")
async def update_artifact(
    conversation_id: str, artifact_id: str, req: ArtifactUpdateRequest, request: Request
):
    artifacts = request.app.state.artifacts
    container = artifacts.get_artifact(conversation_id, artifact_id)
    if container is None:
        raise HTTPException(status_code=404, detail="Artifact not found")
    version = artifacts.update_artifact_content_by_user(conversation_id, artifact_id, req.content)
    if version is None:
        raise HTTPException(status_code=409, detail="Artifact is still streaming")
    await request.app.state.orchestrator.persist(conversation_id)
    return container.to_dict()


@router.post("/api/conversations/{conversation_id}/artifacts/{artifact_id}/versions/{version_id}/activate")
async def switch_artifact_version(
    conversation_id: str, artifact_id: str, version_id: str, request: Request
):
    artifacts = request.app.state.artifacts
    if not artifacts.switch_active_artifact_version(conversation_id, artifact_id, version_id):
        raise HTTPException(status_code=404, detail="Artifact version not found")
    await request.app.state.orchestrator.persist(conversation_id)
    return artifacts.get_artifact(conversation_id, artifact_id).to_dict()


# --- Export / import ---


@router.get("/api/conversations/{conversation_id}/export")
async def export_endpoint(conversation_id: str, request: Request):
    snapshot = export_conversation(request.app.state.graph, request.app.state.artifacts, conversation_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return snapshot


@router.post("/api/import")
async def import_endpoint(request: Request, payload: dict | list = Body(...)):
    try:
        imported = import_payload(request.app.state.graph, request.app.state.artifacts, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    for conversation in imported:
        await request.app.state.orchestrator.persist(conversation.id)
    return [_conversation_out(c) for c in imported]
