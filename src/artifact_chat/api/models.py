from pydantic import BaseModel, Field


class AttachmentIn(BaseModel):
    file_name: str
    file_type: str
    file_data: str


class ChatRequest(BaseModel):
    conversation_id: str | None = None
    message: str
    images: list[str] = Field(default_factory=list)
    attachments: list[AttachmentIn] = Field(default_factory=list)
    artifact_ids: list[str] = Field(default_factory=list)
    provider: str | None = None
    model: str | None = None


class RegenerateRequest(BaseModel):
    provider: str | None = None
    model: str | None = None


class CreateConversationRequest(BaseModel):
    title: str | None = None


class RenameRequest(BaseModel):
    title: str


class ArtifactUpdateRequest(BaseModel):
    content: str


class ConversationOut(BaseModel):
    id: str
    title: str
    created_at: str
    updated_at: str
