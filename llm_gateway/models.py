from sqlmodel import SQLModel, Field
from typing import Optional

ROLES = ("system", "user", "assistant")

class LogRecord(SQLModel, table=True):
    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(index=True, unique=True)
    kind: str = Field(index=True) # chat | image | embedding | build | file-edit
    timestamp: float # utc timestamp in millis
    request_summary: str
    response_summary: str

class ImageArtifact(SQLModel, table=True):
    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(index=True, unique=True)
    created_at: str # iso-8601, utc
    prompt: str
    size: str
    has_bytes: bool = Field(default=False)
    source_url: Optional[str] = Field(default=None)
    session_id: Optional[str] = Field(default=None)

class ChatMessage(SQLModel):
    role: str # user | system | assistant
    content: str

class FileNode(SQLModel):
    path: str
    name: str
    type: str = "file" # file | folder
    updated_at: str
