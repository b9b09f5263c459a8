from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class WidgetRequest(BaseModel):
    """Request payload for the widget generation API."""
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    base64_file: Optional[str] = Field(default=None, alias="base64File")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    model: Optional[Literal["gemini", "claude", "openai"]] = None

    def has_file(self) -> bool:
        return bool(self.base64_file and self.file_name and self.mime_type)


class MessagePart(BaseModel):
    text: str


class ChatMessage(BaseModel):
    """Stored conversation message in the model's role/parts shape."""
    role: Literal["user", "model", "system"]
    parts: List[MessagePart]
    timestamp: int

    def joined_text(self) -> str:
        return "\n".join(part.text for part in self.parts)


class HistoryResponse(BaseModel):
    history: List[ChatMessage]


class WeatherRequest(BaseModel):
    city: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


class StartStreamRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rtsp_url: str = Field(default="", alias="rtspUrl")
    protocol: str = "hls"


class StopStreamRequest(BaseModel):
    path: str = ""


class StartStreamResponse(BaseModel):
    path: str
    protocol: str
    url: str


class StreamListResponse(BaseModel):
    """Active-path listing as reported by the media server."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    item_count: int = Field(default=0, alias="itemCount")
    page_count: int = Field(default=0, alias="pageCount")
    items: List[Dict[str, Any]] = Field(default_factory=list)


class DocUploadRequest(BaseModel):
    """Standalone upload: the file plus an optional instruction and provider."""
    model_config = ConfigDict(populate_by_name=True)

    base64_file: str = Field(default="", alias="base64File")
    file_name: str = Field(default="", alias="fileName")
    mime_type: str = Field(default="", alias="mimeType")
    prompt: Optional[str] = None
    model: Optional[Literal["gemini", "claude", "openai"]] = None


class DocUploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    summary: str
    fields: Optional[List[str]] = None
    row_count: Optional[int] = Field(default=None, alias="rowCount")
    preview: Optional[List[Dict[str, Any]]] = None
