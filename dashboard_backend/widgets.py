"""Widget data contract: one pydantic model per variant joined on ``type``.

Every widget handed to the client is produced by ``validate_widget``; payloads
forbid unknown fields, so a chart payload carrying ``src`` (or any other
cross-variant leakage) is rejected instead of silently accepted.
"""

from __future__ import annotations

import random
import time
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .errors import ERROR_CODES, SERVER_ERROR, WidgetValidationError

GRID_COLUMNS = 24
VIDEO_EXTENSIONS = (".mp4", ".webm", ".ogg", ".mov")

ErrorCode = Literal[
    "MISSING_ID",
    "METHOD_NOT_ALLOWED",
    "VALIDATION_ERROR",
    "DOC_NOT_FOUND",
    "MAP_TOO_FEW_LOCATIONS",
    "UNSUPPORTED_FN",
    "SERVER_ERROR",
]
CellValue = Optional[Union[bool, int, float, str]]


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False, populate_by_name=True)


class Layout(_Strict):
    i: str
    x: int
    y: int
    w: int
    h: int
    min_w: Optional[int] = Field(default=None, alias="minW")
    min_h: Optional[int] = Field(default=None, alias="minH")


class ChartPoint(_Strict):
    label: str
    value: float


class CompareSeries(_Strict):
    source: Literal["document", "gemini"]
    data: List[ChartPoint]


class ChartPayload(_Strict):
    title: str
    data: List[ChartPoint]
    source: Optional[Literal["document", "gemini"]] = None
    compare_data: Optional[List[CompareSeries]] = Field(default=None, alias="compareData")


class MapPoint(_Strict):
    name: str
    coordinates: Tuple[float, float]
    color: Optional[str] = None

    @field_validator("coordinates")
    @classmethod
    def _check_bounds(cls, value: Tuple[float, float]) -> Tuple[float, float]:
        lat, lon = value
        if not -90 <= lat <= 90:
            raise ValueError(f"latitude {lat} outside [-90, 90]")
        if not -180 <= lon <= 180:
            raise ValueError(f"longitude {lon} outside [-180, 180]")
        return value


class MapPayload(_Strict):
    title: str
    data: List[MapPoint] = Field(min_length=2)


class MediaPayload(_Strict):
    src: str
    title: str


class ImagePayload(MediaPayload):
    @field_validator("src")
    @classmethod
    def _check_src(cls, value: str) -> str:
        if not is_https_url(value):
            raise ValueError("image src must be an https URL")
        return value


class VideoPayload(MediaPayload):
    @field_validator("src")
    @classmethod
    def _check_src(cls, value: str) -> str:
        if not is_https_video_url(value):
            raise ValueError("video src must be an https URL to a video file")
        return value


class CameraPayload(_Strict):
    stream_url: str = Field(alias="streamUrl", min_length=1)
    title: str


class WeatherTemp(_Strict):
    current: float
    min: float
    max: float


class WeatherPayload(_Strict):
    location: Optional[str] = None
    coordinates: Union[Tuple[float, float], Literal["current"]]
    description: Optional[str] = None
    icon: Optional[str] = None
    temp: Optional[WeatherTemp] = None


class DocumentPayload(_Strict):
    filename: str
    fields: Optional[List[str]] = None
    row_count: Optional[int] = Field(default=None, alias="rowCount")
    preview: Optional[List[Dict[str, CellValue]]] = None
    summary: Optional[str] = None


class ChatPayload(_Strict):
    reply: str


class ErrorPayload(_Strict):
    message: str
    code: Optional[ErrorCode] = None


class _WidgetBase(_Strict):
    id: str = Field(min_length=1)
    layout: Layout
    update: Optional[bool] = None


class ChartWidget(_WidgetBase):
    type: Literal["line", "bar", "pie"]
    payload: ChartPayload


class MapWidget(_WidgetBase):
    type: Literal["map"]
    payload: MapPayload


class ImageWidget(_WidgetBase):
    type: Literal["image"]
    payload: ImagePayload


class VideoWidget(_WidgetBase):
    type: Literal["video"]
    payload: VideoPayload


class CameraWidget(_WidgetBase):
    type: Literal["camera"]
    payload: CameraPayload


class WeatherWidget(_WidgetBase):
    type: Literal["weather"]
    payload: WeatherPayload


class DocumentWidget(_WidgetBase):
    type: Literal["document"]
    payload: DocumentPayload


class ChatWidget(_WidgetBase):
    type: Literal["chat"]
    payload: ChatPayload


class ErrorWidget(_WidgetBase):
    type: Literal["error"]
    payload: ErrorPayload


Widget = Annotated[
    Union[
        ChartWidget,
        MapWidget,
        ImageWidget,
        VideoWidget,
        CameraWidget,
        WeatherWidget,
        DocumentWidget,
        ChatWidget,
        ErrorWidget,
    ],
    Field(discriminator="type"),
]

_WIDGET_ADAPTER: TypeAdapter = TypeAdapter(Widget)


def validate_widget(candidate: Any) -> BaseModel:
    """Purpose: Turn untrusted data into exactly one Widget variant.
    Inputs/Outputs: Input is any object (usually a dict); output is a validated widget model.
    Side Effects / State: None.
    Dependencies: Uses the pydantic discriminated union over ``type``.
    Failure Modes: Raises WidgetValidationError when the tag is unknown, fields are missing,
        extra fields appear, or numbers are non-finite.
    If Removed: Tool output and model-authored widgets reach the client unchecked.
    Testing Notes: Validate a good chart, then reject the same chart with an image ``src``.
    """
    # Accept already-validated models by re-checking their serialized form.
    if isinstance(candidate, BaseModel):
        candidate = widget_to_dict(candidate)
    try:
        return _WIDGET_ADAPTER.validate_python(candidate)
    except ValidationError as exc:
        raise WidgetValidationError(_summarize_errors(exc)) from exc


def widget_to_dict(widget: BaseModel) -> Dict[str, Any]:
    """Serialize a widget to its wire form (camelCase aliases, no null slots)."""
    return widget.model_dump(mode="json", by_alias=True, exclude_none=True)


def _summarize_errors(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors()[:3]:
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts) or "invalid widget"


def is_https_url(value: str) -> bool:
    try:
        parsed = urlparse(str(value or ""))
    except ValueError:
        return False
    return parsed.scheme == "https" and bool(parsed.netloc)


def is_https_video_url(value: str) -> bool:
    if not is_https_url(value):
        return False
    return urlparse(value).path.lower().endswith(VIDEO_EXTENSIONS)


def make_id(prefix: str) -> str:
    """Build a widget id like ``chart-1712345678901-417``."""
    return f"{prefix}-{int(time.time() * 1000)}-{random.randint(0, 999)}"


class LayoutCursor:
    """Places widgets of one response left-to-right on the grid, wrapping rows."""

    def __init__(self, columns: int = GRID_COLUMNS) -> None:
        self._columns = columns
        self._last: Optional[Dict[str, int]] = None

    def place(self, widget_id: str, w: int, h: int) -> Dict[str, Any]:
        # Continue on the current row when the widget fits, otherwise wrap below.
        x, y = 0, 0
        if self._last is not None:
            candidate_x = self._last["x"] + self._last["w"]
            if candidate_x + w <= self._columns:
                x, y = candidate_x, self._last["y"]
            else:
                x, y = 0, self._last["y"] + self._last["h"]
        layout = {"i": widget_id, "x": x, "y": y, "w": w, "h": h}
        self._last = layout
        return dict(layout)


def error_widget(
    message: str,
    code: str = SERVER_ERROR,
    cursor: Optional[LayoutCursor] = None,
) -> Dict[str, Any]:
    """Purpose: Build the uniform error widget used at every boundary.
    Inputs/Outputs: Inputs are message, code, and an optional layout cursor; output is a
        validated widget dict.
    Side Effects / State: Advances the cursor when one is given.
    Dependencies: Uses make_id and validate_widget.
    Failure Modes: An unknown code is replaced by SERVER_ERROR instead of failing.
    If Removed: Failures would surface as bare ``{error}`` objects with diverging shapes.
    Testing Notes: Check code vocabulary and the default 4x3 layout.
    """
    # Keep the code inside the fixed vocabulary.
    widget_id = make_id("error")
    layout = cursor.place(widget_id, 4, 3) if cursor else {"i": widget_id, "x": 0, "y": 0, "w": 4, "h": 3}
    candidate = {
        "id": widget_id,
        "type": "error",
        "layout": layout,
        "payload": {
            "message": message or "Unexpected error",
            "code": code if code in ERROR_CODES else SERVER_ERROR,
        },
    }
    return widget_to_dict(validate_widget(candidate))


def chat_widget(reply: str, cursor: Optional[LayoutCursor] = None) -> Dict[str, Any]:
    """Build a validated chat widget carrying a plain-text reply."""
    widget_id = make_id("chat")
    layout = cursor.place(widget_id, 4, 3) if cursor else {"i": widget_id, "x": 0, "y": 0, "w": 4, "h": 3}
    candidate = {"id": widget_id, "type": "chat", "layout": layout, "payload": {"reply": reply}}
    return widget_to_dict(validate_widget(candidate))


def widget_text(widget: Dict[str, Any]) -> Optional[str]:
    """Return the textual payload of a chat/document widget, if it has one."""
    payload = widget.get("payload") or {}
    if widget.get("type") == "chat":
        return payload.get("reply") or None
    if widget.get("type") == "document":
        return payload.get("summary") or None
    return None
