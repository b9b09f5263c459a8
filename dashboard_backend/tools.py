"""Tool registry: the functions the model may call and the widgets each one builds.

Role:
- Declares every widget tool once (name, description, argument schema) so the
  same table feeds Gemini function declarations and the JSON-mode prompt.
- Builds widget candidates from tool arguments plus per-request ToolContext.

Contracts:
- ``build(args, context)`` returns a list of widget dicts; the orchestrator
  validates each one independently.
- Builders raise WidgetError subclasses for failures that carry their own code
  (DOC_NOT_FOUND, SERVER_ERROR for weather); ``create_map`` returns its
  MAP_TOO_FEW_LOCATIONS error widget directly.
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote, urlparse

from .aggregation import aggregate_document
from .document_store import DocumentStore
from .errors import (
    MAP_TOO_FEW_LOCATIONS,
    DocumentNotFoundError,
    UnsupportedToolError,
    WeatherLookupError,
    WidgetValidationError,
)
from .prompt_loader import load_prompt, render_prompt
from .utils import sanitize_chart_data, to_finite_float
from .widgets import LayoutCursor, chat_widget, error_widget, is_https_url, is_https_video_url, make_id

logger = logging.getLogger("dashboard.tools")

CHART_KINDS = ("line", "bar", "pie")
DISTINCT_COLORS = ("red", "blue", "green", "orange", "purple")
FALLBACK_IMAGE = "https://picsum.photos/800/600"
FALLBACK_VIDEO = "https://sample-videos.com/video321/mp4/720/big_buck_bunny_720p_1mb.mp4"
QA_PREVIEW_ROWS = 10
TITLE_LIMIT = 80

# (w, h) grid cells per widget type.
SIZES = {
    "chart": (6, 6),
    "map": (6, 7),
    "image": (5, 6),
    "video": (6, 6),
    "camera": (6, 6),
    "weather": (3, 3),
    "document": (6, 8),
}

Builder = Callable[[Dict[str, Any], "ToolContext"], List[Dict[str, Any]]]


@dataclass
class ToolContext:
    """Per-request state a tool may read: documents, cursor, and collaborators."""
    conversation_id: str
    documents: DocumentStore
    cursor: LayoutCursor = field(default_factory=LayoutCursor)
    provider: Any = None
    model: Optional[str] = None
    weather: Any = None
    prompts_dir: Optional[Path] = None


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    build: Builder


class ToolRegistry:
    """Name -> ToolSpec map with dispatch by tool name."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"tool {spec.name} registered twice")
        self._tools[spec.name] = spec

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def declarations(self) -> List[Dict[str, Any]]:
        """Function declarations in the shape Gemini expects."""
        return [
            {"name": spec.name, "description": spec.description, "parameters": spec.parameters}
            for spec in self._tools.values()
        ]

    def dispatch(self, name: str, args: Optional[Dict[str, Any]], context: ToolContext) -> List[Dict[str, Any]]:
        """Purpose: Run the named tool and return its widget candidates.
        Inputs/Outputs: Inputs are the tool name, model arguments, and the request context;
            output is a list of widget dicts (not yet validated).
        Side Effects / State: Advances the layout cursor; may call the QA model or weather API.
        Dependencies: Registered ToolSpec builders.
        Failure Modes: Unknown names raise UnsupportedToolError; builders raise WidgetError
            subclasses for their own failures.
        If Removed: Model tool calls cannot be turned into widgets.
        Testing Notes: Dispatch "make_coffee" and expect UnsupportedToolError.
        """
        # Look up by name; argument dicts are never mutated.
        spec = self._tools.get(name)
        if spec is None:
            raise UnsupportedToolError(f"Unsupported function call: {name}")
        logger.info("conversation=%s tool=%s", context.conversation_id, name)
        return spec.build(dict(args or {}), context)


def _candidate(kind: str, widget_type: str, payload: Dict[str, Any], context: ToolContext,
               widget_id: Optional[str] = None, update: bool = False) -> Dict[str, Any]:
    widget_id = widget_id or make_id(kind)
    w, h = SIZES[kind]
    candidate = {
        "id": widget_id,
        "type": widget_type,
        "layout": context.cursor.place(widget_id, w, h),
        "payload": payload,
    }
    if update:
        candidate["update"] = True
    return candidate


def _text_arg(args: Dict[str, Any], key: str, default: str = "") -> str:
    value = args.get(key)
    if value is None:
        return default
    return str(value).strip() or default


def chat_reply(args: Dict[str, Any], context: ToolContext) -> List[Dict[str, Any]]:
    reply = _text_arg(args, "reply", "Here's my reply based on your request.")
    return [chat_widget(reply, context.cursor)]


def create_chart(args: Dict[str, Any], context: ToolContext, kind: Optional[str] = None) -> List[Dict[str, Any]]:
    """Purpose: Build one or two chart widgets from model data, a document, or both.
    Inputs/Outputs: Inputs are kind/title/data/source/filename/groupBy/metric/aggregation
        (and optional widgetId); output is a list with one chart, or two for compare.
    Side Effects / State: Advances the layout cursor; logs document fallbacks.
    Dependencies: DocumentStore, aggregate_document, sanitize_chart_data.
    Failure Modes: None raised; an unresolvable filename or a document without fields
        falls back to model data. A metric that cannot be applied is charted as a count
        and the title says so.
    If Removed: No chart widgets can be produced.
    Testing Notes: source="compare" yields ids "<id>-doc" and "<id>" tagged document/gemini.
    """
    # Resolve kind and ids, then pick the branch by source and document availability.
    kind = kind or _text_arg(args, "kind", "bar").lower()
    if kind not in CHART_KINDS:
        kind = "bar"
    title = _text_arg(args, "title", "Chart")[:TITLE_LIMIT]
    source = _text_arg(args, "source", "gemini").lower()
    requested_id = _text_arg(args, "widgetId")
    base_id = requested_id or make_id("chart")
    model_points = sanitize_chart_data(args.get("data"))

    resolved = None
    if source in ("document", "compare"):
        resolved = context.documents.get(context.conversation_id, _text_arg(args, "filename"))
        if resolved is not None and resolved[1].is_empty():
            logger.warning(
                "conversation=%s chart source=%s document=%s has no fields; using model data",
                context.conversation_id,
                source,
                resolved[0],
            )
            resolved = None
        elif resolved is None:
            logger.warning(
                "conversation=%s chart source=%s filename=%r unresolved; using model data",
                context.conversation_id,
                source,
                args.get("filename"),
            )

    if resolved is None:
        payload = {"title": title, "data": model_points, "source": "gemini"}
        return [_candidate("chart", kind, payload, context, base_id, update=bool(requested_id))]

    filename, document = resolved
    series = aggregate_document(
        document,
        group_by=args.get("groupBy"),
        metric=args.get("metric"),
        aggregation=args.get("aggregation") or "count",
    )
    document_points = sanitize_chart_data(series.points)
    # A metric that could not be applied is shown as a count in the title.
    suffix = f" ({series.aggregation})" if series.fell_back_to_count else ""
    if source == "document":
        payload = {"title": f"{title}{suffix}", "data": document_points, "source": "document"}
        return [_candidate("chart", kind, payload, context, base_id, update=bool(requested_id))]

    return [
        _candidate(
            "chart",
            kind,
            {"title": f"{title} (from {filename}){suffix}", "data": document_points, "source": "document"},
            context,
            f"{base_id}-doc",
            update=bool(requested_id),
        ),
        _candidate(
            "chart",
            kind,
            {"title": f"{title} (from Gemini)", "data": model_points, "source": "gemini"},
            context,
            base_id,
            update=bool(requested_id),
        ),
    ]


def map_points(locations: Any) -> List[Dict[str, Any]]:
    """Keep in-range locations and give each a colour (model colour first)."""
    if not isinstance(locations, list):
        return []
    points: List[Dict[str, Any]] = []
    for location in locations:
        if not isinstance(location, dict):
            continue
        lat = to_finite_float(location.get("lat"))
        lon = to_finite_float(location.get("lon"))
        if lat is None or lon is None or not -90 <= lat <= 90 or not -180 <= lon <= 180:
            continue
        color = location.get("color") or DISTINCT_COLORS[len(points) % len(DISTINCT_COLORS)]
        points.append(
            {
                "name": str(location.get("name") or f"Location {len(points) + 1}"),
                "coordinates": [lat, lon],
                "color": str(color),
            }
        )
    return points


def create_map(args: Dict[str, Any], context: ToolContext) -> List[Dict[str, Any]]:
    points = map_points(args.get("locations"))
    if len(points) < 2:
        logger.info("conversation=%s map kept %d valid location(s)", context.conversation_id, len(points))
        return [error_widget("Map requires at least 2 valid locations", MAP_TOO_FEW_LOCATIONS, context.cursor)]
    payload = {"title": _text_arg(args, "title", "Map")[:TITLE_LIMIT], "data": points}
    return [_candidate("map", "map", payload, context)]


def create_image(args: Dict[str, Any], context: ToolContext) -> List[Dict[str, Any]]:
    # Seeded stock photo; the random suffix keeps repeated prompts distinct.
    prompt = _text_arg(args, "prompt")
    seed = quote(prompt or "default", safe="")
    src = f"https://picsum.photos/seed/{seed}-{random.randint(0, 999)}/800/600"
    if not is_https_url(src):
        src = FALLBACK_IMAGE
    payload = {"src": src, "title": prompt[:TITLE_LIMIT] or "Generated Image"}
    return [_candidate("image", "image", payload, context)]


def resolve_video(url_or_query: str) -> Tuple[str, str]:
    """Return ``(src, title)``: the URL itself when it is an https video file, else the fallback clip."""
    if is_https_video_url(url_or_query):
        name = urlparse(url_or_query).path.rstrip("/").split("/")[-1]
        return url_or_query, (name or "Video")[:TITLE_LIMIT]
    if urlparse(url_or_query).scheme:
        return FALLBACK_VIDEO, "Video"
    return FALLBACK_VIDEO, (url_or_query or "Video")[:TITLE_LIMIT]


def create_video(args: Dict[str, Any], context: ToolContext) -> List[Dict[str, Any]]:
    src, title = resolve_video(_text_arg(args, "query"))
    return [_candidate("video", "video", {"src": src, "title": title}, context)]


def create_camera(args: Dict[str, Any], context: ToolContext) -> List[Dict[str, Any]]:
    stream_url = _text_arg(args, "streamUrl")
    if not stream_url:
        raise WidgetValidationError("create_camera requires a streamUrl")
    payload = {"streamUrl": stream_url, "title": _text_arg(args, "title", "Camera Feed")[:TITLE_LIMIT]}
    return [_candidate("camera", "camera", payload, context)]


def analyze_document(args: Dict[str, Any], context: ToolContext) -> List[Dict[str, Any]]:
    """Purpose: Describe an uploaded document and optionally answer a question about it.
    Inputs/Outputs: Inputs are filename and optional question; output is [chat, document].
    Side Effects / State: One extra model call when a question is present.
    Dependencies: DocumentStore, the request provider's ``generate_text``, document_qa.md.
    Failure Modes: Unknown filename raises DocumentNotFoundError; QA model failures
        propagate as ModelInvocationError.
    If Removed: Uploaded files can only be charted, never summarized or queried.
    Testing Notes: A missing filename must surface as DOC_NOT_FOUND, not an exception.
    """
    # Resolve the document first so a bad filename never costs a model call.
    requested = _text_arg(args, "filename")
    resolved = context.documents.get(context.conversation_id, requested)
    if resolved is None:
        raise DocumentNotFoundError(f'Document "{requested or "(none)"}" not found in this conversation')
    filename, document = resolved

    question = _text_arg(args, "question")
    if question and context.provider is not None:
        summary = _answer_question(filename, question, document, context) or "No answer found."
    else:
        summary = f'Document "{filename}" uploaded successfully with {document.row_count} rows.'

    payload = {
        "filename": filename,
        "fields": list(document.fields),
        "rowCount": document.row_count,
        "preview": [dict(row) for row in document.preview],
        "summary": summary,
    }
    return [chat_widget(summary, context.cursor), _candidate("document", "document", payload, context)]


def _answer_question(filename: str, question: str, document: Any, context: ToolContext) -> str:
    template = load_prompt(_prompts_dir(context) / "document_qa.md")
    prompt = render_prompt(
        template,
        {
            "filename": filename,
            "question": question,
            "fields": json.dumps(document.fields, ensure_ascii=False),
            "row_count": str(document.row_count),
            "preview": json.dumps(document.preview[:QA_PREVIEW_ROWS], ensure_ascii=False, default=str),
        },
    )
    logger.info("conversation=%s document=%s question asked", context.conversation_id, filename)
    return context.provider.generate_text(prompt, model=context.model).strip()


def _prompts_dir(context: ToolContext) -> Path:
    return context.prompts_dir or Path(__file__).resolve().parent / "prompts"


def get_weather(args: Dict[str, Any], context: ToolContext) -> List[Dict[str, Any]]:
    """Purpose: Build a weather widget for a city, coordinates, or the client's location.
    Inputs/Outputs: Inputs are city, lat/lon, or coordinates="current"; output is one widget.
    Side Effects / State: Geocode and weather HTTP calls through the weather collaborator.
    Dependencies: WeatherClient (optional for coordinates and "current").
    Failure Modes: Lookup failures, or a city without a configured client, raise
        WeatherLookupError (SERVER_ERROR).
    If Removed: Weather requests degrade to chat replies.
    Testing Notes: coordinates="current" needs no client and no network.
    """
    # "current" is resolved by the browser; everything else needs coordinates.
    city = _text_arg(args, "city")
    lat = to_finite_float(args.get("lat"))
    lon = to_finite_float(args.get("lon"))
    wants_current = _text_arg(args, "coordinates").lower() == "current"
    if wants_current or (not city and (lat is None or lon is None)):
        payload: Dict[str, Any] = {"coordinates": "current"}
        return [_candidate("weather", "weather", payload, context)]

    client = context.weather
    configured = client is not None and getattr(client, "configured", True)
    if lat is None or lon is None:
        if not configured:
            raise WeatherLookupError(f"Weather lookup for {city} is not available")
        lat, lon = client.geocode_city(city)
    if not configured:
        return [_candidate("weather", "weather", {"coordinates": [lat, lon]}, context)]

    report = client.get_weather(lat, lon)
    payload = {
        "coordinates": report.get("coordinates") or [lat, lon],
        "description": report.get("description"),
        "icon": report.get("icon"),
        "temp": report.get("temp"),
    }
    if city:
        payload["location"] = city
    return [_candidate("weather", "weather", payload, context)]


def _object(properties: Dict[str, Any], required: Iterable[str] = ()) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "OBJECT", "properties": properties}
    required = list(required)
    if required:
        schema["required"] = required
    return schema


_STRING = {"type": "STRING"}
_NUMBER = {"type": "NUMBER"}


def _chart_parameters(with_kind: bool) -> Dict[str, Any]:
    properties: Dict[str, Any] = {
        "title": _STRING,
        "data": {
            "type": "ARRAY",
            "items": _object({"label": _STRING, "value": _NUMBER}, ["label", "value"]),
        },
        "source": {"type": "STRING", "enum": ["document", "gemini", "compare"]},
        "filename": _STRING,
        "groupBy": _STRING,
        "metric": _STRING,
        "aggregation": {"type": "STRING", "enum": ["count", "sum", "avg"]},
        "widgetId": _STRING,
    }
    required = ["title"]
    if with_kind:
        properties["kind"] = {"type": "STRING", "enum": list(CHART_KINDS)}
        required.append("kind")
    return _object(properties, required)


def build_default_registry() -> ToolRegistry:
    """Registry with every dashboard widget tool, including the per-kind chart aliases."""
    registry = ToolRegistry()
    registry.register(
        ToolSpec("chat_reply", "Plain conversational reply", _object({"reply": _STRING}, ["reply"]), chat_reply)
    )
    registry.register(
        ToolSpec("create_chart", "Line, bar or pie chart", _chart_parameters(with_kind=True), create_chart)
    )
    for kind in CHART_KINDS:
        registry.register(
            ToolSpec(
                f"create_{kind}_chart",
                f"{kind.capitalize()} chart",
                _chart_parameters(with_kind=False),
                partial(create_chart, kind=kind),
            )
        )
    location = _object(
        {"name": _STRING, "lat": _NUMBER, "lon": _NUMBER, "color": _STRING},
        ["name", "lat", "lon"],
    )
    registry.register(
        ToolSpec(
            "create_map",
            "Map with at least two locations",
            _object({"locations": {"type": "ARRAY", "items": location}, "title": _STRING}, ["locations"]),
            create_map,
        )
    )
    registry.register(
        ToolSpec("create_image", "Image", _object({"prompt": _STRING}, ["prompt"]), create_image)
    )
    registry.register(
        ToolSpec("create_video", "Video", _object({"query": _STRING}, ["query"]), create_video)
    )
    registry.register(
        ToolSpec(
            "create_camera",
            "Live camera feed",
            _object({"streamUrl": _STRING, "title": _STRING}, ["streamUrl"]),
            create_camera,
        )
    )
    registry.register(
        ToolSpec(
            "analyze_document",
            "Summarize or answer a question about an uploaded document",
            _object({"filename": _STRING, "question": _STRING}, ["filename"]),
            analyze_document,
        )
    )
    registry.register(
        ToolSpec(
            "get_weather",
            "Weather widget",
            _object({"city": _STRING, "lat": _NUMBER, "lon": _NUMBER, "coordinates": _STRING}),
            get_weather,
        )
    )
    return registry
