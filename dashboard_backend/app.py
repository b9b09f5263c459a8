from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Query, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, load_settings
from .document_store import DocumentStore
from .errors import (
    METHOD_NOT_ALLOWED,
    MISSING_ID,
    SERVER_ERROR,
    VALIDATION_ERROR,
    DocumentParseError,
    ModelInvocationError,
    StreamError,
    StreamNotReadyError,
    WeatherLookupError,
    WidgetValidationError,
)
from .history_store import HistoryStore
from .models import (
    DocUploadRequest,
    DocUploadResponse,
    HistoryResponse,
    StartStreamRequest,
    StartStreamResponse,
    StopStreamRequest,
    StreamListResponse,
    WeatherRequest,
    WidgetRequest,
)
from .orchestrator import WidgetAgent
from .providers import ProviderRegistry
from .streaming import StreamManager
from .uploads import summarize_upload
from .weather import WeatherClient
from .widgets import error_widget

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("dashboard").setLevel(log_level)
logger = logging.getLogger("dashboard.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


def _error_response(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_widget(message, code))


def create_app(
    settings: Optional[Settings] = None,
    agent: Optional[WidgetAgent] = None,
    streams: Optional[StreamManager] = None,
    weather: Optional[WeatherClient] = None,
) -> FastAPI:
    """Purpose: Build the FastAPI application and wire stores, providers, and collaborators.
    Inputs/Outputs: Optional settings, agent, stream manager, and weather client overrides;
        output is a FastAPI app.
    Side Effects / State: Hydrates the history store from disk when HISTORY_PATH is set.
    Dependencies: WidgetAgent, HistoryStore, DocumentStore, ProviderRegistry, StreamManager,
        WeatherClient.
    Failure Modes: Invalid numeric settings raise ValueError at startup; missing API keys do
        not (they fail the request that needs them).
    If Removed: The dashboard has no HTTP surface.
    Testing Notes: Pass a WidgetAgent with fake providers and drive it with TestClient.
    """
    # Collaborators are built from settings unless injected.
    settings = settings or load_settings()
    weather = weather or WeatherClient(settings.weather_api_key, settings.weather_api_base)
    if agent is None:
        agent = WidgetAgent(
            settings=settings,
            providers=ProviderRegistry(settings),
            history=HistoryStore(settings.history_path, limit=settings.history_limit),
            documents=DocumentStore(),
            weather=weather,
        )
    streams = streams or StreamManager.from_settings(settings)

    app = FastAPI(title="AI Widget Dashboard Backend")

    @app.exception_handler(RequestValidationError)
    async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        # Malformed bodies get the same error widget shape as every other failure.
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(item) for item in first.get("loc", ()))
        message = f"Invalid request: {location} {first.get('msg', '')}".strip()
        return _error_response(400, message, VALIDATION_ERROR)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 405:
            return _error_response(405, f"Method {request.method} not allowed", METHOD_NOT_ALLOWED)
        return await http_exception_handler(request, exc)

    @app.post("/api/generate-widget")
    def generate_widget(request: WidgetRequest) -> JSONResponse:
        """Purpose: Turn a dashboard command into one widget or a list of widgets.
        Inputs/Outputs: Input is WidgetRequest; output is a widget, or an array when the
            pipeline produced more than one.
        Side Effects / State: May store a document and append conversation history.
        Dependencies: WidgetAgent.handle_request.
        Failure Modes: Missing conversationId returns 400 MISSING_ID; pipeline failures come
            back as error widgets with status 200.
        If Removed: The dashboard cannot create widgets.
        Testing Notes: A compare chart returns a two-element array.
        """
        # Reject before any work when the conversation is unknown.
        if not request.conversation_id:
            return _error_response(400, "conversationId is required", MISSING_ID)
        widgets = agent.handle_request(request)
        return JSONResponse(content=widgets[0] if len(widgets) == 1 else widgets)

    @app.get("/api/generate-widget")
    def get_history(conversation_id: Optional[str] = Query(default=None, alias="conversationId")) -> Any:
        if not conversation_id:
            return _error_response(400, "conversationId is required", MISSING_ID)
        history = agent.history.get(conversation_id)
        return HistoryResponse(history=history).model_dump()

    @app.delete("/api/generate-widget")
    def delete_history(conversation_id: Optional[str] = Query(default=None, alias="conversationId")) -> Any:
        if not conversation_id:
            return _error_response(400, "conversationId is required", MISSING_ID)
        agent.history.clear(conversation_id)
        agent.documents.clear(conversation_id)
        logger.info("conversation=%s cleared", conversation_id)
        return {"ok": True}

    @app.get("/api/conversations")
    def list_conversations() -> List[str]:
        return agent.history.list_conversations()

    @app.post("/api/doc-upload")
    def doc_upload(request: DocUploadRequest) -> Any:
        """Purpose: Summarize one uploaded file outside any conversation.
        Inputs/Outputs: Input is DocUploadRequest; output is {filename, summary} plus
            fields/rowCount/preview for spreadsheets and CSV files.
        Side Effects / State: One model call; the file is not stored.
        Dependencies: summarize_upload and the provider registry.
        Failure Modes: Missing file data, an unreadable file or an oversized non-tabular
            file return 400 VALIDATION_ERROR; model failures return 500 SERVER_ERROR.
        If Removed: Files can only be analysed through generate-widget.
        Testing Notes: Upload a CSV with a fake provider and check fields and summary.
        """
        # All three file fields are required before any model is touched.
        if not (request.base64_file and request.file_name and request.mime_type):
            return _error_response(400, "Missing file data (base64File, fileName, mimeType)", VALIDATION_ERROR)
        try:
            provider = agent.providers.get(request.model)
            result = summarize_upload(
                provider,
                request.base64_file,
                request.file_name,
                request.mime_type,
                prompt=request.prompt,
            )
        except (DocumentParseError, WidgetValidationError) as exc:
            return _error_response(400, exc.message, VALIDATION_ERROR)
        except ModelInvocationError as exc:
            logger.error("doc-upload file=%s failed: %s", request.file_name, exc.message)
            return _error_response(500, exc.message, SERVER_ERROR)
        return DocUploadResponse(**result).model_dump(by_alias=True, exclude_none=True)

    @app.post("/api/get-weather")
    def get_weather(request: WeatherRequest) -> Any:
        """Purpose: Current weather for a city or a coordinate pair.
        Inputs/Outputs: Input is WeatherRequest; output is {description, icon, temp, coordinates}.
        Side Effects / State: Outbound geocode/weather calls.
        Dependencies: WeatherClient.
        Failure Modes: Neither city nor lat/lon returns 400 VALIDATION_ERROR; lookup failures
            return 500 SERVER_ERROR.
        If Removed: Weather widgets cannot refresh conditions client-side.
        Testing Notes: Inject a fake WeatherClient and request {city: "Paris"}.
        """
        # Coordinates win over the city name when both are sent.
        if request.lat is None or request.lon is None:
            if not request.city:
                return _error_response(400, "city or lat/lon is required", VALIDATION_ERROR)
        try:
            if request.lat is not None and request.lon is not None:
                lat, lon = request.lat, request.lon
            else:
                lat, lon = weather.geocode_city(request.city or "")
            report: Dict[str, Any] = weather.get_weather(lat, lon)
        except WeatherLookupError as exc:
            logger.warning("weather lookup failed: %s", exc.message)
            return _error_response(500, exc.message, SERVER_ERROR)
        if request.city:
            report["location"] = request.city
        return report

    @app.post("/api/start-stream")
    def start_stream(request: StartStreamRequest) -> Any:
        try:
            result = streams.start_stream(request.rtsp_url, request.protocol)
        except ValueError as exc:
            return _error_response(400, str(exc), VALIDATION_ERROR)
        except StreamNotReadyError as exc:
            return _error_response(504, exc.message, SERVER_ERROR)
        except StreamError as exc:
            logger.error("start-stream failed: %s", exc.message)
            return _error_response(502, exc.message, SERVER_ERROR)
        return StartStreamResponse(**result).model_dump()

    @app.post("/api/stop-stream")
    def stop_stream(request: StopStreamRequest) -> Any:
        try:
            return streams.stop_stream(request.path)
        except ValueError as exc:
            return _error_response(400, str(exc), VALIDATION_ERROR)
        except StreamError as exc:
            logger.error("stop-stream path=%s failed: %s", request.path, exc.message)
            return _error_response(502, exc.message, SERVER_ERROR)

    @app.get("/api/list-paths")
    def list_paths() -> Any:
        try:
            listing = streams.list_active_paths()
        except StreamError as exc:
            logger.error("list-paths failed: %s", exc.message)
            return _error_response(502, exc.message, SERVER_ERROR)
        return StreamListResponse.model_validate(listing).model_dump(by_alias=True)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
