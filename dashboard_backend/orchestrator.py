"""Widget response resolution pipeline.

Role:
    Turns one dashboard command (text, optional uploaded file, conversation id,
    provider choice) into a list of validated widgets. It is the single boundary
    that converts every internal failure into an ``error`` widget.

Pipeline data contract (fields passed across steps):
    - request / conversation_id / provider_name: the incoming command.
    - provider / json_mode: the resolved model client and whether it replies in JSON text.
    - prompt / history: the composed instruction and the bounded conversation history.
    - reply / model_reached / model_used: the provider output and which model produced it.
    - candidates: raw widget dicts from tools or model JSON, not yet validated.
    - widgets: validated wire dicts returned to the caller.
    - halted: set when a step already produced the final (error) response.

Step contracts:
    ingest_document:
        Only when the request carries a file; parses it and stores it under its filename.
        Parse failures halt with VALIDATION_ERROR before any model call.
    compose_prompt:
        Renders widget_agent.md, appends the uploaded-filenames hint, and for JSON-mode
        providers the json_mode.md contract with every tool schema.
    invoke_model:
        Sends bounded history plus the prompt. Model-not-found retries once on the
        fallback Gemini model; other failures halt with SERVER_ERROR.
    resolve_widgets:
        Tool calls are dispatched in order; JSON-mode text is parsed into a tool call or
        widgets; anything else becomes one chat widget.
    validate_widgets:
        Each candidate is validated on its own; failures become VALIDATION_ERROR widgets.
    append_history:
        Only when the model was reached; stores the user command and the reply summary.
    finalize:
        Always runs; guarantees at least one widget and logs the outcome.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import Settings
from .document_store import DocumentStore
from .documents import build_structured_document, decode_base64_file
from .errors import (
    SERVER_ERROR,
    VALIDATION_ERROR,
    DocumentParseError,
    ModelInvocationError,
    ModelNotFoundError,
    WidgetError,
    WidgetValidationError,
)
from .history_store import HistoryStore, make_message
from .models import ChatMessage, WidgetRequest
from .pipeline_runtime import PipelineRunner, PipelineStep
from .prompt_loader import load_prompt, render_prompt
from .providers import DEFAULT_PROVIDER, ModelReply, ProviderRegistry
from .tools import CHART_KINDS, SIZES, ToolContext, ToolRegistry, build_default_registry
from .utils import parse_model_json
from .widgets import LayoutCursor, chat_widget, error_widget, make_id, validate_widget, widget_text, widget_to_dict

logger = logging.getLogger("dashboard.agent")

HISTORY_PLACEHOLDER = "Widget generated."
EMPTY_REPLY = "Here's my reply based on your request."


@dataclass
class PipelineContext:
    """Mutable context passed through each pipeline step."""
    conversation_id: str
    request: WidgetRequest
    provider_name: str
    prompts_dir: Path
    history: List[ChatMessage] = field(default_factory=list)
    provider: Any = None
    json_mode: bool = False
    prompt: str = ""
    reply: Optional[ModelReply] = None
    model_reached: bool = False
    model_used: Optional[str] = None
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    widgets: List[Dict[str, Any]] = field(default_factory=list)
    halted: bool = False
    cursor: LayoutCursor = field(default_factory=LayoutCursor)
    step_logs: List[Dict[str, str]] = field(default_factory=list)

    def log(self, event: str, detail: str, status: str = "success") -> None:
        self.step_logs.append({"step": event, "detail": detail, "status": status})
        logger.debug("conversation=%s step=%s status=%s detail=%s", self.conversation_id, event, status, detail)

    def halt(self, message: str, code: str) -> None:
        """Replace the response with a single error widget and stop the remaining steps."""
        self.widgets = [error_widget(message, code, self.cursor)]
        self.halted = True


class WidgetAgent:
    """Runs the widget pipeline for one request at a time; stores are shared."""

    def __init__(
        self,
        settings: Settings,
        providers: ProviderRegistry,
        history: HistoryStore,
        documents: DocumentStore,
        tools: Optional[ToolRegistry] = None,
        weather: Any = None,
    ) -> None:
        """Purpose: Wire the pipeline steps to their collaborators.
        Inputs/Outputs: Inputs are settings, provider registry, stores, optional tool registry
            and weather client; no return value.
        Side Effects / State: Builds the step runner; no I/O.
        Dependencies: PipelineRunner, ToolRegistry, HistoryStore, DocumentStore.
        Failure Modes: None at init.
        If Removed: The HTTP layer has nothing to turn commands into widgets.
        Testing Notes: Inject a fake provider registry and assert widgets per reply shape.
        """
        # Steps after a halt are skipped; finalize always runs.
        self._settings = settings
        self._providers = providers
        self._history = history
        self._documents = documents
        self._tools = tools or build_default_registry()
        self._weather = weather
        self._runner = PipelineRunner(
            steps=[
                PipelineStep("ingest_document", self._step_ingest_document, skip_if=_no_file),
                PipelineStep("compose_prompt", self._step_compose_prompt, skip_if=_halted),
                PipelineStep("invoke_model", self._step_invoke_model, skip_if=_halted),
                PipelineStep("resolve_widgets", self._step_resolve_widgets, skip_if=_halted),
                PipelineStep("validate_widgets", self._step_validate_widgets, skip_if=_halted),
                PipelineStep("append_history", self._step_append_history, skip_if=_model_not_reached),
                PipelineStep("finalize", self._step_finalize, always_run=True),
            ]
        )

    @property
    def providers(self) -> ProviderRegistry:
        return self._providers

    @property
    def documents(self) -> DocumentStore:
        return self._documents

    @property
    def history(self) -> HistoryStore:
        return self._history

    def handle_request(self, request: WidgetRequest) -> List[Dict[str, Any]]:
        """Purpose: Run the full pipeline and return validated widget dicts.
        Inputs/Outputs: Input is a WidgetRequest; output is a non-empty list of widgets.
        Side Effects / State: May store a document, call a model, and append history.
        Dependencies: PipelineRunner and every step below.
        Failure Modes: Never raises; unexpected exceptions become one SERVER_ERROR widget.
        If Removed: No widget generation is possible.
        Testing Notes: Make the provider raise RuntimeError and expect a SERVER_ERROR widget.
        """
        # Build the context, run the steps, and convert anything unexpected.
        provider_name = request.model or DEFAULT_PROVIDER
        context = PipelineContext(
            conversation_id=request.conversation_id or "",
            request=request,
            provider_name=provider_name,
            prompts_dir=self._settings.prompts_dir,
        )
        logger.info(
            "conversation=%s provider=%s file=%s text=%s",
            context.conversation_id,
            provider_name,
            request.file_name if request.has_file() else "-",
            request.text,
        )
        try:
            self._runner.run(context)
        except Exception as exc:
            logger.exception("conversation=%s pipeline failed", context.conversation_id)
            return [error_widget(f"Unexpected server error: {exc}", SERVER_ERROR)]
        return context.widgets

    def _step_ingest_document(self, context: PipelineContext) -> None:
        request = context.request
        try:
            data = decode_base64_file(request.base64_file or "")
            document = build_structured_document(data, request.mime_type or "")
        except DocumentParseError as exc:
            logger.warning("conversation=%s document=%s parse failed: %s", context.conversation_id, request.file_name, exc.message)
            context.halt(f"Could not read {request.file_name}: {exc.message}", VALIDATION_ERROR)
            return
        if document.is_empty():
            logger.warning(
                "conversation=%s document=%s mime=%s produced no fields",
                context.conversation_id,
                request.file_name,
                request.mime_type,
            )
        self._documents.put(context.conversation_id, request.file_name or "", document)
        context.log("ingest_document", f"{request.file_name}: {document.row_count} rows")

    def _step_compose_prompt(self, context: PipelineContext) -> None:
        """Purpose: Resolve the provider and build the prompt text for this turn.
        Inputs/Outputs: Reads request text and stored filenames; sets provider/json_mode/prompt.
        Side Effects / State: May construct a provider client on first use.
        Dependencies: ProviderRegistry, widget_agent.md, json_mode.md, ToolRegistry schemas.
        Failure Modes: An unconfigured provider halts with SERVER_ERROR.
        If Removed: The model receives no instructions and no filename hint.
        Testing Notes: Upload a file, then check the prompt lists its filename.
        """
        # Provider first: JSON-mode providers need the tool contract in the prompt.
        try:
            context.provider = self._providers.get(context.provider_name)
        except ModelInvocationError as exc:
            context.halt(exc.message, SERVER_ERROR)
            return
        context.json_mode = bool(getattr(context.provider, "json_mode", False))

        template = load_prompt(context.prompts_dir / "widget_agent.md")
        sections = [render_prompt(template, {"user_text": context.request.text})]
        filenames = self._documents.filenames(context.conversation_id)
        if filenames:
            listed = ", ".join(f'"{name}"' for name in filenames)
            sections.append(
                f"Uploaded documents in this conversation: {listed}. "
                'For charts built from these files use source "document" (or "compare") '
                "with the exact filename, and use analyze_document for questions about them."
            )
        if context.json_mode:
            contract = load_prompt(context.prompts_dir / "json_mode.md")
            schemas = json.dumps(self._tools.declarations(), indent=2)
            sections.append(render_prompt(contract, {"tool_schemas": schemas}))
        context.prompt = "\n\n".join(sections)
        context.history = self._history.get(context.conversation_id)[-self._history.limit :]
        context.log("compose_prompt", f"files={len(filenames)} json_mode={context.json_mode}")

    def _step_invoke_model(self, context: PipelineContext) -> None:
        """Purpose: Call the provider once, with one fallback retry on model-not-found.
        Inputs/Outputs: Reads history/prompt/provider; sets reply, model_reached, model_used.
        Side Effects / State: One or two outbound model calls.
        Dependencies: Provider ``generate`` and the Gemini fallback model setting.
        Failure Modes: Any provider failure other than the first model-not-found halts with
            SERVER_ERROR; timeouts are treated the same.
        If Removed: No widgets beyond errors can be produced.
        Testing Notes: First call raises ModelNotFoundError, second returns text: one chat widget.
        """
        # Native tool calling only for providers that support it.
        contents = [_history_entry(message) for message in context.history]
        contents.append({"role": "user", "parts": [{"text": context.prompt}]})
        tools = None if context.json_mode else self._tools.declarations()
        try:
            try:
                context.reply = context.provider.generate(contents, tools=tools)
            except ModelNotFoundError as exc:
                fallback = self._providers.fallback_model
                logger.warning(
                    "conversation=%s provider=%s model not found (%s); retrying with %s",
                    context.conversation_id,
                    context.provider_name,
                    exc.message,
                    fallback,
                )
                context.provider = self._providers.get("gemini")
                context.model_used = fallback
                context.reply = context.provider.generate(contents, tools=self._tools.declarations(), model=fallback)
        except ModelInvocationError as exc:
            logger.error("conversation=%s model call failed: %s", context.conversation_id, exc.message)
            context.halt(f"Model request failed: {exc.message}", SERVER_ERROR)
            return
        context.model_reached = True
        context.log(
            "invoke_model",
            f"tool_calls={len(context.reply.tool_calls)} text_chars={len(context.reply.text)}",
        )

    def _step_resolve_widgets(self, context: PipelineContext) -> None:
        reply = context.reply or ModelReply()
        if reply.tool_calls:
            # Accompanying text becomes a leading chat widget.
            if reply.text:
                context.candidates.append(chat_widget(reply.text, context.cursor))
            for call in reply.tool_calls:
                context.candidates.extend(self._run_tool(call.name, call.args, context))
        elif context.json_mode:
            self._resolve_json_text(reply.text, context)
        else:
            context.candidates.append(chat_widget(reply.text or EMPTY_REPLY, context.cursor))
        context.log("resolve_widgets", f"candidates={len(context.candidates)}")

    def _resolve_json_text(self, text: str, context: PipelineContext) -> None:
        """Interpret JSON-mode output: a tool call, widget object(s), or plain text."""
        parsed = parse_model_json(text)
        if isinstance(parsed, dict) and isinstance(parsed.get("tool"), str):
            tool_name = parsed["tool"]
            args = parsed.get("args") if isinstance(parsed.get("args"), dict) else {}
            reply = parsed.get("reply")
            if isinstance(reply, str) and reply.strip() and tool_name != "chat_reply":
                context.candidates.append(chat_widget(reply.strip(), context.cursor))
            if tool_name == "chat_reply" and not args.get("reply") and isinstance(reply, str):
                args = dict(args, reply=reply)
            context.candidates.extend(self._run_tool(tool_name, args, context))
            return
        if isinstance(parsed, dict) and "type" in parsed:
            context.candidates.append(_complete_candidate(parsed, context.cursor))
            return
        if isinstance(parsed, list) and parsed and all(isinstance(item, dict) for item in parsed):
            context.candidates.extend(_complete_candidate(item, context.cursor) for item in parsed)
            return
        context.candidates.append(chat_widget(text.strip() or EMPTY_REPLY, context.cursor))

    def _run_tool(self, name: str, args: Dict[str, Any], context: PipelineContext) -> List[Dict[str, Any]]:
        tool_context = ToolContext(
            conversation_id=context.conversation_id,
            documents=self._documents,
            cursor=context.cursor,
            provider=context.provider,
            model=context.model_used,
            weather=self._weather,
            prompts_dir=context.prompts_dir,
        )
        try:
            return self._tools.dispatch(name, args, tool_context)
        except WidgetError as exc:
            logger.warning("conversation=%s tool=%s failed code=%s: %s", context.conversation_id, name, exc.code, exc.message)
            return [error_widget(exc.message, exc.code, context.cursor)]

    def _step_validate_widgets(self, context: PipelineContext) -> None:
        # One invalid widget never discards its siblings.
        widgets = []
        for candidate in context.candidates:
            try:
                widgets.append(widget_to_dict(validate_widget(candidate)))
            except WidgetValidationError as exc:
                kind = candidate.get("type", "unknown") if isinstance(candidate, dict) else "unknown"
                logger.warning("conversation=%s invalid %s widget: %s", context.conversation_id, kind, exc.message)
                widgets.append(error_widget(f"Invalid {kind} widget: {exc.message}", VALIDATION_ERROR, context.cursor))
        context.widgets = widgets
        context.log("validate_widgets", f"widgets={len(widgets)}")

    def _step_append_history(self, context: PipelineContext) -> None:
        summary = widget_text(context.widgets[0]) if context.widgets else None
        self._history.append(
            context.conversation_id,
            [
                make_message("user", context.request.text),
                make_message("model", summary or HISTORY_PLACEHOLDER),
            ],
        )
        context.log("append_history", "pair appended")

    def _step_finalize(self, context: PipelineContext) -> None:
        if not context.widgets:
            context.widgets = [chat_widget(HISTORY_PLACEHOLDER, context.cursor)]
        logger.info(
            "conversation=%s widgets=%s halted=%s",
            context.conversation_id,
            [widget.get("type") for widget in context.widgets],
            context.halted,
        )


def _history_entry(message: ChatMessage) -> Dict[str, Any]:
    # Gemini only knows user/model turns.
    role = "model" if message.role == "model" else "user"
    return {"role": role, "parts": [{"text": part.text} for part in message.parts]}


def _complete_candidate(candidate: Dict[str, Any], cursor: LayoutCursor) -> Dict[str, Any]:
    """Give a model-authored widget an id and a grid slot when it omits them."""
    completed = dict(candidate)
    kind = str(completed.get("type") or "widget")
    if not completed.get("id"):
        completed["id"] = make_id(kind)
    if not isinstance(completed.get("layout"), dict):
        w, h = SIZES.get("chart" if kind in CHART_KINDS else kind, (4, 3))
        completed["layout"] = cursor.place(str(completed["id"]), w, h)
    return completed


def _halted(context: PipelineContext) -> bool:
    return context.halted


def _no_file(context: PipelineContext) -> bool:
    return context.halted or not context.request.has_file()


def _model_not_reached(context: PipelineContext) -> bool:
    return context.halted or not context.model_reached
