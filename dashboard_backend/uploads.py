"""One-shot file summaries for the standalone upload endpoint.

Spreadsheets and CSV files are parsed and the table is sent to the model with the
instruction. Other files only get the instruction, and are refused above
MAX_INLINE_BYTES.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from .documents import build_structured_document, decode_base64_file, is_tabular_mime
from .errors import WidgetValidationError

logger = logging.getLogger("dashboard.uploads")

MAX_INLINE_BYTES = 20 * 1024 * 1024
NO_SUMMARY = "No summary available."


def default_prompt(mime_type: str) -> str:
    mime = (mime_type or "").lower()
    if mime.startswith("image/"):
        return "Describe this image."
    if mime.startswith("audio/"):
        return "Transcribe this audio."
    if mime.startswith("video/"):
        return "Summarize this video."
    if mime == "application/pdf" or mime.startswith("text/") or "word" in mime:
        return "Summarize this document."
    return "Analyze this file."


def summarize_upload(
    provider: Any,
    base64_file: str,
    file_name: str,
    mime_type: str,
    prompt: Optional[str] = None,
) -> Dict[str, Any]:
    """Purpose: Summarize an uploaded file with one model call.
    Inputs/Outputs: Inputs are the provider, the base64 payload, filename, mime type and an
        optional instruction; output is {filename, summary} plus fields/rowCount/preview
        for tabular files.
    Side Effects / State: One ``generate_text`` call on the provider; nothing is stored.
    Dependencies: build_structured_document, decode_base64_file, default_prompt.
    Failure Modes: Bad base64 or a malformed workbook raises DocumentParseError; a
        non-tabular file over MAX_INLINE_BYTES raises WidgetValidationError; model
        failures raise ModelInvocationError.
    If Removed: Files can only be analysed inside a widget request.
    Testing Notes: A CSV upload must put the rows into the model prompt and echo fields back.
    """
    # Tabular files carry their rows; everything else only the instruction.
    instruction = (prompt or "").strip() or default_prompt(mime_type)
    data = decode_base64_file(base64_file)
    if is_tabular_mime(mime_type):
        table = build_structured_document(data, mime_type).to_dict()
        body = json.dumps(
            {"fields": table["fields"], "rowCount": table["rowCount"], "data": table["fullData"]},
            ensure_ascii=False,
            default=str,
        )
        summary = provider.generate_text(f"{instruction}\n\n{body}")
        logger.info("upload file=%s rows=%d summarized", file_name, table["rowCount"])
        return {
            "filename": file_name,
            "summary": summary or NO_SUMMARY,
            "fields": table["fields"],
            "rowCount": table["rowCount"],
            "preview": table["preview"],
        }

    if len(data) >= MAX_INLINE_BYTES:
        raise WidgetValidationError("File too large. Please upload a file < 20MB for analysis.")
    summary = provider.generate_text(f"{instruction}\n\n(File content not included: {mime_type})")
    logger.info("upload file=%s mime=%s summarized without content", file_name, mime_type)
    return {"filename": file_name, "summary": summary or NO_SUMMARY}
