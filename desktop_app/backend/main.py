#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
FastAPI backend exposing the Markdown image stacker as HTTP services.  This
module wraps the core logic in `tool/md_image_stacker.py` so that an external
client (editor plugin, Electron shell) can stack or unstack the image block it
is pointing at over a local API.
"""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, validator

# ---------------------------------------------------------------------------
# Import core logic
# ---------------------------------------------------------------------------

BACKEND_DIR = Path(__file__).resolve().parent
REPO_ROOT = BACKEND_DIR.parent.parent
TOOL_DIR = REPO_ROOT / "tool"

if str(TOOL_DIR) not in sys.path:
    sys.path.insert(0, str(TOOL_DIR))

from md_image_stacker import (  # noqa: E402
    DEFAULT_MAX_RETRIES,
    MARKDOWN_SUFFIXES,
    Config,
    DocumentStore,
    ImageTarget,
    NoOwningDocumentError,
    UnresolvableReferenceError,
    collect_image_lines,
    find_document_for_target,
    iter_markdown_files,
    process_document,
    read_text,
    reference_locator,
    search_key_for_target,
    stack_images,
    unstack_images,
)

# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------

class LogCollector:
    """Collects structured log entries emitted while a request is served."""

    def __init__(self) -> None:
        self._entries: List[Dict[str, Any]] = []

    def _append(self, level: str, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        entry: Dict[str, Any] = {
            "level": level,
            "message": message,
            "ts": time.time(),
        }
        if extra:
            entry["extra"] = extra
        self._entries.append(entry)

    def info(self, message: str) -> None:
        self._append("info", message)

    def error(self, message: str) -> None:
        self._append("error", message)

    def debug(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self._append("debug", message, extra)

    # Config callback adapter ---------------------------------------------------

    def progress_cb(self, message: str) -> None:
        self.info(message)

    def export(self) -> List[Dict[str, Any]]:
        return self._entries


def _serialize_image_line(item: Any) -> Dict[str, Any]:
    return {
        "line": item.index + 1,
        "text": item.text,
        "indent": item.indent,
        "stacked": item.stacked,
        "references": list(item.references),
        "locators": [reference_locator(ref) for ref in item.references],
    }


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class TargetModel(BaseModel):
    src: str = Field("", description="Rendered image locator (src attribute)")
    classes: List[str] = Field(default_factory=list, description="CSS classes of the image element")
    filesource: Optional[str] = Field(None, description="filesource attribute of an excalidraw embed")
    parent_src: Optional[str] = Field(None, description="src of the enclosing element")
    indent: Optional[str] = Field(None, description="Indentation for unstacked lines")

    @validator("classes", pre=True, always=True)
    def _split_class_list(cls, value: Any) -> List[str]:
        # accept the raw DOM className string as well
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        return list(value)

    def to_target(self) -> ImageTarget:
        return ImageTarget(
            src=self.src,
            classes=list(self.classes),
            filesource=self.filesource,
            parent_src=self.parent_src,
            indent=self.indent,
        )


class StackOptions(BaseModel):
    lenient: bool = False
    backup: bool = True
    dry_run: bool = False
    verbose: bool = True
    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0, le=10)


class DocumentRequest(BaseModel):
    md_path: Path = Field(..., description="Markdown document, or a folder of open notes to search")
    target: TargetModel
    options: StackOptions = Field(default_factory=StackOptions)


class ListRequest(BaseModel):
    md_path: Path = Field(..., description="Markdown document to analyse")


class TextRequest(BaseModel):
    content: str = Field(..., description="Full document text")
    target: TargetModel
    lenient: bool = False


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(title="Markdown Image Stacker API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One store for the whole process so concurrent requests on a file share its lock
STORE = DocumentStore()


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------


def _config_from_request(
    mode: str,
    options: StackOptions,
    log_collector: Optional[LogCollector] = None,
) -> Config:
    cfg = Config(
        mode=mode,
        lenient=options.lenient,
        backup=options.backup,
        dry_run=options.dry_run,
        verbose=options.verbose,
        max_retries=options.max_retries,
    )
    if log_collector and options.verbose:
        cfg.progress_cb = log_collector.progress_cb
    return cfg


def _ensure_markdown_exists(path: Path) -> Path:
    md_path = path.expanduser().resolve()
    if not md_path.exists():
        raise HTTPException(status_code=404, detail=f"Markdown file not found: {md_path}")
    if md_path.is_file() and md_path.suffix.lower() not in MARKDOWN_SUFFIXES:
        raise HTTPException(status_code=400, detail="Only Markdown (.md) files are supported")
    return md_path


def _locate_document(root: Path, target: ImageTarget) -> Path:
    try:
        return find_document_for_target(iter_markdown_files(root), target)
    except UnresolvableReferenceError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except NoOwningDocumentError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


async def _run_document(mode: str, payload: DocumentRequest) -> Dict:
    root = _ensure_markdown_exists(payload.md_path)
    target = payload.target.to_target()
    log_collector = LogCollector()
    cfg = _config_from_request(mode, payload.options, log_collector)
    try:
        md_path = await run_in_threadpool(_locate_document, root, target)
        log_collector.debug(
            "resolved search key",
            {"search_key": search_key_for_target(target), "document": str(md_path)},
        )
        result = await run_in_threadpool(process_document, md_path, target, cfg, STORE)
    except HTTPException:
        raise
    except Exception as exc:
        log_collector.error(str(exc))
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    result["logs"] = log_collector.export()
    return result


def _run_text(fn, payload: TextRequest) -> Dict:
    target = payload.target.to_target()
    try:
        key = search_key_for_target(target)
        result = fn(payload.content, target)
    except UnresolvableReferenceError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"search_key": key, "changed": result != payload.content, "content": result}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/api/v1/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/v1/documents/images")
async def list_images(payload: ListRequest) -> Dict:
    md_path = _ensure_markdown_exists(payload.md_path)
    if not md_path.is_file():
        raise HTTPException(status_code=400, detail="Listing expects a single Markdown file")
    text = await run_in_threadpool(read_text, md_path)
    items = [_serialize_image_line(item) for item in collect_image_lines(text)]
    return {"document": str(md_path), "count": len(items), "items": items}


@app.post("/api/v1/documents/locate")
async def locate_document(payload: DocumentRequest) -> Dict:
    root = _ensure_markdown_exists(payload.md_path)
    target = payload.target.to_target()
    md_path = await run_in_threadpool(_locate_document, root, target)
    return {"document": str(md_path), "search_key": search_key_for_target(target)}


@app.post("/api/v1/documents/stack")
async def stack_document(payload: DocumentRequest) -> Dict:
    return await _run_document("stack", payload)


@app.post("/api/v1/documents/unstack")
async def unstack_document(payload: DocumentRequest) -> Dict:
    return await _run_document("unstack", payload)


@app.post("/api/v1/text/stack")
def stack_text(payload: TextRequest) -> Dict:
    return _run_text(lambda text, target: stack_images(text, target, lenient=payload.lenient), payload)


@app.post("/api/v1/text/unstack")
def unstack_text(payload: TextRequest) -> Dict:
    return _run_text(unstack_images, payload)


# ---------------------------------------------------------------------------
# Dev helper: run with `uvicorn desktop_app.backend.main:app --reload`
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("desktop_app.backend.main:app", host="127.0.0.1", port=8000, reload=True)
