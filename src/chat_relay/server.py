"""FastAPI application relaying chat commands to a local LLM."""
from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import get_version
from .backend import InferenceBackend, create_backend_from_config
from .config import (
    GenerationSettings,
    HistorySettings,
    LinkSettings,
    SamplingSettings,
    load_config,
)
from .generation import Generator
from .links import LinkAugmenter
from .orchestrator import ChatOrchestrator
from .serializer import RequestSerializer
from .status import GenerationStatus


# -----------------------------
# Pydantic request/response
# -----------------------------
class AskRequest(BaseModel):
    question: str = Field(..., min_length=1)
    author: Optional[str] = Field(default=None, description="Shown in the reply banner.")


class AskResponse(BaseModel):
    ok: bool
    response: str
    chunks: List[str]


class MissionRequest(BaseModel):
    mission: str = Field(..., min_length=1)


# -----------------------------
# Utilities
# -----------------------------
_SECRET_KEYS = {"token", "api_key", "secret", "password"}


def _redact(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(cfg)
    for section in out.values():
        if isinstance(section, dict):
            for key in list(section):
                if key.lower() in _SECRET_KEYS:
                    section[key] = "***"
    return out


def build_orchestrator(
    cfg: Dict[str, Any],
    backend: InferenceBackend,
    *,
    augmenter: Optional[LinkAugmenter] = None,
    status: Optional[GenerationStatus] = None,
) -> ChatOrchestrator:
    generator = Generator(
        backend,
        GenerationSettings.from_config(cfg),
        SamplingSettings.from_config(cfg),
        status=status or GenerationStatus(),
    )
    return ChatOrchestrator(
        generator,
        history_settings=HistorySettings.from_config(cfg),
        augmenter=augmenter or LinkAugmenter(LinkSettings.from_config(cfg)),
        serializer=RequestSerializer(),
        max_message_length=int(cfg.get("server", {}).get("max_message_length", 2000)),
    )


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    backend: Optional[InferenceBackend] = None,
    augmenter: Optional[LinkAugmenter] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    # Services
    backend = backend or create_backend_from_config(cfg)
    orchestrator = build_orchestrator(cfg, backend, augmenter=augmenter)
    status = orchestrator.generator.status

    app = FastAPI(title="Chat Relay", version=get_version())
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.orchestrator = orchestrator

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "backend": type(backend).__name__,
            "config_keys": list(cfg.keys()),
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        return JSONResponse(_redact(cfg))

    @app.get("/status")
    def get_status() -> Dict[str, Any]:
        serializer = orchestrator.serializer
        return {
            **status.snapshot(),
            "busy": serializer.locked,
            "queued": serializer.waiting,
            "history_len": len(orchestrator.history),
        }

    @app.get("/history")
    def get_history() -> Dict[str, Any]:
        return {
            "directive": orchestrator.directive,
            "messages": [m.to_dict() for m in orchestrator.snapshot()],
        }

    @app.post("/ask", response_model=AskResponse)
    async def ask(req: AskRequest) -> AskResponse:
        question = (req.question or "").strip()
        if not question:
            raise HTTPException(status_code=400, detail="Question cannot be empty.")
        reply = await orchestrator.ask(question, author=req.author)
        return AskResponse(ok=reply.ok, response=reply.text, chunks=reply.chunks)

    @app.post("/mission")
    async def mission(req: MissionRequest) -> Dict[str, Any]:
        text = (req.mission or "").strip()
        if not text:
            raise HTTPException(status_code=400, detail="Mission cannot be empty.")
        await orchestrator.set_mission(text)
        return {
            "ok": True,
            "message": f"The Renaissance begins anew. The new system prompt is:\n\n**{text}**",
        }

    @app.post("/reset")
    async def reset() -> Dict[str, Any]:
        await orchestrator.reset()
        return {"ok": True, "message": "Chat history has been reset."}

    return app
