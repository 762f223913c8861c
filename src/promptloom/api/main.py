"""promptloom REST API.

A thin FastAPI adapter over
:class:`~promptloom.core.orchestrator.GenerationOrchestrator`.  All state
(clients, guard, progress, catalogue) lives in the orchestrator stored on
``app.state``; routes only translate between JSON and orchestrator calls.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/api/status``               Backend connection status
GET       ``/api/models``               Refresh + list models, samplers, LoRAs
POST      ``/api/models/select``        Load a checkpoint
POST      ``/api/generate``             One generation (409 busy, 502 failed)
GET       ``/api/progress``             Live progress snapshot
POST      ``/api/sweeps/bracket``       LoRA-weight sweep, streamed as NDJSON
POST      ``/api/sweeps/step``          Step/sampler sweep, streamed as NDJSON
POST      ``/api/sweeps/cancel``        Cancel the active sweep
POST      ``/api/text``                 Streamed text generation (NDJSON)
POST      ``/api/interrogate``          Caption an image
GET       ``/api/history``              History, ``model``/``lora`` filters
GET       ``/api/prompts``              Last prompt, past prompts, addenda
GET       ``/api/blobs/{kind}/{name}``  Stored image or drawing file
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    promptloom

Direct invocation::

    python -m promptloom.api.main
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, StreamingResponse
from PIL import Image
from starlette.background import BackgroundTask

from promptloom import __version__
from promptloom.api.models import (
    BracketSweepRequest,
    GenerateRequest,
    InterrogateRequest,
    SelectModelRequest,
    StepSweepRequest,
    TextRequest,
)
from promptloom.core.blob_store import BLOB_KINDS
from promptloom.core.config import config
from promptloom.core.errors import (
    GenerationFailedError,
    GenerationInProgressError,
    PersistenceError,
    PromptLoomError,
)
from promptloom.core.history_store import last_prompt, prompts_from_history
from promptloom.core.models import GenerationIntent
from promptloom.core.options_builder import decode_image, encode_image
from promptloom.core.orchestrator import GenerationOrchestrator
from promptloom.core.sweeps import SweepRun

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"

# ---------------------------------------------------------------------------
# Application lifecycle.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the orchestrator on startup and close its clients on shutdown.

    An orchestrator already placed on ``app.state`` (e.g. by tests) is used
    as-is and left open.
    """
    owned = getattr(app.state, "orchestrator", None) is None
    if owned:
        app.state.orchestrator = GenerationOrchestrator.from_config(config)
        logger.info(
            f"Orchestrator ready (image: {config.sd_base_url}, text: {config.llm_base_url})"
        )

    yield

    if owned:
        await app.state.orchestrator.aclose()
        app.state.orchestrator = None
        logger.info("Orchestrator closed on shutdown.")


app = FastAPI(
    title="promptloom",
    description="Orchestration API for self-hosted image and text generation backends.",
    version=__version__,
    lifespan=lifespan,
)


def _orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def _intent(req: GenerateRequest) -> GenerationIntent:
    try:
        return req.to_intent()
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


def _backend_error(e: Exception) -> HTTPException:
    logger.warning(f"Backend call failed: {e}")
    return HTTPException(status_code=502, detail=str(e) or type(e).__name__)


# ---------------------------------------------------------------------------
# Status and model catalogue.
# ---------------------------------------------------------------------------


@app.get("/api/status")
async def status(request: Request, cached: bool = False) -> dict:
    """Backend connection status; ``cached=true`` reuses a recent check."""
    orchestrator = _orchestrator(request)
    if cached:
        statuses = await orchestrator.check_status_if_needed()
    else:
        statuses = await orchestrator.check_status()
    return {"services": [s.model_dump(mode="json") for s in statuses]}


@app.get("/api/models")
async def list_models(request: Request) -> dict:
    """Refresh and return the model catalogue of both backends.

    Raises:
        HTTPException: 502 if the image backend cannot be reached.
    """
    orchestrator = _orchestrator(request)
    try:
        await orchestrator.refresh_models()
    except (PromptLoomError, httpx.HTTPError, ValueError) as e:
        raise _backend_error(e) from e

    selected = orchestrator.selected_model
    return {
        "models": [m.model_dump() for m in orchestrator.sd_models],
        "selected": selected.model_dump() if selected else None,
        "samplers": [s.name for s in orchestrator.samplers],
        "loras": [
            {"name": lora.name, "alias": lora.alias, "activation": lora.activation}
            for lora in orchestrator.loras
        ],
        "text_models": [m.name for m in orchestrator.text_models],
        "selected_text_model": orchestrator.selected_text_model,
    }


@app.post("/api/models/select")
async def select_model(req: SelectModelRequest, request: Request) -> dict:
    orchestrator = _orchestrator(request)
    model = orchestrator.find_model(req.model)
    if model is None:
        raise HTTPException(status_code=404, detail=f"Unknown model: {req.model}")

    try:
        await orchestrator.set_model(model)
    except GenerationInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except (PromptLoomError, httpx.HTTPError) as e:
        raise _backend_error(e) from e
    return {"selected": model.model_dump()}


# ---------------------------------------------------------------------------
# Generation.
# ---------------------------------------------------------------------------


@app.post("/api/generate")
async def generate(req: GenerateRequest, request: Request) -> dict:
    """Run one generation.

    Returns:
        ``{"image": <base64 PNG>, "entry": <history entry>}``

    Raises:
        HTTPException: 409 while another job runs, 502 if the backend job
            failed (the detail carries the persisted entry), 500 if storage
            fails.
    """
    intent = _intent(req)
    try:
        image, entry = await _orchestrator(request).generate(intent)
    except GenerationInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except GenerationFailedError as e:
        raise HTTPException(
            status_code=502,
            detail={"error": str(e), "entry": e.entry.model_dump(mode="json")},
        ) from e
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e

    return {"image": encode_image(image), "entry": entry.model_dump(mode="json")}


@app.get("/api/progress")
async def progress(request: Request) -> dict:
    orchestrator = _orchestrator(request)
    return {
        "busy": orchestrator.guard.busy,
        "current": orchestrator.guard.current,
        "progress": orchestrator.progress.model_dump(),
    }


# ---------------------------------------------------------------------------
# Sweeps (NDJSON: one line per point, then a summary line).
# ---------------------------------------------------------------------------


def _stream_sweep(
    orchestrator: GenerationOrchestrator,
    run: SweepRun,
    intent: GenerationIntent,
    promote: bool,
) -> StreamingResponse:
    async def lines() -> AsyncIterator[str]:
        error = None
        async with run:
            try:
                async for result in run:
                    line = {
                        "index": result.point.index,
                        "completed": result.completed,
                        "total": result.total,
                        "steps": result.point.steps,
                        "sampler": result.point.sampler,
                        "loras": [lora.model_dump() for lora in result.point.loras],
                        "image": encode_image(result.image),
                    }
                    if promote:
                        line["entry_id"] = orchestrator.promote(result, intent).id
                    yield json.dumps(line) + "\n"
            except (PromptLoomError, httpx.HTTPError, ValueError) as e:
                error = str(e) or type(e).__name__
                logger.error(f"Sweep aborted: {error}")

        summary = {
            "done": True,
            "completed": run.completed,
            "total": run.total,
            "cancelled": run.cancelled,
            "error": error,
        }
        yield json.dumps(summary) + "\n"

    return StreamingResponse(lines(), media_type=NDJSON)


@app.post("/api/sweeps/bracket")
async def bracket_sweep(req: BracketSweepRequest, request: Request) -> StreamingResponse:
    orchestrator = _orchestrator(request)
    intent = _intent(req)
    try:
        run = orchestrator.bracket_sweep(intent, *req.axes, activations=req.activations)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return _stream_sweep(orchestrator, run, intent, req.promote)


@app.post("/api/sweeps/step")
async def step_sweep(req: StepSweepRequest, request: Request) -> StreamingResponse:
    orchestrator = _orchestrator(request)
    intent = _intent(req)
    try:
        run = orchestrator.step_sweep(
            intent, req.start_step, req.end_step, samplers=req.samplers
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return _stream_sweep(orchestrator, run, intent, req.promote)


@app.post("/api/sweeps/cancel")
async def cancel_sweep(request: Request) -> dict:
    run = _orchestrator(request).current_sweep
    if run is None:
        return {"cancelled": False}
    run.cancel()
    return {"cancelled": True, "completed": run.completed, "total": run.total}


# ---------------------------------------------------------------------------
# Text and captioning.
# ---------------------------------------------------------------------------


def _decode(data: str | None) -> Image.Image | None:
    if not data:
        return None
    try:
        return decode_image(data)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@app.post("/api/text")
async def text(req: TextRequest, request: Request) -> StreamingResponse:
    """Stream text as NDJSON lines of ``{"text": <accumulated text>}``.

    The first fragment is awaited before the response starts so that a
    refused request still maps to a 502 status.  The stream is closed by a
    background task as well, so its text history entry is recorded even
    when the client goes away before the body is read.
    """
    stream = _orchestrator(request).text(req.prompt, image=_decode(req.image))
    try:
        first = await anext(stream)
    except StopAsyncIteration:
        first = None
    except (PromptLoomError, httpx.HTTPError) as e:
        raise _backend_error(e) from e

    async def lines() -> AsyncIterator[str]:
        if first is None:
            return
        yield json.dumps({"text": first}) + "\n"
        try:
            async for partial in stream:
                yield json.dumps({"text": partial}) + "\n"
        except (PromptLoomError, httpx.HTTPError) as e:
            yield json.dumps({"error": str(e) or type(e).__name__}) + "\n"
        finally:
            await stream.aclose()

    return StreamingResponse(lines(), media_type=NDJSON, background=BackgroundTask(stream.aclose))


@app.post("/api/interrogate")
async def interrogate(req: InterrogateRequest, request: Request) -> dict:
    image = _decode(req.image)
    try:
        caption = await _orchestrator(request).interrogate(image)
    except (PromptLoomError, httpx.HTTPError) as e:
        raise _backend_error(e) from e
    return {"caption": caption}


# ---------------------------------------------------------------------------
# History and blobs.
# ---------------------------------------------------------------------------


@app.get("/api/history")
async def history(request: Request, model: str | None = None, lora: str | None = None) -> dict:
    try:
        entries = _orchestrator(request).filter_history(model=model, lora=lora)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return {
        "entries": [entry.model_dump(mode="json") for entry in entries],
        "total": len(entries),
    }


@app.get("/api/prompts")
async def prompts(request: Request) -> dict:
    """Last prompt, distinct past prompts and the named addendum presets."""
    orchestrator = _orchestrator(request)
    try:
        entries = orchestrator.history()
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return {
        "last": last_prompt(entries, default=orchestrator.config.default_prompt),
        "prompts": prompts_from_history(entries),
        "addenda": orchestrator.prompt_addenda(),
    }


@app.get("/api/blobs/{kind}/{name}")
async def blob(kind: str, name: str, request: Request) -> FileResponse:
    """Serve a stored blob.

    Raises:
        HTTPException: 404 for an unknown kind or a missing file.
    """
    blobs = _orchestrator(request).blobs
    relative = f"{kind}/{name}"
    if kind not in BLOB_KINDS or not blobs.exists(relative):
        raise HTTPException(status_code=404, detail="Blob not found")
    return FileResponse(blobs.resolve(relative))


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~promptloom.core.config.config`
    (``PROMPTLOOM_SERVER_HOST`` / ``PROMPTLOOM_SERVER_PORT``).  Registered as
    the ``promptloom`` console script.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "promptloom.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
