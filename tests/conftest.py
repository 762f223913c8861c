"""Shared pytest fixtures for promptloom tests.

The image and text backends are faked with :class:`FakeBackend`, an
``httpx.MockTransport`` handler that answers the AUTOMATIC1111-style and
Ollama-style endpoints from canned data.  Nothing touches the network.
"""

from __future__ import annotations

import asyncio
import base64
import io
import json
import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import httpx
import pytest
from PIL import Image

from promptloom.core.config import PromptLoomConfig
from promptloom.core.orchestrator import GenerationOrchestrator


def make_png_b64(color: str = "red", size: int = 8) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (size, size), color=color).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


SD_MODELS = [
    {
        "title": "v1-5-pruned.safetensors [6ce0161689]",
        "model_name": "v1-5-pruned",
        "hash": "6ce0161689",
        "sha256": "6ce0161689b3853acaa03779ec93eafe75a02f4ced659bee03f50797806fa2fa",
        "filename": "/models/v1-5-pruned.safetensors",
    },
    {
        "title": "dreamshaper_8.safetensors [879db523c3]",
        "model_name": "dreamshaper_8",
        "hash": "879db523c3",
        "sha256": "879db523c30d3b9017143d56705015e15a2cb5628762c11d086fed9538abd7fd",
        "filename": "/models/dreamshaper_8.safetensors",
    },
]

SD_OPTIONS = {
    "sd_model_checkpoint": SD_MODELS[1]["title"],
    "sd_checkpoint_hash": SD_MODELS[1]["sha256"],
}


class FakeBackend:
    """Scriptable stand-in for both backends.

    Attributes:
        requests: Every request seen, in order.
        image_status: Status code returned by txt2img/img2img.
        image_body: JSON body returned by txt2img/img2img.
        image_delay: Seconds txt2img/img2img sleeps before answering.
        image_up: Whether the image backend answers at all.
        progress_status: Status code returned by the progress endpoint.
        text_lines: Lines returned by the streaming text endpoint.
        text_status: Status code of the streaming text endpoint.
        text_up: Whether the text backend answers at all.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.image_b64 = make_png_b64()
        self.image_status = 200
        self.image_body: dict | None = None
        self.image_delay = 0.0
        self.image_up = True
        self.progress_status = 200
        self.text_status = 200
        self.text_up = True
        self.text_lines = [
            json.dumps({"model": "llama3", "response": "Once", "done": False}),
            json.dumps({"model": "llama3", "response": " upon", "done": False}),
            json.dumps({"model": "llama3", "response": "", "done": True}),
        ]

    # -- inspection helpers ----------------------------------------------

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def json_bodies(self, path: str) -> list[dict]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.url.path == path and request.content
        ]

    def count(self, path: str) -> int:
        return self.paths().count(path)

    # -- transport ---------------------------------------------------------

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method

        if path.startswith("/sdapi/v1/"):
            return await self._image(method, path[len("/sdapi/v1/") :])
        return self._text(method, path)

    async def _image(self, method: str, endpoint: str) -> httpx.Response:
        if not self.image_up:
            return httpx.Response(503, text="image backend down")
        if endpoint in ("txt2img", "img2img"):
            if self.image_delay:
                await asyncio.sleep(self.image_delay)
            body = self.image_body if self.image_body is not None else {
                "images": [self.image_b64],
                "parameters": {},
                "info": "",
            }
            return httpx.Response(self.image_status, json=body)
        if endpoint == "progress":
            return httpx.Response(
                self.progress_status,
                json={
                    "progress": 0.5,
                    "eta_relative": 2.0,
                    "state": {"sampling_step": 10, "sampling_steps": 20, "job_count": 1},
                    "current_image": None,
                },
            )
        if endpoint == "memory":
            return httpx.Response(200, json={"ram": {}, "cuda": {}})
        if endpoint == "options":
            if method == "POST":
                return httpx.Response(200, json=None)
            return httpx.Response(200, json=SD_OPTIONS)
        if endpoint == "sd-models":
            return httpx.Response(200, json=SD_MODELS)
        if endpoint == "samplers":
            return httpx.Response(
                200,
                json=[
                    {"name": "DPM++ 2M", "aliases": ["k_dpmpp_2m"], "options": {}},
                    {"name": "Euler a", "aliases": ["k_euler_a"], "options": {}},
                ],
            )
        if endpoint == "loras":
            return httpx.Response(
                200,
                json=[
                    {
                        "name": "watercolor",
                        "alias": "watercolor",
                        "path": "/loras/watercolor.safetensors",
                        "metadata": {"activation text": "watercolor style"},
                    },
                    {"name": "ink", "alias": "ink", "path": "/loras/ink.safetensors"},
                ],
            )
        if endpoint == "interrogate":
            return httpx.Response(200, json={"caption": "a red square"})
        return httpx.Response(404, text=f"unknown endpoint {endpoint}")

    def _text(self, method: str, path: str) -> httpx.Response:
        if not self.text_up:
            return httpx.Response(503, text="text backend down")
        if path == "/":
            return httpx.Response(200, text="Ollama is running")
        if path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "llama3"}, {"name": "llava"}]})
        if path == "/api/show":
            return httpx.Response(200, json={"template": "{{ .Prompt }}", "parameters": ""})
        if path == "/api/generate":
            if self.text_status != 200:
                return httpx.Response(self.text_status, text="model not found")
            return httpx.Response(200, content="\n".join(self.text_lines).encode())
        return httpx.Response(404, text="not found")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> PromptLoomConfig:
    """Configuration pointing at fake hosts and a temporary data directory."""
    return PromptLoomConfig(
        sd_base_url="http://sd.test:7860",
        llm_base_url="http://llm.test:11434",
        data_dir=temp_dir / "data",
        poll_interval=0.01,
        _env_file=None,
    )


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def orchestrator(test_config: PromptLoomConfig, fake_backend: FakeBackend) -> GenerationOrchestrator:
    """Orchestrator wired to the fake backends and temporary storage."""
    return GenerationOrchestrator(test_config, transport=fake_backend.transport)


@pytest.fixture
def red_image() -> Image.Image:
    return Image.new("RGB", (8, 8), color="red")
