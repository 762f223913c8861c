"""HTTP clients for the image and text generation backends.

Each client owns one ``httpx.AsyncClient`` and performs single, bounded,
retry-free round trips.  Nothing here knows about history, guards, or
sweeps; that is the orchestrator's job.

Clients
-------
:class:`ImageBackendClient`
    AUTOMATIC1111-compatible ``sdapi/v1`` endpoints: txt2img/img2img,
    progress, options, model/LoRA/sampler listings and interrogate.
:class:`TextBackendClient`
    Ollama-compatible endpoints: streaming ``/api/generate`` plus model
    listing and details.

Error Contract
--------------
- A base URL that does not parse to an absolute http(s) URL raises
  :class:`~promptloom.core.errors.BadURLError` at construction.
- Any non-200 response raises :class:`~promptloom.core.errors.RequestError`
  carrying the status code and a body snippet.
- An image response without an ``images`` key raises
  :class:`~promptloom.core.errors.NoImagesError`.
- Transport failures surface as ``httpx.HTTPError`` subclasses.

Testing
-------
Both clients accept an ``httpx`` transport, so tests can pass an
``httpx.MockTransport`` and never touch the network.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
from PIL import Image
from pydantic import TypeAdapter, ValidationError

from promptloom.core.config import PromptLoomConfig
from promptloom.core.errors import (
    BadURLError,
    NoImagesError,
    RequestError,
    StreamDecodeError,
)
from promptloom.core.models import (
    GenerationOptions,
    Progress,
    SDLora,
    SDModel,
    SDOptions,
    SDSampler,
    TextFragment,
    TextModel,
    TextModelInfo,
)
from promptloom.core.options_builder import decode_image

logger = logging.getLogger(__name__)

_SD_MODELS = TypeAdapter(list[SDModel])
_SD_LORAS = TypeAdapter(list[SDLora])
_SD_SAMPLERS = TypeAdapter(list[SDSampler])


def validate_base_url(url: str) -> httpx.URL:
    """Parse a backend base URL.

    Raises:
        BadURLError: If *url* is not an absolute http(s) URL with a host.
    """
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise BadURLError(str(url)) from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise BadURLError(str(url))
    return parsed


class BackendClient:
    """Shared plumbing: base URL, auth header, timeouts, status checking.

    Attributes:
        base_url: The validated backend base URL.
    """

    service: str = "backend"

    def __init__(
        self,
        base_url: str,
        *,
        authorization: str = "",
        timeout: float = 120.0,
        status_timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = validate_base_url(base_url)
        self._timeout = timeout
        self._status_timeout = status_timeout

        headers = {"Content-Type": "application/json"}
        if authorization:
            headers["Authorization"] = authorization

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Perform one round trip and enforce a 200 status."""
        response = await self._client.request(
            method,
            path,
            json=json,
            timeout=timeout if timeout is not None else self._timeout,
        )
        if response.status_code != 200:
            raise RequestError(response.status_code, response.text)
        return response

    async def _test_path(self, path: str) -> bool:
        await self._request("GET", path, timeout=self._status_timeout)
        return True


class ImageBackendClient(BackendClient):
    """Client for an AUTOMATIC1111-compatible image generation backend."""

    service = "image"

    def __init__(
        self,
        base_url: str,
        *,
        api_prefix: str = "/sdapi/v1",
        image_timeout: float = 600.0,
        interrogate_timeout: float = 300.0,
        **kwargs,
    ) -> None:
        super().__init__(base_url, **kwargs)
        self._prefix = "/" + api_prefix.strip("/")
        self._image_timeout = image_timeout
        self._interrogate_timeout = interrogate_timeout

    @classmethod
    def from_config(
        cls, config: PromptLoomConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> ImageBackendClient:
        return cls(
            config.sd_base_url,
            api_prefix=config.sd_api_prefix,
            authorization=config.authorization,
            timeout=config.request_timeout,
            status_timeout=config.status_timeout,
            image_timeout=config.image_timeout,
            interrogate_timeout=config.interrogate_timeout,
            transport=transport,
        )

    def _path(self, endpoint: str) -> str:
        return f"{self._prefix}/{endpoint}"

    async def test_connection(self) -> bool:
        return await self._test_path(self._path("memory"))

    async def submit_image(self, options: GenerationOptions) -> list[str]:
        """Run one generation job and return the base64 images.

        Uses img2img when ``options.init_images`` is set, txt2img otherwise.

        Raises:
            RequestError: Non-200 response.
            NoImagesError: The response has no ``images`` array.
        """
        logger.info(f"Submitting {options.endpoint} job: {options.prompt}")
        response = await self._request(
            "POST",
            self._path(options.endpoint),
            json=options.to_payload(),
            timeout=self._image_timeout,
        )

        try:
            data = response.json()
        except ValueError as e:
            raise NoImagesError() from e

        images = data.get("images") if isinstance(data, dict) else None
        if not isinstance(images, list):
            raise NoImagesError()
        return images

    async def submit_image_decoded(self, options: GenerationOptions) -> list[Image.Image]:
        """Like :meth:`submit_image` but decodes each payload into a PIL image."""
        return [decode_image(b64) for b64 in await self.submit_image(options)]

    async def query_progress(self) -> Progress:
        response = await self._request("GET", self._path("progress"))
        return Progress.model_validate(response.json())

    async def get_options(self) -> SDOptions:
        response = await self._request("GET", self._path("options"))
        return SDOptions.model_validate(response.json())

    async def set_model(self, model: SDModel) -> None:
        await self._request(
            "POST",
            self._path("options"),
            json={"sd_model_checkpoint": model.title},
        )

    async def list_models(self) -> list[SDModel]:
        response = await self._request("GET", self._path("sd-models"))
        return _SD_MODELS.validate_python(response.json())

    async def list_loras(self) -> list[SDLora]:
        response = await self._request("GET", self._path("loras"))
        return _SD_LORAS.validate_python(response.json())

    async def list_samplers(self) -> list[SDSampler]:
        response = await self._request("GET", self._path("samplers"))
        return _SD_SAMPLERS.validate_python(response.json())

    async def interrogate(self, image_b64: str, model: str = "clip") -> str:
        """Caption an image.  Returns ``"n/a"`` when the backend gives no caption."""
        response = await self._request(
            "POST",
            self._path("interrogate"),
            json={"image": image_b64, "model": model},
            timeout=self._interrogate_timeout,
        )
        data = response.json()
        caption = data.get("caption") if isinstance(data, dict) else None
        return caption or "n/a"


class TextBackendClient(BackendClient):
    """Client for an Ollama-compatible text generation backend."""

    service = "text"

    @classmethod
    def from_config(
        cls, config: PromptLoomConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> TextBackendClient:
        return cls(
            config.llm_base_url,
            authorization=config.authorization,
            timeout=config.request_timeout,
            status_timeout=config.status_timeout,
            transport=transport,
        )

    async def test_connection(self) -> bool:
        return await self._test_path("/")

    async def list_models(self) -> list[TextModel]:
        response = await self._request("GET", "/api/tags")
        return [TextModel.model_validate(m) for m in response.json().get("models", [])]

    async def model_detail(self, name: str) -> TextModelInfo:
        response = await self._request("POST", "/api/show", json={"name": name})
        return TextModelInfo.model_validate(response.json())

    async def submit_text_stream(
        self,
        prompt: str,
        model: str,
        images: Sequence[str] | None = None,
    ) -> AsyncIterator[TextFragment]:
        """Stream a text generation, one decoded fragment per line.

        Each call opens a fresh stream; a stream cannot be resumed.  Lines
        that fail to decode are logged and skipped.  The stream ends on the
        fragment with ``done=True`` or when the connection closes.  Closing
        the generator early closes the underlying response.

        Args:
            prompt: Prompt text.
            model: Text model name.
            images: Optional base64 images for multimodal models.

        Raises:
            RequestError: Non-200 status, raised before any fragment.
        """
        payload: dict[str, Any] = {"model": model, "prompt": prompt, "stream": True}
        if images:
            payload["images"] = list(images)

        async with self._client.stream("POST", "/api/generate", json=payload) as response:
            if response.status_code != 200:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise RequestError(response.status_code, body)

            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    fragment = TextFragment.model_validate_json(line)
                except ValidationError as e:
                    logger.warning(f"{StreamDecodeError(line, type(e).__name__)}")
                    continue

                yield fragment
                if fragment.done:
                    return
