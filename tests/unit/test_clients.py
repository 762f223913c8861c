"""Tests for promptloom.core.clients — backend HTTP clients.

Tests cover:
- Base URL validation at construction.
- Status-code enforcement and body snippets in RequestError.
- txt2img/img2img routing and the NoImagesError contract.
- Catalogue listings, options and interrogate.
- Streaming text: fragment order, skipped bad lines, early errors.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from promptloom.core.clients import (
    ImageBackendClient,
    TextBackendClient,
    validate_base_url,
)
from promptloom.core.errors import BadURLError, NoImagesError, RequestError
from promptloom.core.models import GenerationOptions, SDModel


def _image_client(test_config, fake_backend) -> ImageBackendClient:
    return ImageBackendClient.from_config(test_config, transport=fake_backend.transport)


def _text_client(test_config, fake_backend) -> TextBackendClient:
    return TextBackendClient.from_config(test_config, transport=fake_backend.transport)


async def _collect(stream) -> list:
    return [item async for item in stream]


class TestBaseURL:
    @pytest.mark.parametrize("url", ["", "not a url", "ftp://host/", "/relative/path"])
    def test_bad_urls_raise(self, url):
        with pytest.raises(BadURLError):
            validate_base_url(url)

    def test_good_url_parses(self):
        assert validate_base_url("http://127.0.0.1:7860").port == 7860

    def test_client_construction_validates(self):
        with pytest.raises(BadURLError):
            ImageBackendClient("nonsense")

    def test_authorization_header_sent(self, fake_backend):
        async def scenario():
            async with ImageBackendClient(
                "http://sd.test", authorization="Bearer abc", transport=fake_backend.transport
            ) as client:
                await client.test_connection()

        asyncio.run(scenario())
        assert fake_backend.requests[0].headers["Authorization"] == "Bearer abc"


class TestImageBackendClient:
    def test_txt2img_returns_images(self, test_config, fake_backend):
        client = _image_client(test_config, fake_backend)
        images = asyncio.run(client.submit_image(GenerationOptions(prompt="a cat")))

        assert images == [fake_backend.image_b64]
        assert fake_backend.paths() == ["/sdapi/v1/txt2img"]
        body = fake_backend.json_bodies("/sdapi/v1/txt2img")[0]
        assert body["prompt"] == "a cat"
        assert "init_images" not in body

    def test_init_images_route_to_img2img(self, test_config, fake_backend):
        client = _image_client(test_config, fake_backend)
        options = GenerationOptions(prompt="a cat", init_images=[fake_backend.image_b64])
        asyncio.run(client.submit_image(options))

        assert fake_backend.paths() == ["/sdapi/v1/img2img"]

    def test_non_200_raises_request_error(self, test_config, fake_backend):
        fake_backend.image_status = 500
        fake_backend.image_body = {"error": "x" * 2000}
        client = _image_client(test_config, fake_backend)

        with pytest.raises(RequestError) as exc_info:
            asyncio.run(client.submit_image(GenerationOptions(prompt="a cat")))

        assert exc_info.value.status_code == 500
        assert len(exc_info.value.body) == 500
        assert str(exc_info.value).startswith("status code: 500\n")

    def test_missing_images_raises(self, test_config, fake_backend):
        fake_backend.image_body = {"parameters": {}}
        client = _image_client(test_config, fake_backend)

        with pytest.raises(NoImagesError):
            asyncio.run(client.submit_image(GenerationOptions(prompt="a cat")))

    def test_submit_image_decoded(self, test_config, fake_backend):
        client = _image_client(test_config, fake_backend)
        images = asyncio.run(client.submit_image_decoded(GenerationOptions(prompt="a cat")))
        assert images[0].size == (8, 8)

    def test_query_progress(self, test_config, fake_backend):
        progress = asyncio.run(_image_client(test_config, fake_backend).query_progress())

        assert progress.progress == 0.5
        assert progress.state.sampling_steps == 20

    def test_catalogue_listings(self, test_config, fake_backend):
        client = _image_client(test_config, fake_backend)

        async def scenario():
            return (
                await client.list_models(),
                await client.list_loras(),
                await client.list_samplers(),
                await client.get_options(),
            )

        models, loras, samplers, options = asyncio.run(scenario())

        assert [m.model_name for m in models] == ["v1-5-pruned", "dreamshaper_8"]
        assert loras[0].activation == "watercolor style"
        assert loras[1].activation is None
        assert [s.name for s in samplers] == ["DPM++ 2M", "Euler a"]
        assert options.sd_checkpoint_hash == models[1].sha256

    def test_set_model_posts_title(self, test_config, fake_backend):
        model = SDModel(title="v1-5 [abc]", model_name="v1-5")
        asyncio.run(_image_client(test_config, fake_backend).set_model(model))

        assert fake_backend.json_bodies("/sdapi/v1/options") == [
            {"sd_model_checkpoint": "v1-5 [abc]"}
        ]

    def test_interrogate(self, test_config, fake_backend):
        caption = asyncio.run(_image_client(test_config, fake_backend).interrogate("abc"))

        assert caption == "a red square"
        assert fake_backend.json_bodies("/sdapi/v1/interrogate") == [
            {"image": "abc", "model": "clip"}
        ]

    def test_connection_test_uses_memory(self, test_config, fake_backend):
        assert asyncio.run(_image_client(test_config, fake_backend).test_connection())
        assert fake_backend.paths() == ["/sdapi/v1/memory"]

    def test_transport_errors_propagate(self, test_config):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ImageBackendClient.from_config(test_config, transport=httpx.MockTransport(refuse))
        with pytest.raises(httpx.ConnectError):
            asyncio.run(client.test_connection())


class TestTextBackendClient:
    def test_stream_yields_fragments_in_order(self, test_config, fake_backend):
        client = _text_client(test_config, fake_backend)
        fragments = asyncio.run(_collect(client.submit_text_stream("tell a story", "llama3")))

        assert [f.response for f in fragments] == ["Once", " upon", ""]
        assert fragments[-1].done
        body = fake_backend.json_bodies("/api/generate")[0]
        assert body == {"model": "llama3", "prompt": "tell a story", "stream": True}

    def test_stream_skips_undecodable_lines(self, test_config, fake_backend):
        fake_backend.text_lines = [
            json.dumps({"model": "llama3", "response": "A", "done": False}),
            "{broken json",
            "",
            json.dumps({"model": "llama3", "response": "B", "done": False}),
            json.dumps({"model": "llama3", "done": True}),
        ]
        client = _text_client(test_config, fake_backend)
        fragments = asyncio.run(_collect(client.submit_text_stream("x", "llama3")))

        assert [f.response for f in fragments] == ["A", "B", ""]

    def test_stream_stops_after_done(self, test_config, fake_backend):
        fake_backend.text_lines.append(
            json.dumps({"model": "llama3", "response": "ignored", "done": False})
        )
        client = _text_client(test_config, fake_backend)
        fragments = asyncio.run(_collect(client.submit_text_stream("x", "llama3")))

        assert "ignored" not in [f.response for f in fragments]

    def test_stream_error_before_any_fragment(self, test_config, fake_backend):
        fake_backend.text_status = 404
        client = _text_client(test_config, fake_backend)
        received = []

        async def scenario():
            async for fragment in client.submit_text_stream("x", "missing"):
                received.append(fragment)

        with pytest.raises(RequestError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.status_code == 404
        assert "model not found" in exc_info.value.body
        assert received == []

    def test_stream_sends_images(self, test_config, fake_backend):
        client = _text_client(test_config, fake_backend)
        asyncio.run(_collect(client.submit_text_stream("describe", "llava", images=["abc"])))

        assert fake_backend.json_bodies("/api/generate")[0]["images"] == ["abc"]

    def test_list_models_and_detail(self, test_config, fake_backend):
        client = _text_client(test_config, fake_backend)

        async def scenario():
            return await client.list_models(), await client.model_detail("llama3")

        models, detail = asyncio.run(scenario())

        assert [m.name for m in models] == ["llama3", "llava"]
        assert detail.template == "{{ .Prompt }}"

    def test_connection_test_uses_root(self, test_config, fake_backend):
        assert asyncio.run(_text_client(test_config, fake_backend).test_connection())
        assert fake_backend.paths() == ["/"]
