"""Tests for promptloom.core.models — intent, wire and history models."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from promptloom.core.models import (
    GenerationIntent,
    GenerationOptions,
    HistoryEntry,
    LoraInvocation,
    Progress,
    SDLora,
    SDModel,
    SoftInpaintingOptions,
    utcnow,
)


class TestLoraInvocation:
    def test_enabled_only_above_zero(self):
        assert LoraInvocation(name="a", weight=0.01).enabled
        assert not LoraInvocation(name="a", weight=0).enabled

    def test_description(self):
        assert LoraInvocation(name="ink", weight=0.5).description == "ink 0.50"

    def test_frozen(self):
        lora = LoraInvocation(name="ink", weight=0.5)
        with pytest.raises(ValidationError):
            lora.weight = 1.0


class TestGenerationIntent:
    def test_frozen(self):
        intent = GenerationIntent(prompt="a cat")
        with pytest.raises(ValidationError):
            intent.prompt = "a dog"

    def test_fresh_session_per_intent(self):
        assert GenerationIntent(prompt="a").session != GenerationIntent(prompt="b").session

    def test_sequence_non_negative(self):
        with pytest.raises(ValidationError):
            GenerationIntent(prompt="a", sequence=-1)


class TestWireModels:
    def test_endpoint_selection(self):
        assert GenerationOptions(prompt="x").endpoint == "txt2img"
        assert GenerationOptions(prompt="x", init_images=["abc"]).endpoint == "img2img"

    def test_soft_inpainting_accepts_both_casings(self):
        by_name = SoftInpaintingOptions(schedule_bias=2.0)
        by_alias = SoftInpaintingOptions.model_validate({"Schedule_bias": 2.0})
        assert by_name == by_alias

    def test_progress_initial_is_zero(self):
        initial = Progress.initial()
        assert initial.progress == 0
        assert initial.state.sampling_step == 0
        assert initial.current_image is None

    def test_sd_model_id_prefers_sha256(self):
        assert SDModel(title="t", model_name="m", sha256="abc").id == "abc"
        assert SDModel(title="t", model_name="m").id == "m"

    def test_sd_lora_activation(self):
        assert SDLora(name="a", metadata={"activation text": "trigger"}).activation == "trigger"
        assert SDLora(name="a", metadata={"activation text": ""}).activation is None
        assert SDLora(name="a").activation is None


class TestHistoryEntry:
    def _entry(self, **kwargs) -> HistoryEntry:
        return HistoryEntry(
            prompt="a cat", model="m", sampler="s", steps=20, size=512, seed=-1, **kwargs
        )

    def test_in_flight_entry(self):
        entry = self._entry()
        assert not entry.finished
        assert not entry.succeeded
        assert entry.elapsed is None

    def test_successful_entry(self):
        start = utcnow()
        entry = self._entry(
            start=start, end=start + timedelta(seconds=3), output_file_path="outputs/x.png"
        )
        assert entry.finished
        assert entry.succeeded
        assert entry.elapsed == timedelta(seconds=3)

    def test_add_loras_links_children(self):
        entry = self._entry()
        entry.add_loras([LoraInvocation(name="ink", weight=0.5)])

        assert entry.loras[0].history_id == entry.id
        assert entry.loras[0].name == "ink"
