"""Pydantic request models for the promptloom REST API.

Images travel as base64 PNG strings (optionally as ``data:`` URIs) and are
decoded into PIL images when the request is turned into a
:class:`~promptloom.core.models.GenerationIntent`.

Models
------
GenerateRequest
    Payload for ``POST /api/generate``.
BracketSweepRequest
    Payload for ``POST /api/sweeps/bracket``: a generate payload plus two
    or three LoRA-weight axes.
StepSweepRequest
    Payload for ``POST /api/sweeps/step``: a generate payload plus an
    inclusive step range and optional sampler list.
SelectModelRequest
    Payload for ``POST /api/models/select``.
TextRequest, InterrogateRequest
    Payloads for ``POST /api/text`` and ``POST /api/interrogate``.
"""

from __future__ import annotations

import base64
import binascii

from pydantic import BaseModel, Field

from promptloom.core.models import (
    ControlMode,
    GenerationIntent,
    InpaintingOptions,
    LoraInvocation,
    new_id,
)
from promptloom.core.options_builder import decode_image
from promptloom.core.sweeps import SweepAxis


def _decode_optional(data: str | None):
    return decode_image(data) if data else None


class GenerateRequest(BaseModel):
    """Request body for ``POST /api/generate``.

    Attributes:
        prompt: Base prompt.
        prompt_addendum: Style text appended directly to the prompt.
        negative_prompt: Negative prompt.
        loras: LoRAs in enable order.
        seed: Backend seed, ``-1`` for random.
        size: Square output size, defaults to the configured size.
        steps: Sampling steps, defaults to the configured count.
        sampler: Sampler name, defaults to the configured sampler.
        reference_image: Base64 PNG for img2img.
        mask: Base64 PNG inpainting mask (requires ``reference_image``).
        drawing: Base64 drawing stroke data kept for provenance.
        depth_image: Base64 PNG depth map for depth-guided generation.
        inpainting: Inpainting sub-options.
        control_mode: ControlNet balance for ``depth_image``.
        session: Editing session id; a new one is created when omitted.
        sequence: Position within the session.
    """

    prompt: str = Field(..., min_length=1)
    prompt_addendum: str | None = None
    negative_prompt: str = ""
    loras: list[LoraInvocation] = Field(default_factory=list)
    seed: int = -1
    size: int | None = Field(default=None, ge=64, le=2048)
    steps: int | None = Field(default=None, ge=1, le=150)
    sampler: str | None = None
    reference_image: str | None = None
    mask: str | None = None
    drawing: str | None = None
    depth_image: str | None = None
    inpainting: InpaintingOptions | None = None
    control_mode: ControlMode = "Balanced"
    session: str | None = None
    sequence: int = Field(default=0, ge=0)

    def to_intent(self) -> GenerationIntent:
        """Decode embedded images and build a frozen intent.

        Raises:
            ValueError: An embedded image or the drawing is not valid base64.
        """
        drawing = None
        if self.drawing:
            try:
                drawing = base64.b64decode(self.drawing, validate=True)
            except binascii.Error as e:
                raise ValueError(f"invalid base64 drawing payload: {e}") from e

        return GenerationIntent(
            prompt=self.prompt,
            prompt_addendum=self.prompt_addendum,
            negative_prompt=self.negative_prompt,
            loras=tuple(self.loras),
            seed=self.seed,
            size=self.size,
            steps=self.steps,
            sampler=self.sampler,
            reference_image=_decode_optional(self.reference_image),
            mask=_decode_optional(self.mask),
            drawing=drawing,
            depth_image=_decode_optional(self.depth_image),
            inpainting=self.inpainting,
            control_mode=self.control_mode,
            session=self.session or new_id(),
            sequence=self.sequence,
        )


class BracketSweepRequest(GenerateRequest):
    """Request body for ``POST /api/sweeps/bracket``.

    Attributes:
        axes: Two or three LoRA-weight axes, outermost first.
        activations: Extra LoRA name to activation text mapping.
        promote: Persist every point to history as it arrives.
    """

    axes: list[SweepAxis] = Field(..., min_length=2, max_length=3)
    activations: dict[str, str] = Field(default_factory=dict)
    promote: bool = False


class StepSweepRequest(GenerateRequest):
    """Request body for ``POST /api/sweeps/step``."""

    start_step: int = Field(..., ge=1, le=150)
    end_step: int = Field(..., ge=1, le=150)
    samplers: list[str] | None = None
    promote: bool = False


class SelectModelRequest(BaseModel):
    """Checkpoint to load, by title, model name or sha256."""

    model: str = Field(..., min_length=1)


class TextRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    image: str | None = None


class InterrogateRequest(BaseModel):
    image: str = Field(..., min_length=1)
