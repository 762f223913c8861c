"""Pydantic data model for the generation engine.

The models fall into four groups:

Intent side
    :class:`LoraInvocation`, :class:`InpaintingOptions`,
    :class:`SoftInpaintingOptions`, :class:`GenerationIntent` describe what a
    caller wants.  An intent is frozen once built.

Wire side
    :class:`GenerationOptions` is the exact JSON body of one image job.  The
    remaining ``SD*`` and ``Text*`` models mirror backend responses.  Field
    names are snake_case on the wire and in Python, so no key translation is
    needed except for the soft-inpainting tunables (see
    :class:`SoftInpaintingOptions`).

Telemetry
    :class:`Progress` is a transient polled snapshot, overwritten every poll.

History
    :class:`HistoryEntry` and :class:`HistoryLora` are the durable record of
    one attempt.  Entries are append-only: built in memory at submission,
    stamped once when the job ends, then persisted.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from PIL import Image
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a fresh random identifier."""
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Intent side.
# ---------------------------------------------------------------------------


class LoraInvocation(BaseModel):
    """A named, weighted LoRA adapter applied through a prompt directive.

    Attributes:
        name: LoRA name as known to the image backend.
        weight: Strength; ``0`` disables the LoRA.
        activation: Trigger text appended after the directive, if the LoRA
            has one.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    weight: float = 0.0
    activation: str | None = None

    @property
    def enabled(self) -> bool:
        return self.weight > 0

    @property
    def description(self) -> str:
        return f"{self.name} {self.weight:.2f}"

    def directive(self) -> str:
        """``<lora:NAME:WEIGHT>`` plus the activation text, if any."""
        directive = f"<lora:{self.name}:{self.weight:.2f}>"
        if self.activation:
            directive = f"{directive} {self.activation}"
        return directive


def _capitalize_first(name: str) -> str:
    # schedule_bias -> Schedule_bias
    return name[:1].upper() + name[1:]


class SoftInpaintingOptions(BaseModel):
    """Soft inpainting tunables.

    The backend reads these keys with the first letter capitalised and the
    rest left in snake_case (``Schedule_bias``, ``Mask_influence``), unlike
    every other payload.  Always dump with ``by_alias=True``.
    """

    model_config = ConfigDict(alias_generator=_capitalize_first, populate_by_name=True)

    soft_inpainting: bool = True
    schedule_bias: float = 1.0
    preservation_strength: float = 0.5
    transition_contrast_boost: float = 4.0
    mask_influence: float = 0.0
    difference_threshold: float = 0.5
    difference_contrast: float = 2.0


class InpaintingOptions(BaseModel):
    """img2img inpainting sub-options, sent alongside a mask."""

    mask_blur: int = 4
    inpainting_fill: int = Field(default=1, ge=0, le=3)
    inpaint_full_res: bool = False
    inpaint_full_res_padding: int = 32
    inpainting_mask_invert: int = Field(default=0, ge=0, le=1)
    denoising_strength: float = Field(default=0.75, ge=0.0, le=1.0)
    soft_inpainting: SoftInpaintingOptions | None = None


ControlMode = Literal["Balanced", "My prompt is more important", "ControlNet is more important"]


class ControlNetUnit(BaseModel):
    """One ControlNet unit; used for depth-guided generation."""

    image: str
    module: str = "none"
    model: str = "control_v11f1p_sd15_depth"
    weight: float = 1.0
    control_mode: ControlMode = "Balanced"


class GenerationIntent(BaseModel):
    """A caller's declarative request for one generation.

    Frozen: once submitted an intent never changes.  Sweeps derive their
    per-point options from the intent instead of mutating it.

    Attributes:
        prompt: Base prompt.
        prompt_addendum: Style text concatenated directly after ``prompt``
            (usually begins with ``", "``).
        negative_prompt: Negative prompt.
        loras: LoRAs in the order they were enabled.
        seed: Backend seed (``-1`` lets the backend pick).
        size: Square output size in pixels; ``None`` uses the configured default.
        steps: Sampling steps; ``None`` uses the configured default.
        sampler: Sampler name; ``None`` uses the configured default.
        reference_image: Optional img2img source.
        mask: Optional inpainting mask (requires ``reference_image``).
        drawing: Opaque drawing stroke data saved for provenance.
        depth_image: Optional depth map for depth-guided generation.
        inpainting: Inpainting sub-options used with ``mask``.
        control_mode: ControlNet balance used with ``depth_image``.
        session: Groups one editing session's iterations.
        sequence: Monotonic position within ``session``.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    prompt: str
    prompt_addendum: str | None = None
    negative_prompt: str = ""
    loras: tuple[LoraInvocation, ...] = ()
    seed: int = -1
    size: int | None = Field(default=None, ge=64, le=2048)
    steps: int | None = Field(default=None, ge=1, le=150)
    sampler: str | None = None
    reference_image: Image.Image | None = None
    mask: Image.Image | None = None
    drawing: bytes | None = None
    depth_image: Image.Image | None = None
    inpainting: InpaintingOptions | None = None
    control_mode: ControlMode = "Balanced"
    session: str = Field(default_factory=new_id)
    sequence: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Wire side.
# ---------------------------------------------------------------------------


class GenerationOptions(BaseModel):
    """JSON body of exactly one txt2img/img2img call."""

    prompt: str
    negative_prompt: str = ""
    width: int = 512
    height: int = 512
    steps: int = 20
    batch_size: int = 1
    seed: int | None = None
    sampler_name: str = "DPM++ 2M"
    init_images: list[str] | None = None
    mask: str | None = None
    mask_blur: int | None = None
    inpainting_fill: int | None = None
    inpaint_full_res: bool | None = None
    inpaint_full_res_padding: int | None = None
    inpainting_mask_invert: int | None = None
    denoising_strength: float | None = None
    alwayson_scripts: dict[str, Any] | None = None

    @property
    def endpoint(self) -> str:
        """Backend endpoint name: img2img when a source image is present."""
        return "img2img" if self.init_images is not None else "txt2img"

    def to_payload(self) -> dict[str, Any]:
        """Serialise for the wire, omitting unset optional fields."""
        return self.model_dump(exclude_none=True)


class ProgressState(BaseModel):
    interrupted: bool = False
    job: str = ""
    job_count: int = 0
    job_no: int = 0
    job_timestamp: str = ""
    sampling_step: int = 0
    sampling_steps: int = 0
    skipped: bool = False
    stopping_generation: bool = False


class Progress(BaseModel):
    """Polled snapshot of the image backend's current job."""

    progress: float = 0.0
    eta_relative: float = 0.0
    state: ProgressState = Field(default_factory=ProgressState)
    current_image: str | None = None

    @classmethod
    def initial(cls) -> Progress:
        return cls()


class SDModel(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    title: str
    model_name: str
    hash: str | None = None
    sha256: str | None = None
    filename: str = ""

    @property
    def id(self) -> str:
        return self.sha256 or self.model_name


class SDOptions(BaseModel):
    sd_model_checkpoint: str = ""
    sd_checkpoint_hash: str | None = None


class SDLora(BaseModel):
    name: str
    alias: str = ""
    path: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def activation(self) -> str | None:
        """Trigger text from the LoRA's user metadata, if one was recorded."""
        value = self.metadata.get("activation text")
        return value if isinstance(value, str) and value else None


class SDSampler(BaseModel):
    name: str
    aliases: list[str] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)


class TextModelDetails(BaseModel):
    format: str = ""
    family: str = ""
    families: list[str] | None = None
    parameter_size: str = ""
    quantization_level: str = ""


class TextModel(BaseModel):
    name: str
    modified_at: str = ""
    size: int = 0
    digest: str = ""
    details: TextModelDetails = Field(default_factory=TextModelDetails)


class TextModelInfo(BaseModel):
    license: str = ""
    modelfile: str = ""
    parameters: str = ""
    template: str = ""
    details: TextModelDetails = Field(default_factory=TextModelDetails)


class TextFragment(BaseModel):
    """One decoded line of a streamed text generation."""

    model: str
    created_at: str = ""
    response: str = ""
    done: bool = False


class ConnectionStatus(BaseModel):
    service: Literal["image", "text"]
    connected: bool
    last_checked: datetime = Field(default_factory=utcnow)
    error: str | None = None


# ---------------------------------------------------------------------------
# History.
# ---------------------------------------------------------------------------


class HistoryLora(BaseModel):
    """Child row: one LoRA used by a history entry."""

    id: str = Field(default_factory=new_id)
    name: str
    weight: float
    history_id: str


class HistoryEntry(BaseModel):
    """Durable record of one generation attempt.

    ``end`` is ``None`` while the attempt is in flight or when it failed
    before producing output.  When ``error_description`` is set there is no
    guarantee that ``output_file_path`` is populated.
    """

    id: str = Field(default_factory=new_id)
    start: datetime = Field(default_factory=utcnow)
    end: datetime | None = None
    prompt: str
    negative_prompt: str | None = None
    model: str
    sampler: str
    steps: int
    size: int
    seed: int
    input_file_path: str | None = None
    output_file_path: str | None = None
    drawing_file_path: str | None = None
    depth_file_path: str | None = None
    error_description: str | None = None
    session: str = Field(default_factory=new_id)
    sequence: int = 0
    loras: list[HistoryLora] = Field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.end is not None

    @property
    def succeeded(self) -> bool:
        return self.error_description is None and self.output_file_path is not None

    @property
    def elapsed(self) -> timedelta | None:
        if self.end is None:
            return None
        return self.end - self.start

    def add_loras(self, loras) -> None:
        """Attach child rows for every LoRA invocation in *loras*."""
        for lora in loras:
            self.loras.append(HistoryLora(name=lora.name, weight=lora.weight, history_id=self.id))


class TextHistoryEntry(BaseModel):
    """In-memory record of one text generation."""

    start: datetime = Field(default_factory=utcnow)
    end: datetime | None = None
    prompt: str
    result: str = ""
    model: str
    error_description: str | None = None


# ---------------------------------------------------------------------------
# Sweeps.
# ---------------------------------------------------------------------------


class SweepPoint(BaseModel):
    """One fully-resolved grid coordinate of a sweep.

    Never persisted directly; see ``GenerationOrchestrator.promote``.
    """

    model_config = ConfigDict(frozen=True)

    index: int
    options: GenerationOptions
    loras: tuple[LoraInvocation, ...] = ()
    steps: int
    sampler: str


class SweepResult(BaseModel):
    """Output of one sweep point, yielded as soon as it is available."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    point: SweepPoint
    image: Image.Image
    start: datetime
    end: datetime
    completed: int
    total: int
