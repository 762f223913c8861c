"""GenerationOptions builder: intent in, backend job descriptor out.

Everything in this module is pure.  It turns a
:class:`~promptloom.core.models.GenerationIntent` (what the caller wants)
into a :class:`~promptloom.core.models.GenerationOptions` (exactly what the
image backend receives for one call), and never touches the network or disk.

Prompt Structure
----------------
The resolved prompt is assembled in this order::

    [Base prompt][Addendum] <lora:NAME:WEIGHT> ACTIVATION <lora:NAME:WEIGHT> ...

- The addendum is concatenated directly (it normally starts with ``", "``).
- One directive per *enabled* LoRA (``weight > 0``), in the order the
  LoRAs were enabled, separated by single spaces.
- Weights are always rendered with two decimals: ``0.8`` becomes ``0.80``.
- The activation text follows its directive only when the LoRA has one.

Example::

    >>> resolve_prompt("a cat", None, [LoraInvocation(name="watercolor",
    ...     weight=0.8, activation="watercolor")])
    'a cat <lora:watercolor:0.80> watercolor'

Payload Extras
--------------
- ``reference_image`` switches the job to img2img (``init_images``).
- ``mask`` adds the base64 mask plus the inpainting sub-options.
- ``inpainting.soft_inpainting`` adds a ``"soft inpainting"`` always-on
  script whose keys use the backend's capitalised-first-letter casing.
- ``depth_image`` adds a ControlNet depth unit.
"""

from __future__ import annotations

import base64
import io
from collections.abc import Iterable
from typing import Any

from PIL import Image

from promptloom.core.models import (
    ControlNetUnit,
    GenerationIntent,
    GenerationOptions,
    LoraInvocation,
)

# Script names as registered by the image backend.
SOFT_INPAINTING_SCRIPT = "soft inpainting"
CONTROLNET_SCRIPT = "controlnet"


# ---------------------------------------------------------------------------
# Prompt resolution.
# ---------------------------------------------------------------------------


def lora_directive(lora: LoraInvocation) -> str:
    """Render the prompt directive for a single LoRA.

    Args:
        lora: The LoRA invocation.

    Returns:
        ``<lora:NAME:WEIGHT>`` optionally followed by ``" ACTIVATION"``.
    """
    return lora.directive()


def resolve_prompt(
    prompt: str,
    addendum: str | None,
    loras: Iterable[LoraInvocation],
) -> str:
    """Build the full prompt string sent to the backend.

    Args:
        prompt: Base prompt.
        addendum: Optional style text, concatenated as-is.
        loras: LoRAs in enable order.  Disabled ones are skipped.

    Returns:
        The resolved prompt.
    """
    full_prompt = prompt
    if addendum:
        full_prompt += addendum

    directives = [lora_directive(lora) for lora in loras if lora.enabled]
    if directives:
        full_prompt += " " + " ".join(directives)

    return full_prompt


# ---------------------------------------------------------------------------
# Image encoding.
# ---------------------------------------------------------------------------


def encode_image(image: Image.Image) -> str:
    """Encode a PIL image as a base64 PNG string."""
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def decode_image(data: str) -> Image.Image:
    """Decode a base64 string (optionally a ``data:`` URI) into a PIL image.

    Raises:
        ValueError: If the payload is not valid base64 image data.
    """
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        raw = base64.b64decode(data, validate=True)
        image = Image.open(io.BytesIO(raw))
        image.load()
    except Exception as e:
        raise ValueError(f"invalid base64 image payload: {e}") from e
    return image


# ---------------------------------------------------------------------------
# Options assembly.
# ---------------------------------------------------------------------------


def _always_on_scripts(intent: GenerationIntent) -> dict[str, Any] | None:
    scripts: dict[str, Any] = {}

    if (
        intent.reference_image is not None
        and intent.mask is not None
        and intent.inpainting is not None
        and intent.inpainting.soft_inpainting is not None
    ):
        soft = intent.inpainting.soft_inpainting.model_dump(by_alias=True)
        scripts[SOFT_INPAINTING_SCRIPT] = {"args": [soft]}

    if intent.depth_image is not None:
        unit = ControlNetUnit(
            image=encode_image(intent.depth_image),
            control_mode=intent.control_mode,
        )
        scripts[CONTROLNET_SCRIPT] = {"args": [unit.model_dump()]}

    return scripts or None


def build_options(
    intent: GenerationIntent,
    *,
    sampler: str,
    default_size: int,
    default_steps: int,
    loras: Iterable[LoraInvocation] | None = None,
    steps: int | None = None,
) -> GenerationOptions:
    """Assemble the backend job descriptor for one call.

    Args:
        intent: The caller's intent.
        sampler: Sampler name to use (already resolved against defaults).
        default_size: Size used when the intent leaves it unset.
        default_steps: Step count used when the intent leaves it unset.
        loras: Overrides ``intent.loras`` (sweeps vary LoRA weights per point).
        steps: Overrides the intent's step count (step sweeps).

    Returns:
        A :class:`GenerationOptions` ready for ``submit_image``.
    """
    size = intent.size or default_size
    resolved_loras = intent.loras if loras is None else tuple(loras)

    options = GenerationOptions(
        prompt=resolve_prompt(intent.prompt, intent.prompt_addendum, resolved_loras),
        negative_prompt=intent.negative_prompt,
        width=size,
        height=size,
        steps=steps or intent.steps or default_steps,
        seed=intent.seed,
        sampler_name=sampler,
    )

    if intent.reference_image is not None:
        options.init_images = [encode_image(intent.reference_image)]

        if intent.mask is not None:
            inpainting = intent.inpainting
            options.mask = encode_image(intent.mask)
            if inpainting is not None:
                options.mask_blur = inpainting.mask_blur
                options.inpainting_fill = inpainting.inpainting_fill
                options.inpaint_full_res = inpainting.inpaint_full_res
                options.inpaint_full_res_padding = inpainting.inpaint_full_res_padding
                options.inpainting_mask_invert = inpainting.inpainting_mask_invert
                options.denoising_strength = inpainting.denoising_strength

    options.alwayson_scripts = _always_on_scripts(intent)
    return options
