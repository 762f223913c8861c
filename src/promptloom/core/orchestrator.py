"""Generation orchestration: the single entry point for callers.

:class:`GenerationOrchestrator` ties the pieces together:

- the image and text backend clients (:mod:`promptloom.core.clients`)
- the single-flight guard (:mod:`promptloom.core.single_flight`)
- the progress poller (:mod:`promptloom.core.progress`)
- the sweep scheduler (:mod:`promptloom.core.sweeps`)
- blob and history persistence (:mod:`promptloom.core.blob_store`,
  :mod:`promptloom.core.history_store`)

One-shot Generation
-------------------
::

    orchestrator = GenerationOrchestrator.from_config(config)
    image, entry = await orchestrator.generate(intent)

``generate`` claims the guard (rejecting if busy), resolves the model,
saves input blobs, runs the job with a poller beside it, then stamps and
persists exactly one history entry, whether the job succeeded or failed.
A failure is re-raised as :class:`GenerationFailedError` carrying the
persisted entry.

Sweeps
------
``bracket_sweep`` and ``step_sweep`` return a :class:`SweepRun`.  Each point
queues on the guard instead of rejecting.  Sweep points are *not* written to
history; call :meth:`GenerationOrchestrator.promote` to keep one.

Text
----
``text`` streams partial text from the text backend and records a
:class:`TextHistoryEntry` in memory.  When an image is attached the
configured vision model is used.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from datetime import timedelta

import httpx
from PIL import Image

from promptloom.core.blob_store import BlobStore
from promptloom.core.clients import ImageBackendClient, TextBackendClient
from promptloom.core.config import PromptLoomConfig
from promptloom.core.errors import (
    GenerationFailedError,
    NoImagesError,
    PersistenceError,
    PromptLoomError,
)
from promptloom.core.history_store import HistoryStore, filter_entries, last_prompt
from promptloom.core.models import (
    ConnectionStatus,
    GenerationIntent,
    GenerationOptions,
    HistoryEntry,
    LoraInvocation,
    Progress,
    SDLora,
    SDModel,
    SDOptions,
    SDSampler,
    SweepPoint,
    SweepResult,
    TextHistoryEntry,
    TextModel,
    utcnow,
)
from promptloom.core.options_builder import build_options, decode_image, encode_image
from promptloom.core.progress import ProgressCallback, ProgressPoller
from promptloom.core.single_flight import SingleFlightGuard
from promptloom.core.sweeps import (
    SweepAxis,
    SweepRun,
    SweepScheduler,
    bracket_points,
    step_points,
)

logger = logging.getLogger(__name__)

# Errors that end a job and are recorded on its history entry.
_JOB_ERRORS = (PromptLoomError, httpx.HTTPError, ValueError)


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


def select_current_model(models: list[SDModel], options: SDOptions) -> SDModel | None:
    """Pick the model the backend reports as loaded.

    Matches ``sha256`` against ``sd_checkpoint_hash`` first, then falls back
    to comparing titles with ``sd_model_checkpoint``.
    """
    if options.sd_checkpoint_hash:
        for model in models:
            if model.sha256 == options.sd_checkpoint_hash:
                return model
    for model in models:
        if model.title == options.sd_model_checkpoint:
            return model
    return None


class GenerationOrchestrator:
    """Owns clients, guard, live progress, persistence and the model catalogue.

    Attributes:
        progress: Latest progress snapshot of the active image job.
        sd_models: Image checkpoints known to the backend.
        selected_model: Checkpoint the backend currently has loaded.
        loras: LoRAs known to the backend.
        samplers: Samplers known to the backend.
        text_models: Text models known to the text backend.
        selected_text_model: Name of the text model used by :meth:`text`.
        text_history: In-memory log of text generations.
        statuses: Result of the latest backend status check.
        current_sweep: The most recently started sweep, if any.
    """

    def __init__(
        self,
        config: PromptLoomConfig,
        *,
        image_client: ImageBackendClient | None = None,
        text_client: TextBackendClient | None = None,
        history: HistoryStore | None = None,
        blobs: BlobStore | None = None,
        activations: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialise the orchestrator.

        Args:
            config: Application configuration.
            image_client: Pre-built image client (built from config if omitted).
            text_client: Pre-built text client (built from config if omitted).
            history: History store (built from config if omitted).
            blobs: Blob store (built from config if omitted).
            activations: Extra LoRA name to activation text mapping.
            transport: httpx transport for clients built here (tests).

        Raises:
            BadURLError: A configured backend URL does not parse.
        """
        self.config = config

        if image_client is None:
            image_client = ImageBackendClient.from_config(config, transport)
        if text_client is None:
            text_client = TextBackendClient.from_config(config, transport)
        if history is None:
            history = HistoryStore(
                config.history_db,
                legacy_dir=config.legacy_history_dir,
                default_sampler=config.default_sampler,
            )
        if blobs is None:
            blobs = BlobStore(config.blob_dir)

        self.image_client = image_client
        self.text_client = text_client
        self.history_store = history
        self.blobs = blobs
        self.guard = SingleFlightGuard()

        self.progress = Progress.initial()
        self.sd_models: list[SDModel] = []
        self.selected_model: SDModel | None = None
        self.loras: list[SDLora] = []
        self.samplers: list[SDSampler] = []
        self.text_models: list[TextModel] = []
        self.selected_text_model: str | None = None
        self.text_history: list[TextHistoryEntry] = []
        self.statuses: list[ConnectionStatus] = []
        self.current_sweep: SweepRun | None = None

        self._activations = dict(activations or {})
        self._refresh_task: asyncio.Task | None = None

    @classmethod
    def from_config(
        cls,
        config: PromptLoomConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> GenerationOrchestrator:
        return cls(config, transport=transport)

    async def aclose(self) -> None:
        if self.current_sweep is not None:
            self.current_sweep.cancel()
        await self.image_client.aclose()
        await self.text_client.aclose()

    # ------------------------------------------------------------------
    # Model catalogue
    # ------------------------------------------------------------------

    async def refresh_models(self) -> None:
        """Reload checkpoints, samplers, LoRAs and text models.

        Concurrent callers share one in-flight refresh.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_models())
        await asyncio.shield(self._refresh_task)

    async def _refresh_models(self) -> None:
        models, options, samplers, loras = await asyncio.gather(
            self.image_client.list_models(),
            self.image_client.get_options(),
            self.image_client.list_samplers(),
            self.image_client.list_loras(),
        )
        self.sd_models = models
        self.samplers = samplers
        self.loras = loras
        self.selected_model = select_current_model(models, options)
        logger.info(
            f"Loaded {len(models)} models, {len(samplers)} samplers, {len(loras)} loras; "
            f"current model: {self.selected_model.model_name if self.selected_model else 'none'}"
        )

        try:
            self.text_models = await self.text_client.list_models()
        except _JOB_ERRORS as e:
            logger.warning(f"Could not list text models: {_describe(e)}")
            return
        if self.selected_text_model is None and self.text_models:
            self.selected_text_model = self.text_models[0].name

    def find_model(self, key: str) -> SDModel | None:
        """Look up a known checkpoint by title, model name or sha256."""
        for model in self.sd_models:
            if key in (model.title, model.model_name, model.sha256):
                return model
        return None

    async def set_model(self, model: SDModel) -> None:
        """Ask the backend to load *model* and record it as selected.

        Raises:
            GenerationInProgressError: An image job holds the guard.
        """
        async with self.guard.claim(f"set model: {model.title}"):
            logger.info(f"Switching checkpoint to {model.title}")
            await self.image_client.set_model(model)
            self.selected_model = model

    def lora_activations(self) -> dict[str, str]:
        """Activation texts from the backend catalogue, overridden by explicit ones."""
        activations = {lora.name: lora.activation for lora in self.loras if lora.activation}
        activations.update(self._activations)
        return activations

    async def check_status(self) -> list[ConnectionStatus]:
        """Test both backends.  Failures are reported, never raised."""
        statuses = []
        for service, client in (("image", self.image_client), ("text", self.text_client)):
            try:
                await client.test_connection()
                statuses.append(ConnectionStatus(service=service, connected=True))
            except (PromptLoomError, httpx.HTTPError) as e:
                logger.debug(f"{service} backend unreachable: {_describe(e)}")
                statuses.append(
                    ConnectionStatus(service=service, connected=False, error=_describe(e))
                )
        self.statuses = statuses
        return statuses

    async def check_status_if_needed(self, interval: float | None = None) -> list[ConnectionStatus]:
        """Re-check the backends only when every cached status is stale.

        Args:
            interval: Seconds a status stays fresh (``config.status_check_interval``
                when omitted).

        Returns:
            The fresh statuses, or the cached ones if any is younger than
            *interval*.
        """
        if interval is None:
            interval = self.config.status_check_interval
        now = utcnow()
        max_age = timedelta(seconds=interval)
        if self.statuses and any(now - s.last_checked <= max_age for s in self.statuses):
            return self.statuses
        return await self.check_status()

    # ------------------------------------------------------------------
    # Image generation
    # ------------------------------------------------------------------

    def _model_name(self) -> str:
        return self.selected_model.model_name if self.selected_model else "none"

    def _sampler(self, intent: GenerationIntent) -> str:
        return intent.sampler or self.config.default_sampler

    def _publisher(self, on_progress: ProgressCallback | None) -> ProgressCallback:
        def publish(progress: Progress) -> None:
            self.progress = progress
            if on_progress is not None:
                on_progress(progress)

        return publish

    def _new_entry(
        self,
        intent: GenerationIntent,
        *,
        sampler: str,
        steps: int,
        size: int,
        loras,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            prompt=intent.prompt,
            negative_prompt=intent.negative_prompt or None,
            model=self._model_name(),
            sampler=sampler,
            steps=steps,
            size=size,
            seed=intent.seed,
            session=intent.session,
            sequence=intent.sequence,
        )
        entry.add_loras(loras)
        return entry

    def _save_inputs(self, intent: GenerationIntent, entry: HistoryEntry) -> None:
        if intent.reference_image is not None:
            entry.input_file_path = self.blobs.save_image(intent.reference_image, "inputs")
        if intent.drawing is not None:
            entry.drawing_file_path = self.blobs.save_drawing(intent.drawing)
        if intent.depth_image is not None:
            entry.depth_file_path = self.blobs.save_image(intent.depth_image, "depths")

    async def _submit(
        self, options: GenerationOptions, on_progress: ProgressCallback | None
    ) -> Image.Image:
        """Run one backend job with a poller beside it; return the first image."""
        poller = ProgressPoller(
            self.image_client,
            interval=self.config.poll_interval,
            on_progress=self._publisher(on_progress),
        )
        poller.start()
        try:
            images = await self.image_client.submit_image(options)
        finally:
            await poller.stop()

        if not images:
            raise NoImagesError()
        return decode_image(images[0])

    async def generate(
        self,
        intent: GenerationIntent,
        on_progress: ProgressCallback | None = None,
    ) -> tuple[Image.Image, HistoryEntry]:
        """Run one generation and record it in history.

        Args:
            intent: What to generate.
            on_progress: Called with every progress snapshot while the job runs.

        Returns:
            The generated image and its persisted history entry.

        Raises:
            GenerationInProgressError: Another image job holds the guard.
            GenerationFailedError: The backend job failed; the entry (with
                ``error_description`` set) has already been persisted.
            PersistenceError: A blob or history write failed.  A failed output
                write is still recorded on the entry.
            asyncio.CancelledError: The job was cancelled; the entry is
                persisted with ``error_description="cancelled"`` first.
        """
        async with self.guard.claim(f"generate: {intent.prompt[:40]}"):
            if self.selected_model is None:
                try:
                    await self.refresh_models()
                except _JOB_ERRORS as e:
                    logger.warning(f"Could not resolve current model: {_describe(e)}")

            sampler = self._sampler(intent)
            options = build_options(
                intent,
                sampler=sampler,
                default_size=self.config.default_size,
                default_steps=self.config.default_steps,
            )
            entry = self._new_entry(
                intent,
                sampler=sampler,
                steps=options.steps,
                size=options.width,
                loras=[lora for lora in intent.loras if lora.enabled],
            )
            self._save_inputs(intent, entry)

            logger.info(f"Generating ({options.endpoint}, {sampler}, {options.steps} steps)")
            try:
                image = await self._submit(options, on_progress)
            except _JOB_ERRORS as e:
                entry.error_description = _describe(e)
                logger.error(f"Generation failed: {entry.error_description}")
                self.history_store.append(entry)
                raise GenerationFailedError(entry, e) from e
            except asyncio.CancelledError:
                entry.error_description = "cancelled"
                logger.warning("Generation cancelled before the backend answered")
                self.history_store.append(entry)
                raise

            try:
                entry.output_file_path = self.blobs.save_image(image, "outputs")
            except PersistenceError as e:
                entry.error_description = _describe(e)
                logger.error(f"Could not store generated image: {entry.error_description}")
                self.history_store.append(entry)
                raise
            entry.end = utcnow()
            self.history_store.append(entry)
            logger.info(f"Generation finished in {entry.elapsed.total_seconds():.1f}s")
            return image, entry

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def _run_point(
        self, point: SweepPoint, on_progress: ProgressCallback | None
    ) -> Image.Image:
        async with self.guard.claim(f"sweep point {point.index}", wait=True):
            return await self._submit(point.options, on_progress)

    def _start_sweep(
        self,
        points: list[SweepPoint],
        label: str,
        on_progress: ProgressCallback | None,
    ) -> SweepRun:
        scheduler = SweepScheduler(points, label)

        async def submit(point: SweepPoint) -> Image.Image:
            return await self._run_point(point, on_progress)

        run = SweepRun(scheduler, scheduler.run(submit))
        self.current_sweep = run
        return run

    def bracket_sweep(
        self,
        intent: GenerationIntent,
        axis_a: SweepAxis,
        axis_b: SweepAxis,
        axis_c: SweepAxis | None = None,
        activations: Mapping[str, str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SweepRun:
        """Sweep two or three LoRA weights (A outer, C inner)."""
        axes = [axis for axis in (axis_a, axis_b, axis_c) if axis is not None]
        merged = self.lora_activations()
        merged.update(activations or {})
        points = bracket_points(
            intent,
            axes,
            sampler=self._sampler(intent),
            default_size=self.config.default_size,
            default_steps=self.config.default_steps,
            activations=merged,
        )
        return self._start_sweep(points, "bracket sweep", on_progress)

    def step_sweep(
        self,
        intent: GenerationIntent,
        start_step: int,
        end_step: int,
        samplers: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SweepRun:
        """Sweep an inclusive step range, optionally across samplers."""
        points = step_points(
            intent,
            start_step,
            end_step,
            samplers=samplers,
            default_sampler=self.config.default_sampler,
            default_size=self.config.default_size,
            default_steps=self.config.default_steps,
        )
        return self._start_sweep(points, "step sweep", on_progress)

    def promote(self, result: SweepResult, intent: GenerationIntent) -> HistoryEntry:
        """Persist one sweep point's output as a regular history entry."""
        point = result.point
        swept = {lora.name for lora in point.loras}
        loras: list[LoraInvocation] = [
            lora for lora in intent.loras if lora.enabled and lora.name not in swept
        ]
        loras.extend(point.loras)

        entry = self._new_entry(
            intent,
            sampler=point.sampler,
            steps=point.steps,
            size=point.options.width,
            loras=loras,
        )
        entry.start = result.start
        self._save_inputs(intent, entry)
        entry.output_file_path = self.blobs.save_image(result.image, "outputs")
        entry.end = result.end
        self.history_store.append(entry)
        logger.info(f"Promoted sweep point {point.index} to history entry {entry.id}")
        return entry

    # ------------------------------------------------------------------
    # Text and captioning
    # ------------------------------------------------------------------

    async def _text_model(self) -> str:
        if self.selected_text_model is None:
            self.text_models = await self.text_client.list_models()
            if not self.text_models:
                raise PromptLoomError("no text model available")
            self.selected_text_model = self.text_models[0].name
        return self.selected_text_model

    async def text(self, prompt: str, image: Image.Image | None = None) -> AsyncIterator[str]:
        """Stream text for *prompt*, yielding the accumulated text so far.

        Raises:
            RequestError: The text backend refused the request.
        """
        if image is not None:
            model = self.config.vision_model
            images = [encode_image(image)]
        else:
            model = await self._text_model()
            images = None

        entry = TextHistoryEntry(prompt=prompt, model=model)
        parts: list[str] = []
        try:
            async for fragment in self.text_client.submit_text_stream(prompt, model, images):
                if fragment.done:
                    break
                parts.append(fragment.response)
                entry.result = "".join(parts)
                yield entry.result
        except (PromptLoomError, httpx.HTTPError) as e:
            entry.error_description = _describe(e)
            logger.error(f"Text generation failed: {entry.error_description}")
            raise
        finally:
            entry.end = utcnow()
            self.text_history.append(entry)

    async def interrogate(self, image: Image.Image) -> str:
        """Caption *image* with the image backend."""
        return await self.image_client.interrogate(encode_image(image))

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self) -> list[HistoryEntry]:
        return self.history_store.load_all()

    def filter_history(self, model: str | None = None, lora: str | None = None) -> list[HistoryEntry]:
        return filter_entries(self.history(), model=model, lora=lora)

    def last_prompt(self) -> str:
        """Prompt of the most recent attempt, or the configured default."""
        return last_prompt(self.history(), default=self.config.default_prompt)

    def prompt_addenda(self) -> dict[str, str]:
        """Named addendum presets for :attr:`GenerationIntent.prompt_addendum`."""
        return dict(self.config.prompt_addenda)
