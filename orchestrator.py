import asyncio
import itertools
from typing import Dict, Optional

from pydantic import BaseModel

from config import BLANK_PANEL_SIZE, FALLBACK_MIME, GENERATION_TIMEOUT
from errors import BatchInProgressError, GenerationError, TransportError
from generators import GenerationRequest, ImageGenerator
from imaging import ImageBuffer, blank
from preview import WebtoonPreview
from storyboard import GenerationConfig, Panel, Session


class PanelOutcome(BaseModel):
    image: Optional[ImageBuffer] = None
    failure: Optional[str] = None


def build_request(panel: Panel, config: GenerationConfig) -> GenerationRequest:
    return GenerationRequest(
        scene_text=panel.prompt,
        style_text=config.style_description,
        panel_index=panel.index - 1,
        reference_images=[ref.raw_base64() for ref in config.reference_images],
    )


class Orchestrator:
    """
    Runs panel generation for a session.

    When two attempts for the same panel overlap (a retry issued while a
    batch attempt is still in flight), the attempt started last wins and
    the other one's result is dropped when it settles.
    """

    def __init__(self, session: Session, generator: ImageGenerator,
                 preview: Optional[WebtoonPreview] = None,
                 timeout: Optional[float] = GENERATION_TIMEOUT,
                 blank_size: int = BLANK_PANEL_SIZE):
        self.session = session
        self.generator = generator
        self.preview = preview
        self.timeout = timeout
        self.blank_size = blank_size
        self._tokens = itertools.count(1)
        self._latest: Dict[int, int] = {}

    async def generate_panel(self, panel: Panel, config: GenerationConfig) -> PanelOutcome:
        if not panel.prompt.strip():
            # Empty prompts become white panels; never sent to the provider
            try:
                return PanelOutcome(image=blank(self.blank_size, self.blank_size))
            except (OSError, ValueError) as e:
                print(f"[ERROR] Blank panel {panel.index} failed: {e}")
                return PanelOutcome(failure="blank image creation failed")

        request = build_request(panel, config)
        try:
            call = self.generator.generate(request)
            if self.timeout:
                try:
                    image = await asyncio.wait_for(call, self.timeout)
                except asyncio.TimeoutError as e:
                    raise TransportError(
                        f"Generation timed out after {self.timeout:g}s") from e
            else:
                image = await call
            if not isinstance(image, ImageBuffer):
                raise GenerationError("Generator returned no image")
            if not image.mime_type:
                image = image.model_copy(update={"mime_type": FALLBACK_MIME})
        except (GenerationError, TransportError) as e:
            return PanelOutcome(failure=str(e) or "Failed")
        except Exception as e:
            print(f"[ERROR] Panel {panel.index} generation failed: {e}")
            return PanelOutcome(failure=str(e) or "Failed")

        return PanelOutcome(image=image)

    async def _attempt(self, panel_id: int, config: GenerationConfig) -> None:
        store = self.session.store
        token = next(self._tokens)
        self._latest[panel_id] = token
        panel = store.update(panel_id, pending=True, failure=None, image=None)

        outcome = await self.generate_panel(panel, config)

        if self._latest.get(panel_id) != token:
            print(f"[DEBUG] Dropping superseded result for panel {panel_id}")
            return
        del self._latest[panel_id]
        store.update(panel_id, pending=False,
                     image=outcome.image, failure=outcome.failure)

    def begin_batch(self) -> GenerationConfig:
        """
        Claim the session for a batch and return the config it will use.

        Synchronous so a caller on the loop can check and set `generating`
        in one step before handing `run_batch` to the loop.
        """
        if self.session.generating:
            raise BatchInProgressError("Generation already in progress")
        self.session.generating = True
        return self.session.snapshot_config()

    async def run_batch(self, config: GenerationConfig) -> None:
        """Generate every panel. Expects `begin_batch` to have been called."""
        panels = self.session.panels
        print(f">> Generating {len(panels)} panels...")
        try:
            await asyncio.gather(*(self._attempt(p.index, config) for p in panels))
        finally:
            self.session.generating = False

        failed = [p.index for p in self.session.panels if p.failure is not None]
        print(f">> Done. {len(panels) - len(failed)} ready, {len(failed)} failed"
              + (f": {failed}" if failed else ""))
        await self._refresh_preview()

    async def generate_all(self) -> None:
        await self.run_batch(self.begin_batch())

    async def retry(self, panel_id: int) -> None:
        # Raises NotFoundError for an unknown panel before anything changes
        self.session.store.get(panel_id)
        print(f">> Retrying panel {panel_id}...")
        await self._attempt(panel_id, self.session.snapshot_config())
        await self._refresh_preview()

    def reset(self) -> None:
        """Start over with empty panels. Callers must confirm first."""
        if self.session.generating:
            raise BatchInProgressError("Cannot reset while generating")
        self._latest.clear()
        self.session.clear()
        if self.preview is not None:
            self.preview.clear()
        print(">> Session reset")

    async def _refresh_preview(self) -> None:
        if self.preview is not None and not self.session.generating:
            await self.preview.refresh()
