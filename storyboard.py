from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from config import DEFAULT_STYLE, PANEL_COUNT
from errors import NotFoundError
from imaging import ImageBuffer

# ------------------ DATA MODELS -------------------


class Panel(BaseModel):
    # 1-based, fixed for the panel's lifetime
    index: int
    prompt: str = ""
    image: Optional[ImageBuffer] = None
    pending: bool = False
    failure: Optional[str] = None

    @property
    def status(self) -> str:
        if self.pending:
            return "pending"
        if self.failure is not None:
            return "failed"
        if self.image is not None:
            return "ready"
        return "empty"


class GenerationConfig(BaseModel):
    reference_images: List[ImageBuffer] = Field(default_factory=list)
    style_description: str = DEFAULT_STYLE


def create_initial_panels(count: int = PANEL_COUNT) -> List[Panel]:
    return [Panel(index=i + 1) for i in range(count)]


# ------------------ PANEL STORE -------------------


class PanelStore:
    """
    Ordered panel collection. Panels are replaced, never mutated in place,
    so a snapshot taken from `panels` stays valid after later updates.
    """

    UPDATABLE = frozenset({"prompt", "image", "pending", "failure"})

    def __init__(self, panels: Sequence[Panel]):
        self._panels: List[Panel] = list(panels)

    @property
    def panels(self) -> List[Panel]:
        return list(self._panels)

    def __len__(self) -> int:
        return len(self._panels)

    def _position(self, panel_id: int) -> int:
        for pos, panel in enumerate(self._panels):
            if panel.index == panel_id:
                return pos
        raise NotFoundError(f"Panel {panel_id} not found")

    def get(self, panel_id: int) -> Panel:
        return self._panels[self._position(panel_id)]

    def update(self, panel_id: int, **fields) -> Panel:
        """Apply only the given fields to one panel."""
        unknown = set(fields) - self.UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update panel fields: {sorted(unknown)}")
        pos = self._position(panel_id)
        updated = self._panels[pos].model_copy(update=fields)
        self._panels[pos] = updated
        return updated

    def replace_all(self, panels: Sequence[Panel]) -> None:
        self._panels = list(panels)


# ------------------ SESSION -----------------------


class Session:
    def __init__(self, panel_count: int = PANEL_COUNT,
                 config: Optional[GenerationConfig] = None):
        self.panel_count = panel_count
        self.store = PanelStore(create_initial_panels(panel_count))
        self.config = config or GenerationConfig()
        self.generating = False

    @property
    def panels(self) -> List[Panel]:
        return self.store.panels

    def images(self) -> List[ImageBuffer]:
        """Available panel images, in strip order."""
        return [p.image for p in self.store.panels if p.image is not None]

    def edit_prompt(self, panel_id: int, text: str) -> Panel:
        return self.store.update(panel_id, prompt=text)

    def set_style(self, text: str) -> None:
        self.config = self.config.model_copy(update={"style_description": text})

    def add_reference_images(self, images: Sequence[ImageBuffer]) -> None:
        self.config = self.config.model_copy(
            update={"reference_images": self.config.reference_images + list(images)})

    def remove_reference_image(self, position: int) -> None:
        refs = list(self.config.reference_images)
        if not 0 <= position < len(refs):
            raise NotFoundError(f"Reference image {position} not found")
        del refs[position]
        self.config = self.config.model_copy(update={"reference_images": refs})

    def snapshot_config(self) -> GenerationConfig:
        return self.config.model_copy(deep=True)

    def clear(self) -> None:
        """Fresh empty panels and no reference images; style is kept."""
        self.store.replace_all(create_initial_panels(self.panel_count))
        self.config = self.config.model_copy(update={"reference_images": []})
