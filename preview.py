import asyncio
from typing import Optional

from config import STITCH_QUALITY
from errors import DecodeError, EmptyInputError
from imaging import ImageBuffer, stitch_vertically
from storyboard import Session


class WebtoonPreview:
    """
    Keeps the latest stitched strip for a session.

    Only one stitch pass runs at a time. A refresh requested while a pass is
    running is folded into a single follow-up pass.
    """

    def __init__(self, session: Session, quality: float = STITCH_QUALITY):
        self.session = session
        self.quality = quality
        self.composite: Optional[ImageBuffer] = None
        self.stitching = False
        self.passes = 0
        self._rerun = False
        self._epoch = 0

    @property
    def available(self) -> bool:
        return self.composite is not None

    async def refresh(self) -> Optional[ImageBuffer]:
        if self.session.generating:
            return self.composite
        if self.stitching:
            self._rerun = True
            return self.composite

        self.stitching = True
        try:
            while True:
                self._rerun = False
                await self._stitch_once()
                if not self._rerun or self.session.generating:
                    break
        finally:
            self.stitching = False
        return self.composite

    async def _stitch_once(self) -> None:
        images = self.session.images()
        epoch = self._epoch
        self.passes += 1
        try:
            composite = await asyncio.to_thread(
                stitch_vertically, images, self.quality)
        except EmptyInputError:
            composite = None
        except DecodeError as e:
            # Keep showing the previous strip
            print(f"[ERROR] Stitching failed: {e}")
            return
        if epoch != self._epoch:
            # Session was cleared while this pass ran
            return
        self.composite = composite
        if composite is not None:
            print(f">> Stitched {len(images)} panels into the preview strip")

    def clear(self) -> None:
        self._epoch += 1
        self.composite = None
        self._rerun = False
