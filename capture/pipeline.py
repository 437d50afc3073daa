from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import cv2
import numpy as np

from common.config import SourceConfig
from common.errors import PipelineError
from common.logging_setup import get_logger
from common.types import ImageFrame
from capture.regions import extract_colors
from capture.stream import StreamFrameSource

log = get_logger("capture.pipeline")


@dataclass
class PipelineResult:
    colors: Dict[str, str]
    frame: Optional[ImageFrame] = None
    crops: Dict[str, np.ndarray] = field(default_factory=dict, repr=False)


class ImagingPipeline:
    """
    One call: grab a frame from the configured feed, crop every region,
    and reduce each crop to a hex color.
    """

    def __init__(self, source: SourceConfig, frame_source: Optional[StreamFrameSource] = None):
        self.source = source
        self.frame_source = frame_source or StreamFrameSource(
            url=source.url,
            resolve_with_ytdlp=source.resolve_with_ytdlp,
            timeout_s=source.timeout_s,
        )

    def run(self) -> PipelineResult:
        frame = self.frame_source.grab()
        try:
            colors, crops = extract_colors(frame.frame, self.source.regions)
        except cv2.error as e:
            raise PipelineError(f"Color extraction failed: {e}") from e
        log.info("Colors extracted", extra={"extra": colors})
        return PipelineResult(colors=colors, frame=frame, crops=crops)


def _imwrite_atomic(path: Path, img: np.ndarray) -> None:
    fd, tmp = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".png", dir=path.parent)
    os.close(fd)
    try:
        if not cv2.imwrite(tmp, img):
            raise OSError(f"cv2.imwrite refused {path.name}")
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def save_images(result: PipelineResult, out_dir: Path) -> Dict[str, str]:
    """
    Write full.png and one <label>.png per crop, replacing the previous set.
    Returns label -> file name (relative to out_dir).
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    written: Dict[str, str] = {}
    if result.frame is not None:
        _imwrite_atomic(out_dir / "full.png", result.frame.frame)
        written["full"] = "full.png"
    for label, crop in result.crops.items():
        _imwrite_atomic(out_dir / f"{label}.png", crop)
        written[label] = f"{label}.png"
    return written
