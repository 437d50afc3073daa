from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from typing import Optional

import cv2

from common.errors import PipelineError
from common.logging_setup import get_logger
from common.types import ImageFrame, now_iso

log = get_logger("capture.stream")


def resolve_stream_url(page_url: str, timeout_s: float = 60.0, ytdlp: str = "yt-dlp") -> str:
    """
    Ask yt-dlp for the direct media URL of a live page (first line of `yt-dlp -g`).
    """
    try:
        proc = subprocess.run(
            [ytdlp, "-g", page_url],
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except FileNotFoundError as e:
        raise PipelineError(f"{ytdlp} is not installed") from e
    except OSError as e:
        raise PipelineError(f"{ytdlp} could not be started: {e}") from e
    except subprocess.TimeoutExpired as e:
        raise PipelineError(f"{ytdlp} timed out after {timeout_s:.0f}s") from e
    if proc.returncode != 0:
        raise PipelineError(f"{ytdlp} exited with {proc.returncode}: {proc.stderr.strip()[-300:]}")
    lines = [ln.strip() for ln in proc.stdout.splitlines() if ln.strip()]
    if not lines:
        raise PipelineError(f"{ytdlp} returned no stream URL for {page_url}")
    return lines[0]


@dataclass
class StreamFrameSource:
    """
    Grab single frames from a (possibly live) video URL.

    Args:
        url: page URL (resolved through yt-dlp) or a direct media URL / file path
        resolve_with_ytdlp: run yt-dlp first to obtain the media URL
        timeout_s: budget for URL resolution and for the first decoded frame
        camera_id: logical id stamped on emitted frames
    """
    url: str
    resolve_with_ytdlp: bool = True
    timeout_s: float = 60.0
    camera_id: str = "feed0"

    def media_url(self) -> str:
        if not self.resolve_with_ytdlp:
            return self.url
        media = resolve_stream_url(self.url, timeout_s=self.timeout_s)
        log.debug("Resolved stream URL", extra={"extra": {"page": self.url}})
        return media

    def grab(self, media_url: Optional[str] = None) -> ImageFrame:
        media_url = media_url or self.media_url()
        try:
            img = self._read_first(media_url)
        except cv2.error as e:
            raise PipelineError(f"OpenCV failed reading {self.url}: {e}") from e

        H, W = img.shape[:2]
        frame = ImageFrame(ts=now_iso(), width=W, height=H, frame=img, camera_id=self.camera_id)
        log.info("Frame captured", extra={"extra": frame.to_meta()})
        return frame

    def _read_first(self, media_url: str):
        cap = cv2.VideoCapture(media_url)
        try:
            if not cap.isOpened():
                raise PipelineError(f"Cannot open video stream: {self.url}")
            deadline = time.monotonic() + self.timeout_s
            while True:
                ok, img = cap.read()
                if ok and img is not None:
                    return img
                if time.monotonic() >= deadline:
                    raise PipelineError(f"No frame decoded from {self.url} within {self.timeout_s:.0f}s")
                time.sleep(0.1)
        finally:
            cap.release()
