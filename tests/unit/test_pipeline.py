"""
Unit tests for stream resolution, frame grabbing and the imaging pipeline
"""

import pytest
import os
import subprocess
import sys
from unittest.mock import MagicMock, Mock, patch

import cv2
import numpy as np

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from capture.pipeline import ImagingPipeline, PipelineResult, save_images
from capture.stream import StreamFrameSource, resolve_stream_url
from common.config import Region, SourceConfig
from common.errors import PipelineError
from common.types import ImageFrame


def _image(h=400, w=800, bgr=(10, 20, 30)):
    return np.full((h, w, 3), bgr, dtype=np.uint8)


class TestResolveStreamUrl:
    """yt-dlp -g wrapper"""

    @patch("capture.stream.subprocess.run")
    def test_first_line_wins(self, mock_run):
        """Test first non-empty yt-dlp line is used"""
        mock_run.return_value = Mock(returncode=0, stdout="\nhttps://cdn/video.m3u8\nhttps://cdn/audio.m3u8\n", stderr="")
        assert resolve_stream_url("https://example.com/live") == "https://cdn/video.m3u8"
        args = mock_run.call_args[0][0]
        assert args == ["yt-dlp", "-g", "https://example.com/live"]

    @patch("capture.stream.subprocess.run")
    def test_nonzero_exit(self, mock_run):
        """Test yt-dlp failure exit code"""
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="ERROR: This live event has ended.")
        with pytest.raises(PipelineError, match="ended"):
            resolve_stream_url("https://example.com/live")

    @patch("capture.stream.subprocess.run")
    def test_empty_output(self, mock_run):
        """Test yt-dlp success with no URL"""
        mock_run.return_value = Mock(returncode=0, stdout="  \n", stderr="")
        with pytest.raises(PipelineError):
            resolve_stream_url("https://example.com/live")

    @patch("capture.stream.subprocess.run", side_effect=FileNotFoundError("yt-dlp"))
    def test_not_installed(self, mock_run):
        """Test missing yt-dlp binary"""
        with pytest.raises(PipelineError, match="not installed"):
            resolve_stream_url("https://example.com/live")

    @patch("capture.stream.subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="yt-dlp", timeout=5))
    def test_timeout(self, mock_run):
        """Test yt-dlp timeout"""
        with pytest.raises(PipelineError, match="timed out"):
            resolve_stream_url("https://example.com/live", timeout_s=5)

    @patch("capture.stream.subprocess.run", side_effect=PermissionError("denied"))
    def test_cannot_start(self, mock_run):
        """Test yt-dlp that cannot be executed"""
        with pytest.raises(PipelineError, match="could not be started"):
            resolve_stream_url("https://example.com/live")


class TestStreamFrameSource:
    """Single-frame grabs through cv2.VideoCapture"""

    @patch("capture.stream.cv2.VideoCapture")
    def test_grab_direct_url(self, mock_cap_cls):
        """Test grabbing from a direct media URL"""
        cap = MagicMock()
        cap.isOpened.return_value = True
        cap.read.side_effect = [(False, None), (True, _image())]
        mock_cap_cls.return_value = cap

        src = StreamFrameSource("rtsp://camera/stream", resolve_with_ytdlp=False, timeout_s=5)
        frame = src.grab()

        mock_cap_cls.assert_called_once_with("rtsp://camera/stream")
        assert (frame.width, frame.height) == (800, 400)
        assert frame.camera_id == "feed0"
        cap.release.assert_called_once()

    @patch("capture.stream.cv2.VideoCapture")
    def test_grab_not_opened(self, mock_cap_cls):
        """Test unopenable stream"""
        cap = MagicMock()
        cap.isOpened.return_value = False
        mock_cap_cls.return_value = cap

        src = StreamFrameSource("rtsp://camera/stream", resolve_with_ytdlp=False)
        with pytest.raises(PipelineError, match="Cannot open"):
            src.grab()
        cap.release.assert_called_once()

    @patch("capture.stream.cv2.VideoCapture")
    def test_grab_times_out(self, mock_cap_cls):
        """Test no decoded frame before the deadline"""
        cap = MagicMock()
        cap.isOpened.return_value = True
        cap.read.return_value = (False, None)
        mock_cap_cls.return_value = cap

        src = StreamFrameSource("rtsp://camera/stream", resolve_with_ytdlp=False, timeout_s=0)
        with pytest.raises(PipelineError, match="No frame"):
            src.grab()

    @patch("capture.stream.resolve_stream_url", return_value="https://cdn/video.m3u8")
    @patch("capture.stream.cv2.VideoCapture")
    def test_grab_resolves_page_url(self, mock_cap_cls, mock_resolve):
        """Test page URL is resolved before capture"""
        cap = MagicMock()
        cap.isOpened.return_value = True
        cap.read.return_value = (True, _image())
        mock_cap_cls.return_value = cap

        StreamFrameSource("https://example.com/live", timeout_s=7).grab()

        mock_resolve.assert_called_once_with("https://example.com/live", timeout_s=7)
        mock_cap_cls.assert_called_once_with("https://cdn/video.m3u8")

    @patch("capture.stream.cv2.VideoCapture")
    def test_grab_opencv_error(self, mock_cap_cls):
        """Test OpenCV errors during capture surface as PipelineError"""
        cap = MagicMock()
        cap.isOpened.return_value = True
        cap.read.side_effect = cv2.error("decoder crashed")
        mock_cap_cls.return_value = cap

        src = StreamFrameSource("rtsp://camera/stream", resolve_with_ytdlp=False)
        with pytest.raises(PipelineError, match="OpenCV"):
            src.grab()
        cap.release.assert_called_once()


class TestImagingPipeline:
    """Frame -> region colors"""

    def _source(self):
        return SourceConfig(
            url="https://example.com/live",
            regions={"left": Region(x=0, y=0, width=100, height=100), "right": Region(x=-100, y=0, width=100, height=100)},
        )

    def test_run(self):
        """Test colors extracted per region"""
        img = _image()
        img[:, 700:] = (0, 0, 255)
        frames = Mock()
        frames.grab.return_value = ImageFrame(ts="2025-09-29T02:45:00.000Z", width=800, height=400, frame=img)

        result = ImagingPipeline(self._source(), frame_source=frames).run()

        assert result.colors == {"left": "#1e140a", "right": "#ff0000"}
        assert set(result.crops) == {"left", "right"}
        assert result.frame is not None

    def test_grab_failure_propagates(self):
        """Test frame source failure propagates"""
        frames = Mock()
        frames.grab.side_effect = PipelineError("stream offline")
        with pytest.raises(PipelineError):
            ImagingPipeline(self._source(), frame_source=frames).run()

    def test_region_outside_frame(self):
        """Test region outside the frame fails the run"""
        frames = Mock()
        frames.grab.return_value = ImageFrame(ts="2025-09-29T02:45:00.000Z", width=50, height=50, frame=_image(50, 50))
        source = SourceConfig(url="x", regions={"far": Region(x=500, y=0)})
        with pytest.raises(PipelineError):
            ImagingPipeline(source, frame_source=frames).run()

    def test_default_frame_source_from_config(self):
        """Test frame source built from source config"""
        source = SourceConfig(url="rtsp://camera", resolve_with_ytdlp=False, timeout_s=12.0, regions={"a": Region(0, 0)})
        pipeline = ImagingPipeline(source)
        assert pipeline.frame_source.url == "rtsp://camera"
        assert pipeline.frame_source.resolve_with_ytdlp is False
        assert pipeline.frame_source.timeout_s == 12.0


class TestSaveImages:
    """PNG export"""

    def test_writes_full_and_crops(self, tmp_path):
        """Test full frame and crops written as PNG"""
        img = _image(40, 60)
        frame = ImageFrame(ts="2025-09-29T02:45:00.000Z", width=60, height=40, frame=img)
        result = PipelineResult(colors={"a": "#1e140a"}, frame=frame, crops={"a": img[:10, :10]})

        written = save_images(result, tmp_path / "images")

        assert written == {"full": "full.png", "a": "a.png"}
        assert sorted(p.name for p in (tmp_path / "images").iterdir()) == ["a.png", "full.png"]

    def test_without_frame(self, tmp_path):
        """Test nothing written without a frame"""
        written = save_images(PipelineResult(colors={}), tmp_path / "images")
        assert written == {}
