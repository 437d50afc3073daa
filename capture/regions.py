"""
Region cropping and representative-color extraction.

The representative color of a crop is its mean pixel, the same value a
1x1 downscale produces. Frames are BGR (OpenCV order); output is "#rrggbb".
"""

from typing import Dict, Tuple

import cv2
import numpy as np

from common.config import Region
from common.errors import PipelineError


def region_bounds(region: Region, width: int, height: int) -> Tuple[int, int, int, int]:
    """
    Resolve a region to (x0, y0, x1, y1) inside a WxH frame.
    Negative x/y count from the right/bottom edge; the box is clipped to the frame.
    """
    x0 = region.x if region.x >= 0 else width + region.x
    y0 = region.y if region.y >= 0 else height + region.y
    x1 = min(width, x0 + region.width)
    y1 = min(height, y0 + region.height)
    x0 = max(0, x0)
    y0 = max(0, y0)
    return x0, y0, x1, y1


def crop_region(img: np.ndarray, region: Region, label: str = "") -> np.ndarray:
    H, W = img.shape[:2]
    x0, y0, x1, y1 = region_bounds(region, W, H)
    if x1 <= x0 or y1 <= y0:
        raise PipelineError(f"Region '{label}' {region} lies outside the {W}x{H} frame")
    return img[y0:y1, x0:x1].copy()


def bgr_to_hex(bgr: Tuple[float, float, float]) -> str:
    b, g, r = (int(round(float(c))) for c in bgr[:3])
    b, g, r = (max(0, min(255, c)) for c in (b, g, r))
    return f"#{r:02x}{g:02x}{b:02x}"


def dominant_color(crop: np.ndarray) -> str:
    """Mean color of a BGR (or gray) crop as '#rrggbb'."""
    if crop.size == 0:
        raise PipelineError("Cannot take the color of an empty crop")
    if crop.ndim == 2:
        crop = cv2.cvtColor(crop, cv2.COLOR_GRAY2BGR)
    mean = crop.reshape(-1, crop.shape[2]).astype(np.float64).mean(axis=0)
    return bgr_to_hex(tuple(mean))


def extract_colors(img: np.ndarray, regions: Dict[str, Region]) -> Tuple[Dict[str, str], Dict[str, np.ndarray]]:
    """Crop every configured region and reduce it to one color."""
    colors: Dict[str, str] = {}
    crops: Dict[str, np.ndarray] = {}
    for label, region in regions.items():
        crop = crop_region(img, region, label)
        crops[label] = crop
        colors[label] = dominant_color(crop)
    return colors, crops
