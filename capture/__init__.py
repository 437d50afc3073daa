"""
Imaging pipeline

- stream.py: resolve a live page with yt-dlp and grab one frame with OpenCV
- regions.py: crop configured regions and reduce each to a hex color
- pipeline.py: one call returning region -> "#rrggbb" (+ optional PNG export)
"""
