"""
Media Pipeline - image and video ingestion for the recipe platform

This service accepts user-submitted media and produces:
- Normalized images with a fixed thumbnail set
- Multi-bitrate video renditions with a poster frame
- Per-asset lifecycle records (active, processing, ready, failed)
"""

__version__ = "1.0.0"
