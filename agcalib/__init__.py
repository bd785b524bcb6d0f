"""Stereo calibration archives: binary formats, packing, multi-slot containers and loading."""

__version__ = "0.1.0"
__all__ = ["archive", "calib_load", "cli", "formats", "multislot"]