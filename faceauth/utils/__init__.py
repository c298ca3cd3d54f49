# Utilities module

from .image_utils import (
    ImageProcessingError,
    frame_dimensions,
    make_thumbnail,
    to_rgb,
    validate_frame,
)

__all__ = [
    "ImageProcessingError",
    "frame_dimensions",
    "make_thumbnail",
    "to_rgb",
    "validate_frame",
]
