import math
from typing import NamedTuple

from checkmate.schemas.analysis import BoundingBox


class PixelRect(NamedTuple):
    left: int
    top: int
    width: int
    height: int


def describe_location(box: BoundingBox) -> str:
    center_x = (box.x_min + box.x_max) / 2
    center_y = (box.y_min + box.y_max) / 2

    if center_y < 0.33:
        vertical = "top"
    elif center_y > 0.67:
        vertical = "bottom"
    else:
        vertical = "center"

    if center_x < 0.33:
        horizontal = "left"
    elif center_x > 0.67:
        horizontal = "right"
    else:
        horizontal = "center"

    if vertical == "center" and horizontal == "center":
        return "center of the image"
    if vertical == "center":
        return f"{horizontal} side of the image"
    if horizontal == "center":
        return f"{vertical} of the image"
    return f"{vertical}-{horizontal} corner of the image"


def to_pixel_rect(box: BoundingBox, width: int, height: int) -> PixelRect:
    """Crop rectangle for a normalised box, clamped to the image and never empty."""
    if width <= 0 or height <= 0:
        raise ValueError("image dimensions must be positive")
    left = min(max(0, math.floor(box.x_min * width)), width - 1)
    top = min(max(0, math.floor(box.y_min * height)), height - 1)
    right = min(width, max(left + 1, math.ceil(box.x_max * width)))
    bottom = min(height, max(top + 1, math.ceil(box.y_max * height)))
    return PixelRect(left=left, top=top, width=right - left, height=bottom - top)
