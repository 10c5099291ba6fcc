import pytest

from checkmate.schemas.analysis import BoundingBox
from checkmate.utils.bounding_box import PixelRect, describe_location, to_pixel_rect


@pytest.mark.parametrize(
    "box, expected",
    [
        ((0.4, 0.4, 0.6, 0.6), "center of the image"),
        ((0.0, 0.0, 0.2, 0.2), "top-left corner of the image"),
        ((0.8, 0.8, 1.0, 1.0), "bottom-right corner of the image"),
        ((0.4, 0.0, 0.6, 0.1), "top of the image"),
        ((0.0, 0.4, 0.1, 0.6), "left side of the image"),
        ((0.9, 0.4, 1.0, 0.6), "right side of the image"),
        ((0.4, 0.9, 0.6, 1.0), "bottom of the image"),
    ],
)
def test_describe_location(box, expected):
    x_min, y_min, x_max, y_max = box
    assert (
        describe_location(BoundingBox(x_min=x_min, y_min=y_min, x_max=x_max, y_max=y_max))
        == expected
    )


def test_to_pixel_rect():
    box = BoundingBox(x_min=0.1, y_min=0.25, x_max=0.5, y_max=0.75)
    assert to_pixel_rect(box, 1000, 800) == PixelRect(left=100, top=200, width=400, height=400)


def test_to_pixel_rect_never_empty():
    box = BoundingBox(x_min=0.5, y_min=0.5, x_max=0.5001, y_max=0.5001)
    rect = to_pixel_rect(box, 10, 10)
    assert rect.width >= 1
    assert rect.height >= 1


def test_to_pixel_rect_full_image():
    box = BoundingBox(x_min=0.0, y_min=0.0, x_max=1.0, y_max=1.0)
    assert to_pixel_rect(box, 640, 480) == PixelRect(0, 0, 640, 480)


def test_to_pixel_rect_rejects_empty_image():
    box = BoundingBox(x_min=0.0, y_min=0.0, x_max=1.0, y_max=1.0)
    with pytest.raises(ValueError):
        to_pixel_rect(box, 0, 480)
