"""Tests for the Pillow transformers."""

import io

import pytest
from PIL import Image

from conftest import make_image
from filejobs.errors import TransformFailed, UnsupportedOperation
from filejobs.jobs.models import JobType
from filejobs.transformers import (
    DEFAULT_HEIGHT,
    DEFAULT_WIDTH,
    TRANSFORMS,
    add_watermark,
    transform,
)


def decode(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


class TestDispatch:
    def test_every_job_type_has_transform(self):
        assert set(TRANSFORMS) == set(JobType)

    def test_unknown_job_type(self):
        with pytest.raises(UnsupportedOperation):
            transform("Explode", make_image())

    def test_accepts_string_job_type(self):
        output = transform("ConvertToPNG", make_image("JPEG"))

        assert decode(output).format == "PNG"


class TestResize:
    def test_explicit_size(self):
        output = transform(JobType.RESIZE_IMAGE, make_image(), {"Width": 120, "Height": 90})

        image = decode(output)
        assert image.size == (120, 90)
        assert image.format == "JPEG"

    def test_default_size(self):
        image = decode(transform(JobType.RESIZE_IMAGE, make_image()))

        assert image.size == (DEFAULT_WIDTH, DEFAULT_HEIGHT)

    def test_mistyped_parameters_fall_back(self):
        output = transform(JobType.RESIZE_IMAGE, make_image(), {"Width": "120", "Height": True})

        assert decode(output).size == (DEFAULT_WIDTH, DEFAULT_HEIGHT)

    @pytest.mark.parametrize("width,height", [(0, 10), (10, -1), (20_000, 10)])
    def test_out_of_range(self, width, height):
        with pytest.raises(UnsupportedOperation):
            transform(JobType.RESIZE_IMAGE, make_image(), {"Width": width, "Height": height})

    def test_transparent_input_is_flattened(self):
        source = make_image("PNG", mode="RGBA", color=(0, 0, 255))

        image = decode(transform(JobType.RESIZE_IMAGE, source, {"Width": 10, "Height": 10}))

        assert image.mode == "RGB"


class TestFormatConversion:
    def test_convert_to_pdf(self):
        output = transform(JobType.CONVERT_TO_PDF, make_image())

        assert output.startswith(b"%PDF")

    def test_convert_to_jpg(self):
        image = decode(transform(JobType.CONVERT_TO_JPG, make_image("PNG", mode="RGBA")))

        assert image.format == "JPEG"
        assert image.size == (64, 48)

    def test_convert_to_png_keeps_size(self):
        image = decode(transform(JobType.CONVERT_TO_PNG, make_image("JPEG", size=(33, 21))))

        assert image.format == "PNG"
        assert image.size == (33, 21)

    @pytest.mark.parametrize("job_type", list(JobType))
    def test_non_image_input_fails(self, job_type):
        with pytest.raises(TransformFailed):
            transform(job_type, b"this is a text document")


class TestWatermark:
    def test_changes_pixels_in_corner(self):
        source = make_image("PNG", size=(200, 100), color=(0, 0, 0))

        image = decode(add_watermark(source, {"WatermarkText": "SAMPLE"}))

        assert image.format == "JPEG"
        assert image.size == (200, 100)
        corner = image.crop((100, 50, 200, 100))
        assert corner.getextrema() != ((0, 0), (0, 0), (0, 0))

    def test_default_text(self):
        image = decode(transform(JobType.ADD_WATERMARK, make_image(size=(200, 100))))

        assert image.size == (200, 100)

    def test_blank_text_is_rejected(self):
        with pytest.raises(UnsupportedOperation):
            add_watermark(make_image(), {"WatermarkText": "   "})
