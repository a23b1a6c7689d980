from __future__ import annotations

import base64

import pytest

from conftest import make_image
from errors import DecodeError, EmptyInputError
from imaging import (
    ImageBuffer,
    blank,
    decode,
    encode,
    stitch_vertically,
    vertical_layout,
)


def test_data_uri_header_is_parsed_and_stripped() -> None:
    png = make_image(4, 4)
    uri = png.to_data_uri()
    assert uri.startswith("data:image/png;base64,")

    parsed = ImageBuffer.from_data_uri(uri)
    assert parsed.mime_type == "image/png"
    assert parsed.data == png.data
    assert parsed.raw_base64() == uri.split(",", 1)[1]


def test_bare_base64_uses_fallback_mime() -> None:
    payload = base64.b64encode(make_image(4, 4).data).decode()
    parsed = ImageBuffer.from_data_uri(payload, default_mime="image/webp")
    assert parsed.mime_type == "image/webp"


def test_invalid_base64_is_a_decode_error() -> None:
    with pytest.raises(DecodeError):
        ImageBuffer.from_data_uri("data:image/png;base64,@@not-base64@@")


def test_decode_rejects_garbage_and_truncated_bytes() -> None:
    with pytest.raises(DecodeError):
        decode(ImageBuffer(mime_type="image/png", data=b"hello world"))

    jpeg = make_image(256, 256, fmt="JPEG")
    truncated = ImageBuffer(mime_type="image/jpeg", data=jpeg.data[: len(jpeg.data) // 2])
    with pytest.raises(DecodeError):
        decode(truncated)


def test_blank_placeholder_is_white_jpeg_of_exact_size() -> None:
    placeholder = blank(1024, 1024)
    assert placeholder.mime_type == "image/jpeg"
    img = decode(placeholder)
    assert img.size == (1024, 1024)
    r, g, b = img.convert("RGB").getpixel((512, 512))
    assert min(r, g, b) >= 250


def test_encode_validates_quality_and_flattens_alpha() -> None:
    rgba = decode(make_image(8, 8, color=(0, 0, 0, 0), mode="RGBA"))
    with pytest.raises(ValueError):
        encode(rgba, quality=1.5)

    out = encode(rgba, quality=0.9, mime_type="image/jpeg")
    assert out.mime_type == "image/jpeg"
    assert out.extension == "jpg"
    # Transparent pixels land on white
    assert min(decode(out).getpixel((4, 4))) >= 250


def test_stitch_empty_input_fails() -> None:
    with pytest.raises(EmptyInputError):
        stitch_vertically([])


@pytest.mark.parametrize("sizes", [
    [(100, 100)],
    [(100, 50), (200, 300), (50, 50)],
    [(333, 100), (1000, 1000), (777, 123), (1000, 1)],
    [(1024, 1024)] * 7,
    [(3, 7), (7, 3), (11, 13)],
])
def test_stitch_dimensions_follow_width_scaling(sizes) -> None:
    images = [make_image(w, h) for w, h in sizes]
    out = decode(stitch_vertically(images))

    target = max(w for w, _ in sizes)
    expected = sum(h * target / w for w, h in sizes)
    assert out.width == target
    assert abs(out.height - expected) <= 1


def test_stitch_is_stable_across_calls() -> None:
    images = [make_image(120, 80), make_image(90, 200, color="green")]
    first = decode(stitch_vertically(images))
    second = decode(stitch_vertically(images))
    assert first.size == second.size


def test_vertical_layout_has_no_gaps_or_overlaps() -> None:
    # Scale factors that leave fractional heights on most panels
    sizes = [(700, 100), (900, 100), (650, 333)] * 10
    width, height, spans = vertical_layout(sizes)

    assert width == 900
    assert spans[0][0] == 0
    assert spans[-1][1] == height
    for (_, bottom), (top, _) in zip(spans, spans[1:]):
        assert bottom == top


def test_stitch_draws_panels_in_order_without_white_gap() -> None:
    top = make_image(100, 100, color=(255, 0, 0))
    bottom = make_image(50, 50, color=(0, 0, 255))
    out = decode(stitch_vertically([top, bottom])).convert("RGB")

    assert out.size == (100, 200)
    r, g, b = out.getpixel((50, 40))
    assert r > 200 and b < 60
    r, g, b = out.getpixel((50, 160))
    assert b > 200 and r < 60
    # Last row belongs to the final panel, not the white canvas
    r, g, b = out.getpixel((50, 199))
    assert b > 150 and r < 100


def test_stitch_reports_bad_member() -> None:
    with pytest.raises(DecodeError):
        stitch_vertically([make_image(10, 10), ImageBuffer(data=b"\x89PNG broken")])
