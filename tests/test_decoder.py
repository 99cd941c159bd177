"""Tests for Pillow-based decoding."""

from __future__ import annotations

import asyncio
import io
import threading
from unittest.mock import patch

import numpy as np
import pytest
from conftest import make_image_bytes, make_settings
from PIL import Image

from labelscope.errors import DecodeError, InferenceError
from labelscope.ml.decoder import ImageDecoder, decode_bytes
from labelscope.ml.image_source import RawImage
from labelscope.ml.workers import WorkerPool


class TestDecodeBytes:
    def test_png_dimensions_and_pixels(self) -> None:
        decoded = decode_bytes(make_image_bytes(32, 24, color="blue"), max_pixels=10_000)
        assert (decoded.width, decoded.height) == (32, 24)
        assert decoded.format == "PNG"
        assert decoded.pixels.shape == (24, 32, 3)
        assert decoded.pixels.dtype == np.uint8
        assert tuple(decoded.pixels[0, 0]) == (0, 0, 255)

    def test_grayscale_converted_to_rgb(self) -> None:
        buffer = io.BytesIO()
        Image.new("L", (8, 8), 128).save(buffer, format="PNG")
        decoded = decode_bytes(buffer.getvalue(), max_pixels=10_000)
        assert decoded.pixels.shape == (8, 8, 3)

    def test_jpeg(self) -> None:
        decoded = decode_bytes(make_image_bytes(16, 16, fmt="JPEG"), max_pixels=10_000)
        assert decoded.format == "JPEG"

    def test_pixels_are_read_only(self) -> None:
        decoded = decode_bytes(make_image_bytes(), max_pixels=10_000)
        with pytest.raises(ValueError):
            decoded.pixels[0, 0, 0] = 1

    def test_garbage_raises_decode_error(self) -> None:
        with pytest.raises(DecodeError):
            decode_bytes(b"definitely not an image", max_pixels=10_000)

    def test_truncated_png_raises_decode_error(self) -> None:
        data = make_image_bytes(64, 64)
        with pytest.raises(DecodeError):
            decode_bytes(data[: len(data) // 2], max_pixels=100_000)

    def test_pixel_limit(self) -> None:
        with pytest.raises(DecodeError, match="limit"):
            decode_bytes(make_image_bytes(100, 100), max_pixels=9_999)

    def test_unexpected_failure_raises_decode_error(self) -> None:
        with (
            patch("labelscope.ml.decoder.Image.open", side_effect=RuntimeError("codec crashed")),
            pytest.raises(DecodeError, match="codec crashed"),
        ):
            decode_bytes(make_image_bytes(), max_pixels=10_000)

    def test_repeated_decode_is_equivalent(self) -> None:
        data = make_image_bytes(20, 10, color="green")
        first = decode_bytes(data, max_pixels=10_000)
        second = decode_bytes(data, max_pixels=10_000)
        assert (first.width, first.height) == (second.width, second.height)
        assert np.array_equal(first.pixels, second.pixels)
        assert first.pixels is not second.pixels


class TestImageDecoder:
    async def test_decode_runs_on_pool(self, worker_pool: WorkerPool) -> None:
        decoder = ImageDecoder(worker_pool, max_pixels=10_000)
        raw = RawImage(raw_bytes=make_image_bytes(12, 6), declared_type="image/png", filename="a.png")
        decoded = await decoder.decode(raw)
        assert (decoded.width, decoded.height) == (12, 6)
        assert worker_pool.running == 0

    async def test_decode_failure_propagates(self, worker_pool: WorkerPool) -> None:
        decoder = ImageDecoder(worker_pool, max_pixels=10_000)
        raw = RawImage(raw_bytes=b"\x89PNG broken", declared_type="image/png")
        with pytest.raises(DecodeError):
            await decoder.decode(raw)

    async def test_saturated_pool_becomes_decode_error(self) -> None:
        pool = WorkerPool(make_settings(max_concurrent=1))
        gate = threading.Event()
        try:
            busy = asyncio.create_task(pool.run(gate.wait, 5, busy_error=InferenceError))
            while pool.running == 0:
                await asyncio.sleep(0.001)

            decoder = ImageDecoder(pool, max_pixels=10_000)
            raw = RawImage(raw_bytes=make_image_bytes(), declared_type="image/png")
            with patch("labelscope.ml.workers.SLOT_TIMEOUT_SECONDS", 0.01), pytest.raises(DecodeError, match="worker"):
                await decoder.decode(raw)

            gate.set()
            await busy
        finally:
            gate.set()
            pool.shutdown()
