"""Asynchronous image decoding with Pillow."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from labelscope.errors import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from labelscope.ml.image_source import RawImage
    from labelscope.ml.workers import WorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class DecodedImage:
    """A decoded RGB image ready for preprocessing.

    ``pixels`` is an HxWx3 uint8 array, read-only so that handles can be shared.
    """

    pixels: NDArray[np.uint8]
    width: int
    height: int
    format: str | None = None


def decode_bytes(data: bytes, max_pixels: int) -> DecodedImage:
    """Decode ``data`` synchronously. Runs on a worker thread.

    Raises:
        DecodeError: If the image has more than ``max_pixels`` pixels, or if
            decoding fails for any reason.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            width, height = img.size
            if width * height > max_pixels:
                raise DecodeError(f"image is {width}x{height}, limit is {max_pixels} pixels")
            img.load()
            rgb = ImageOps.exif_transpose(img).convert("RGB")
        pixels = np.asarray(rgb, dtype=np.uint8).copy()
    except DecodeError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(str(exc)) from exc
    except Exception as exc:
        logger.exception("Unexpected failure decoding %d bytes", len(data))
        raise DecodeError(str(exc)) from exc

    pixels.flags.writeable = False
    return DecodedImage(pixels=pixels, width=rgb.width, height=rgb.height, format=fmt)


class ImageDecoder:
    """Turns ``RawImage`` bytes into a ``DecodedImage`` off the event loop."""

    def __init__(self, pool: WorkerPool, max_pixels: int) -> None:
        self._pool = pool
        self._max_pixels = max_pixels

    async def decode(self, raw: RawImage) -> DecodedImage:
        """Decode ``raw`` on the worker pool.

        Raises:
            DecodeError: If decoding fails or no worker is available in time.
        """
        try:
            decoded = await self._pool.run(decode_bytes, raw.raw_bytes, self._max_pixels, busy_error=DecodeError)
        except DecodeError as exc:
            logger.info("Could not decode %s (%s): %s", raw.filename or "<body>", raw.declared_type, exc)
            raise
        logger.debug("Decoded %s as %s %dx%d", raw.filename or "<body>", decoded.format, decoded.width, decoded.height)
        return decoded
