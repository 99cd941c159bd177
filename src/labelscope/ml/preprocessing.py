"""Model input preparation for MobileNet-style classifiers.

Images are resized so the short side matches ``resize_to``, center-cropped to
``crop_to`` and scaled to [-1, 1], then laid out as a 1x3xHxW float32 batch.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from PIL import Image

if TYPE_CHECKING:
    from numpy.typing import NDArray


def resize_short_side(image: Image.Image, size: int) -> Image.Image:
    """Resize ``image`` so its shorter side equals ``size``, keeping aspect ratio."""
    width, height = image.size
    scale = size / min(width, height)
    new_size = (max(1, round(width * scale)), max(1, round(height * scale)))
    return image.resize(new_size, Image.Resampling.BILINEAR)


def center_crop(image: Image.Image, size: int) -> Image.Image:
    width, height = image.size
    left = (width - size) // 2
    top = (height - size) // 2
    return image.crop((left, top, left + size, top + size))


def to_model_input(pixels: NDArray[np.uint8], crop_to: int, resize_to: int) -> NDArray[np.float32]:
    """Convert an HxWx3 RGB uint8 array to a normalized 1x3xHxW float32 tensor.

    Args:
        pixels: Decoded RGB image.
        crop_to: Side length of the square the model consumes (e.g. 224).
        resize_to: Short-side length before cropping (e.g. 256).

    Returns:
        Tensor with values in [-1, 1].
    """
    image = Image.fromarray(pixels)
    image = center_crop(resize_short_side(image, resize_to), crop_to)
    array = np.asarray(image, dtype=np.float32) / 127.5 - 1.0
    return np.ascontiguousarray(array.transpose(2, 0, 1)[np.newaxis, ...])


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return (exp / exp.sum()).astype(np.float32)
