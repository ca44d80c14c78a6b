"""Input tensor construction.

Turns an RGB frame of any resolution into the fixed ``(1, H, W, 3)`` tensor a
classifier variant expects. Scaling is nearest-neighbour so the tensor for a
given frame is bit-exact across runs and platforms.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from framescan.errors import NotInitializedError

if TYPE_CHECKING:
    from numpy.typing import DTypeLike, NDArray

logger = logging.getLogger(__name__)

BATCH_SIZE = 1
CHANNELS = 3


class PixelEncoder(Protocol):
    """Per-model conversion of RGB channel values into tensor values."""

    @property
    def dtype(self) -> np.dtype[np.generic]:
        """Element type of the input tensor."""
        ...

    def encode(self, pixels: NDArray[np.uint8], out: NDArray[np.generic]) -> None:
        """Write the encoded ``HxWx3`` pixels into ``out`` (same shape) in place."""
        ...


class FloatPixelEncoder:
    """``(value - mean) / std`` as float32; the defaults map 0..255 onto [-1, 1]."""

    def __init__(self, mean: float = 127.5, std: float = 127.5) -> None:
        if std <= 0:
            raise ValueError(f"std must be positive, got {std}")
        self.mean = mean
        self.std = std

    @property
    def dtype(self) -> np.dtype[np.generic]:
        return np.dtype(np.float32)

    def encode(self, pixels: NDArray[np.uint8], out: NDArray[np.generic]) -> None:
        np.subtract(pixels, np.float32(self.mean), out=out, dtype=np.float32)
        np.divide(out, np.float32(self.std), out=out)


class QuantizedPixelEncoder:
    """Raw 0..255 channel values, one byte each, for quantized models."""

    @property
    def dtype(self) -> np.dtype[np.generic]:
        return np.dtype(np.uint8)

    def encode(self, pixels: NDArray[np.uint8], out: NDArray[np.generic]) -> None:
        out[...] = pixels


class InputTensorBuffer:
    """Preallocated model input, overwritten in place for every frame.

    The shape and dtype are fixed at construction; the buffer is never
    reallocated, only released on close.
    """

    def __init__(self, width: int, height: int, dtype: DTypeLike) -> None:
        if width < 1 or height < 1:
            raise ValueError(f"Input size must be at least 1x1, got {width}x{height}")
        self.width = width
        self.height = height
        self.dtype = np.dtype(dtype).newbyteorder("=")
        self._array: NDArray[np.generic] | None = np.zeros((BATCH_SIZE, height, width, CHANNELS), dtype=self.dtype)

    @property
    def shape(self) -> tuple[int, int, int, int]:
        return (BATCH_SIZE, self.height, self.width, CHANNELS)

    @property
    def nbytes(self) -> int:
        return BATCH_SIZE * self.width * self.height * CHANNELS * self.dtype.itemsize

    @property
    def released(self) -> bool:
        return self._array is None

    @property
    def array(self) -> NDArray[np.generic]:
        if self._array is None:
            raise NotInitializedError("Input tensor buffer has been released")
        return self._array

    def release(self) -> None:
        self._array = None


class InputTensorBuilder:
    """Scales frames to the buffer size and encodes them into the buffer."""

    def __init__(self, buffer: InputTensorBuffer, encoder: PixelEncoder) -> None:
        if np.dtype(encoder.dtype) != buffer.dtype:
            raise ValueError(f"Encoder dtype {encoder.dtype} does not match buffer dtype {buffer.dtype}")
        self._buffer = buffer
        self._encoder = encoder

    def build(self, image: NDArray[np.uint8] | Image.Image) -> NDArray[np.generic]:
        """Fill the buffer from ``image`` and return it.

        Args:
            image: HxWx3 (or HxWx4) RGB(A) uint8 array, or a PIL image.

        Raises:
            NotInitializedError: If the buffer was released.
            ValueError: If the image is not a non-empty RGB raster.
        """
        target = self._buffer.array
        resized = resize_nearest(image, self._buffer.width, self._buffer.height)
        self._encoder.encode(resized, target[0])
        return target


def resize_nearest(image: NDArray[np.uint8] | Image.Image, width: int, height: int) -> NDArray[np.uint8]:
    """Nearest-neighbour scale to ``width x height``; returns an HxWx3 uint8 array."""
    if isinstance(image, Image.Image):
        pil_image = image.convert("RGB")
    else:
        pil_image = Image.fromarray(_as_rgb(image))

    if pil_image.width < 1 or pil_image.height < 1:
        raise ValueError("Image must be at least 1x1")
    if pil_image.size != (width, height):
        pil_image = pil_image.resize((width, height), Image.Resampling.NEAREST)
    return np.asarray(pil_image, dtype=np.uint8)


def _as_rgb(pixels: NDArray[np.uint8]) -> NDArray[np.uint8]:
    array = np.asarray(pixels)
    if array.ndim != 3 or array.shape[2] not in (3, 4):
        raise ValueError(f"Expected an HxWx3 or HxWx4 image, got shape {array.shape}")
    if array.dtype != np.uint8:
        raise ValueError(f"Expected uint8 pixels, got {array.dtype}")
    if array.shape[0] < 1 or array.shape[1] < 1:
        raise ValueError("Image must be at least 1x1")
    return np.ascontiguousarray(array[:, :, :CHANNELS])


def decode_image(image_bytes: bytes, max_pixels: int) -> NDArray[np.uint8]:
    """Decode uploaded bytes into an upright HxWx3 RGB uint8 array.

    Raises:
        ValueError: If the bytes are not a supported image or exceed ``max_pixels``.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise ValueError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")
            upright = ImageOps.exif_transpose(img)
            rgb = upright.convert("RGB")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc

    logger.debug("Decoded %dx%d image", rgb.width, rgb.height)
    return np.asarray(rgb, dtype=np.uint8)
