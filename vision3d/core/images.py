"""
Input images handed over by the preprocessing step
"""
import base64
import binascii
import numpy as np
import cv2 as cv
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from .errors import ImageDecodeFailure


ImageData = Union[bytes, bytearray, memoryview, str, Path, np.ndarray]


@dataclass
class ProcessedImage:
    """
    One background-removed image

    data may be:
    - encoded image bytes (PNG, JPEG, ...)
    - a "data:image/...;base64," URL
    - a file path
    - an HxW, HxWx3 (RGB) or HxWx4 (RGBA) array
    """
    data: ImageData
    name: str = ""
    success: bool = True

    def decode(self) -> np.ndarray:
        """BGR, BGRA or grayscale uint8 image"""
        return decode_image(self.data, self.name)


def _decode_bytes(buffer: bytes, name: str) -> np.ndarray:
    if len(buffer) == 0:
        raise ImageDecodeFailure(name, "empty buffer")

    array = np.frombuffer(buffer, dtype=np.uint8)
    image = cv.imdecode(array, cv.IMREAD_UNCHANGED)

    if image is None:
        raise ImageDecodeFailure(name, "unsupported or corrupt image data")

    if image.dtype == np.uint16:
        image = (image >> 8).astype(np.uint8)

    return image


def _decode_data_url(url: str, name: str) -> np.ndarray:
    header, _, payload = url.partition(",")
    if not payload or ";base64" not in header:
        raise ImageDecodeFailure(name, "data URL is not base64 encoded")

    try:
        buffer = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeFailure(name, f"invalid base64 payload ({e})") from e

    return _decode_bytes(buffer, name)


def _from_array(array: np.ndarray, name: str) -> np.ndarray:
    if array.size == 0:
        raise ImageDecodeFailure(name, "empty pixel buffer")

    if array.dtype != np.uint8:
        if np.issubdtype(array.dtype, np.floating) and array.max() <= 1.0:
            array = array * 255.0
        array = np.clip(array, 0, 255).astype(np.uint8)

    if array.ndim == 2:
        return array

    if array.ndim == 3 and array.shape[2] == 3:
        return cv.cvtColor(array, cv.COLOR_RGB2BGR)

    if array.ndim == 3 and array.shape[2] == 4:
        return cv.cvtColor(array, cv.COLOR_RGBA2BGRA)

    raise ImageDecodeFailure(name, f"unsupported pixel buffer shape {array.shape}")


def decode_image(data: ImageData, name: str = "") -> np.ndarray:
    """
    Decode any supported input into an OpenCV-ordered uint8 image

    Raises:
        ImageDecodeFailure: the input cannot be turned into pixels
    """
    if isinstance(data, np.ndarray):
        return _from_array(data, name)

    if isinstance(data, (bytes, bytearray, memoryview)):
        return _decode_bytes(bytes(data), name)

    if isinstance(data, str) and data.startswith("data:"):
        return _decode_data_url(data, name)

    if isinstance(data, (str, Path)):
        path = Path(data)
        if not path.is_file():
            raise ImageDecodeFailure(name or str(path), "file not found")
        return _decode_bytes(path.read_bytes(), name or path.name)

    raise ImageDecodeFailure(name, f"unsupported input type {type(data).__name__}")
