from __future__ import annotations

import io

import numpy as np
from PIL import Image, UnidentifiedImageError

from inspection.config import QualityPolicy
from inspection.data_models import ImageQuality
from inspection.errors import UnreadableImage

DARK_WARNING = "Photo may be too dark"


def low_resolution_warning(policy: QualityPolicy) -> str:
    return f"Resolution below {policy.min_width}x{policy.min_height}"


def _color_channels(img: Image.Image) -> np.ndarray:
    if img.mode in ("RGBA", "LA"):
        img = img.convert(img.mode[:-1])
    elif img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    pixels = np.asarray(img)
    if pixels.ndim == 2:
        pixels = pixels[:, :, np.newaxis]
    return pixels


def average_luminance(img: Image.Image) -> float:
    """Arithmetic mean of the per-channel means, 0-255 scale. Alpha is ignored."""
    pixels = _color_channels(img)
    # uint8 frame reduced per channel; no float copy of the whole image
    channel_means = pixels.reshape(-1, pixels.shape[2]).mean(axis=0, dtype=np.float64)
    return float(channel_means.mean())


def analyze_quality(data: bytes, policy: QualityPolicy = QualityPolicy()) -> ImageQuality:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            width, height = img.size
            luminance = average_luminance(img)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise UnreadableImage(f"cannot decode image: {exc}") from exc

    is_dark = luminance < policy.dark_luminance_threshold
    is_low_res = width < policy.min_width or height < policy.min_height

    warnings: list[str] = []
    if is_dark:
        warnings.append(DARK_WARNING)
    if is_low_res:
        warnings.append(low_resolution_warning(policy))

    return ImageQuality(
        width=width,
        height=height,
        avg_luminance=int(round(luminance)),
        is_dark=is_dark,
        is_low_resolution=is_low_res,
        warnings=tuple(warnings),
    )
