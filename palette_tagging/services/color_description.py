"""Deterministic color description of a palette seed.

A seed of the form ``ff0000,00ff00,0000ff`` is treated as a list of gradient
stops and interpolated. Any other seed is hashed into a cosine gradient so
every seed maps to the same colors on every call.
"""

import hashlib
import math
import re

from palette_tagging.schemas.schemas import ColorDescription

DEFAULT_STEPS = 11

_HEX_STOP = re.compile(r"^#?([0-9a-fA-F]{6})$")

# D65 reference white
REF_X = 95.047
REF_Y = 100.0
REF_Z = 108.883
LAB_EPSILON = 0.008856
LAB_KAPPA = 903.3


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def parse_hex_stops(seed: str) -> list[tuple[float, float, float]] | None:
    """Return RGB stops in 0..1 if the seed is a comma separated hex list."""
    parts = [p.strip() for p in seed.split(",")]
    if len(parts) < 2:
        return None
    stops = []
    for part in parts:
        match = _HEX_STOP.match(part)
        if not match:
            return None
        value = match.group(1)
        stops.append(tuple(int(value[i : i + 2], 16) / 255 for i in (0, 2, 4)))
    return stops


def _interpolate(stops: list[tuple[float, float, float]], t: float) -> tuple[float, float, float]:
    position = t * (len(stops) - 1)
    index = min(int(position), len(stops) - 2)
    frac = position - index
    start, end = stops[index], stops[index + 1]
    return tuple(a + (b - a) * frac for a, b in zip(start, end))


def _cosine_coefficients(seed: str) -> list[list[float]]:
    """Derive the a, b, c, d vectors of a cosine palette from the seed hash."""
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    values = [byte / 255 for byte in digest[:12]]
    a = [0.35 + 0.3 * v for v in values[0:3]]
    b = [0.2 + 0.3 * v for v in values[3:6]]
    c = [0.5 + 1.0 * v for v in values[6:9]]
    d = values[9:12]
    return [a, b, c, d]


def _cosine_color(coefficients: list[list[float]], t: float) -> tuple[float, float, float]:
    a, b, c, d = coefficients
    return tuple(
        _clamp(a[i] + b[i] * math.cos(2 * math.pi * (c[i] * t + d[i]))) for i in range(3)
    )


def rgb_to_hex(rgb: tuple[int, int, int]) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgb)


def rgb_to_hsl(rgb: tuple[int, int, int]) -> tuple[int, int, int]:
    """Convert 0-255 RGB to (hue degrees, saturation %, lightness %)."""
    r, g, b = (channel / 255 for channel in rgb)
    high, low = max(r, g, b), min(r, g, b)
    lightness = (high + low) / 2

    if high == low:
        return 0, 0, round(lightness * 100)

    delta = high - low
    saturation = delta / (2 - high - low) if lightness > 0.5 else delta / (high + low)
    if high == r:
        hue = (g - b) / delta + (6 if g < b else 0)
    elif high == g:
        hue = (b - r) / delta + 2
    else:
        hue = (r - g) / delta + 4
    return round(hue * 60) % 360, round(saturation * 100), round(lightness * 100)


def rgb_to_lch(rgb: tuple[int, int, int]) -> tuple[int, int, int]:
    """Convert 0-255 RGB to CIE LCh (lightness, chroma, hue degrees) via XYZ and Lab."""

    def linearize(channel: float) -> float:
        channel /= 255
        if channel > 0.04045:
            return ((channel + 0.055) / 1.055) ** 2.4
        return channel / 12.92

    r, g, b = (linearize(channel) * 100 for channel in rgb)
    x = r * 0.4124 + g * 0.3576 + b * 0.1805
    y = r * 0.2126 + g * 0.7152 + b * 0.0722
    z = r * 0.0193 + g * 0.1192 + b * 0.9505

    def pivot(value: float) -> float:
        if value > LAB_EPSILON:
            return value ** (1 / 3)
        return (LAB_KAPPA * value + 16) / 116

    fx, fy, fz = pivot(x / REF_X), pivot(y / REF_Y), pivot(z / REF_Z)
    lightness = 116 * fy - 16
    a = 500 * (fx - fy)
    b_axis = 200 * (fy - fz)

    chroma = math.sqrt(a * a + b_axis * b_axis)
    hue = math.degrees(math.atan2(b_axis, a))
    if hue < 0:
        hue += 360
    return round(max(lightness, 0)), round(chroma), round(hue) % 360


def describe_seed(seed: str, steps: int = DEFAULT_STEPS) -> ColorDescription:
    """Sample the seed's gradient at evenly spaced points."""
    if steps < 2:
        raise ValueError("steps must be at least 2")

    stops = parse_hex_stops(seed)
    coefficients = None if stops else _cosine_coefficients(seed)

    rgb_samples: list[tuple[int, int, int]] = []
    for i in range(steps):
        t = i / (steps - 1)
        color = _interpolate(stops, t) if stops else _cosine_color(coefficients, t)
        rgb_samples.append(tuple(round(channel * 255) for channel in color))

    return ColorDescription(
        hex=[rgb_to_hex(rgb) for rgb in rgb_samples],
        rgb=rgb_samples,
        hsl=[rgb_to_hsl(rgb) for rgb in rgb_samples],
        lch=[rgb_to_lch(rgb) for rgb in rgb_samples],
    )
