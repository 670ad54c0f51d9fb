"""CSS colour parsing and WCAG contrast maths."""

import colorsys
import re
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RGBA:
    r: float
    g: float
    b: float
    a: float = 1.0

    @property
    def opaque(self) -> bool:
        return self.a >= 1.0


NAMED_COLORS = {
    "black": (0, 0, 0),
    "white": (255, 255, 255),
    "red": (255, 0, 0),
    "green": (0, 128, 0),
    "blue": (0, 0, 255),
    "yellow": (255, 255, 0),
    "gray": (128, 128, 128),
    "grey": (128, 128, 128),
    "silver": (192, 192, 192),
    "navy": (0, 0, 128),
    "orange": (255, 165, 0),
    "purple": (128, 0, 128),
}

_FUNC_RE = re.compile(r"^(rgba?|hsla?)\(\s*([^)]*)\)$")


def _channel(value: str) -> float:
    value = value.strip()
    if value.endswith("%"):
        return float(value[:-1]) * 255 / 100
    return float(value)


def _alpha(value: str) -> float:
    value = value.strip()
    if value.endswith("%"):
        return float(value[:-1]) / 100
    return float(value)


def parse_color(value: Optional[str]) -> Optional[RGBA]:
    """Parse the colour formats getComputedStyle and stylesheets produce. None if unparseable."""
    if not value:
        return None
    value = value.strip().lower()
    if value == "transparent":
        return RGBA(0, 0, 0, 0)
    if value in NAMED_COLORS:
        return RGBA(*NAMED_COLORS[value])

    if value.startswith("#"):
        digits = value[1:]
        if len(digits) in (3, 4):
            digits = "".join(c * 2 for c in digits)
        if len(digits) not in (6, 8):
            return None
        try:
            parts = [int(digits[i:i + 2], 16) for i in range(0, len(digits), 2)]
        except ValueError:
            return None
        alpha = parts[3] / 255 if len(parts) == 4 else 1.0
        return RGBA(parts[0], parts[1], parts[2], alpha)

    match = _FUNC_RE.match(value)
    if not match:
        return None
    func, args = match.groups()
    parts = [p for p in re.split(r"[\s,/]+", args) if p]
    if len(parts) < 3:
        return None
    try:
        if func.startswith("rgb"):
            alpha = _alpha(parts[3]) if len(parts) > 3 else 1.0
            return RGBA(_channel(parts[0]), _channel(parts[1]), _channel(parts[2]), alpha)
        hue = float(parts[0].removesuffix("deg")) / 360
        saturation = float(parts[1].rstrip("%")) / 100
        lightness = float(parts[2].rstrip("%")) / 100
        alpha = _alpha(parts[3]) if len(parts) > 3 else 1.0
    except ValueError:
        return None
    r, g, b = colorsys.hls_to_rgb(hue % 1, lightness, saturation)
    return RGBA(r * 255, g * 255, b * 255, alpha)


def relative_luminance(color: RGBA) -> float:
    def linear(c: float) -> float:
        c = c / 255
        return c / 12.92 if c <= 0.03928 else ((c + 0.055) / 1.055) ** 2.4

    return 0.2126 * linear(color.r) + 0.7152 * linear(color.g) + 0.0722 * linear(color.b)


def contrast_ratio(foreground: RGBA, background: RGBA) -> float:
    """WCAG contrast ratio, from 1 to 21. A translucent foreground is blended first."""
    if not foreground.opaque:
        foreground = blend(foreground, background)
    lighter, darker = sorted((relative_luminance(foreground), relative_luminance(background)), reverse=True)
    return (lighter + 0.05) / (darker + 0.05)


def blend(top: RGBA, bottom: RGBA) -> RGBA:
    a = top.a
    return RGBA(
        top.r * a + bottom.r * (1 - a),
        top.g * a + bottom.g * (1 - a),
        top.b * a + bottom.b * (1 - a),
        1.0,
    )


def is_dark(color: RGBA) -> bool:
    # Below this luminance white text contrasts more than black
    return relative_luminance(color) < 0.179


def to_css(color: RGBA) -> str:
    r, g, b = (max(0, min(255, round(c))) for c in (color.r, color.g, color.b))
    if color.a < 1:
        return f"rgba({r}, {g}, {b}, {color.a:g})"
    return f"#{r:02x}{g:02x}{b:02x}"


def adjust_for_contrast(color: RGBA, against: RGBA, target: float, steps: int = 100) -> Optional[RGBA]:
    """
    Move ``color`` in lightness, away from ``against``, until the pair reaches ``target``.

    Hue and saturation are kept. Returns the first colour that meets the
    target, or None if even black or white does not.
    """
    if contrast_ratio(color, against) >= target:
        return color
    h, l, s = colorsys.rgb_to_hls(color.r / 255, color.g / 255, color.b / 255)
    direction = -1 if not is_dark(against) else 1
    for step in range(1, steps + 1):
        lightness = l + direction * step / steps
        if not 0 <= lightness <= 1:
            break
        r, g, b = colorsys.hls_to_rgb(h, lightness, s)
        # Rounded so the CSS hex value meets the target too
        candidate = RGBA(round(r * 255), round(g * 255), round(b * 255), 1.0)
        if contrast_ratio(candidate, against) >= target:
            return candidate
    extreme = RGBA(0, 0, 0) if direction < 0 else RGBA(255, 255, 255)
    return extreme if contrast_ratio(extreme, against) >= target else None
