import base64
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from a11y_bot.browser.channel import ControlChannel
from a11y_bot.config import CAPTURE_SCREENSHOTS
from a11y_bot.perception.engine import PerceptionEngine
from .detection import has_accessible_name
from .models import CSSFixSolution, FixType, VerificationEvidence, VerificationResult


logger = logging.getLogger(__name__)

# Ratios are compared after rounding, like the reported values
CONTRAST_TOLERANCE = 0.01


@dataclass(frozen=True)
class VerificationBaseline:
    """Element state captured just before a fix is injected."""

    selector: str
    focused_style: Mapping[str, str]
    contrast: Optional[float] = None
    screenshot: Optional[str] = None


class FixVerifier:
    """
    Re-inspects an element after a fix and decides whether the fix worked.

    - focus-visible: focusing must show an indicator, and the focused style must differ from before
    - color-contrast: the measured ratio must rise and reach the fix's target
    - keyboard-navigation: the element must be in the tab order and take focus
    - accessible-name: the element must now have an accessible name
    """

    def __init__(self, channel: ControlChannel, perception: PerceptionEngine, capture_screenshots: bool = CAPTURE_SCREENSHOTS):
        self._channel = channel
        self._perception = perception
        self.capture_screenshots = capture_screenshots

    async def _screenshot(self, selector: str) -> Optional[str]:
        if not self.capture_screenshots or not self._channel.capabilities.can_capture_screenshots:
            return None
        data = await self._channel.screenshot(selector)
        return base64.b64encode(data).decode("ascii")

    async def capture_baseline(self, fix: CSSFixSolution) -> VerificationBaseline:
        focused_style: Mapping[str, str] = {}
        contrast = None
        if fix.fix_type == FixType.FOCUS_VISIBLE:
            probe = await self._perception.probe_focus_indicator(fix.selector)
            focused_style = probe.focused_style
        elif fix.fix_type == FixType.COLOR_CONTRAST:
            measurement = await self._perception.contrast_of(fix.selector)
            contrast = measurement.ratio if measurement else None
        return VerificationBaseline(
            selector=fix.selector,
            focused_style=focused_style,
            contrast=contrast,
            screenshot=await self._screenshot(fix.selector),
        )

    async def verify(self, fix: CSSFixSolution, baseline: VerificationBaseline) -> VerificationResult:
        evidence = VerificationEvidence(screenshot_before=baseline.screenshot)

        if fix.fix_type == FixType.FOCUS_VISIBLE:
            probe = await self._perception.probe_focus_indicator(fix.selector)
            changed = [
                prop for prop, value in probe.focused_style.items()
                if baseline.focused_style.get(prop) != value
            ]
            evidence.changed_properties = changed
            evidence.visual_change = bool(changed)
            evidence.focus_indicator_present = probe.indicator_present
            passed = evidence.visual_change and evidence.focus_indicator_present

        elif fix.fix_type == FixType.COLOR_CONTRAST:
            measurement = await self._perception.contrast_of(fix.selector)
            after = measurement.ratio if measurement else None
            evidence.contrast_before = round(baseline.contrast, 2) if baseline.contrast is not None else None
            evidence.contrast_after = round(after, 2) if after is not None else None
            target = fix.target_ratio or 0
            evidence.contrast_improved = (
                after is not None
                and (baseline.contrast is None or after > baseline.contrast)
                and after + CONTRAST_TOLERANCE >= target
            )
            evidence.visual_change = after is not None and after != baseline.contrast
            passed = evidence.contrast_improved

        elif fix.fix_type == FixType.KEYBOARD_NAVIGATION:
            info = await self._channel.describe_element(fix.selector)
            async with self._perception.focus_lock:
                focused = info is not None and info.tab_index >= 0 and await self._channel.focus(fix.selector)
                if focused:
                    await self._channel.blur()
            evidence.keyboard_accessible = bool(focused)
            passed = evidence.keyboard_accessible

        else:
            info = await self._channel.describe_element(fix.selector)
            evidence.accessible_name_present = info is not None and has_accessible_name(info)
            passed = evidence.accessible_name_present

        evidence.screenshot_after = await self._screenshot(fix.selector)
        reason = "" if passed else f"{fix.fix_type.value} check did not pass"
        if not passed:
            logger.warning(f"Verification failed for {fix.id} on {fix.selector}: {reason}")
        return VerificationResult(
            passed=passed,
            confidence=fix.confidence if passed else 0.0,
            evidence=evidence,
            reason=reason,
        )
