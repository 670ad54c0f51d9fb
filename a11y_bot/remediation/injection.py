"""Applies CSSFixSolutions to the page and takes them off again."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from a11y_bot.browser.channel import ControlChannel
from a11y_bot.config import INJECTION_STRATEGIES
from a11y_bot.errors import InjectionError, SessionError, classify_injection_error
from .fixes import parse_declarations, rule_selector, split_rules, validate_css
from .models import CSSFixSolution, FixType


logger = logging.getLogger(__name__)


class InjectionStrategy(str, Enum):
    STYLESHEET = "stylesheet"  # Dedicated inspector style sheet over CDP
    RULE = "rule"  # insertRule into a <style> element owned by the fix
    INLINE = "inline"  # Inline !important declarations; cannot express pseudo-classes


def parse_strategies(names: Sequence[str]) -> tuple[InjectionStrategy, ...]:
    strategies = []
    for name in names:
        try:
            strategies.append(InjectionStrategy(name))
        except ValueError:
            logger.warning(f"Ignoring unknown injection strategy '{name}'")
    return tuple(strategies) or tuple(InjectionStrategy)


@dataclass
class InjectionRecord:
    """Everything needed to take one fix off the page again."""

    fix_id: str
    fix_type: FixType
    selector: str
    css: str = ""
    attributes: tuple[tuple[str, str], ...] = ()
    strategy: Optional[InjectionStrategy] = None
    handle: Optional[str] = None
    previous_inline: dict[str, str] = field(default_factory=dict)
    # (name, previous value or None), in the order they were set
    previous_attributes: list[tuple[str, Optional[str]]] = field(default_factory=list)
    fallback_errors: list[str] = field(default_factory=list)
    applied_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "fix_id": self.fix_id,
            "fix_type": self.fix_type.value,
            "selector": self.selector,
            "strategy": self.strategy.value if self.strategy else None,
            "attributes": [name for name, _ in self.previous_attributes],
            "fallback_errors": self.fallback_errors,
            "applied_at": self.applied_at.isoformat(),
        }


class StyleInjector:
    """
    Injects fixes with a preference-ordered list of strategies.

    At most one fix per (fix type, selector) is active: applying a second one
    removes the first, unless it is identical, in which case the active one
    stays. Removal restores the exact previous inline values and
    attributes, so a removed fix leaves nothing behind.
    """

    def __init__(self, channel: ControlChannel, strategies: Sequence[str] = INJECTION_STRATEGIES):
        self._channel = channel
        self.strategies = parse_strategies(strategies)
        self._records: dict[str, InjectionRecord] = {}
        self._active: dict[tuple[FixType, str], str] = {}

    @property
    def records(self) -> list[InjectionRecord]:
        return list(self._records.values())

    def get_record(self, fix_id: str) -> Optional[InjectionRecord]:
        return self._records.get(fix_id)

    def active_fix_id(self, fix_type: FixType, selector: str) -> Optional[str]:
        return self._active.get((fix_type, selector))

    def find_identical(self, fix: CSSFixSolution) -> Optional[InjectionRecord]:
        """The active record that already puts exactly this fix on the element, if any."""
        record = self._records.get(self._active.get((fix.fix_type, fix.selector), ""))
        if record and record.css.strip() == fix.css.strip() and record.attributes == fix.attributes:
            return record
        return None

    async def inject(self, fix: CSSFixSolution) -> InjectionRecord:
        """
        Apply a fix, replacing any active fix of the same type on the same element.

        Returns the record of the fix now on the page, which is the already
        active one when it is identical to ``fix``.

        Raises:
            InjectionError: Invalid CSS, or every strategy failed
            SessionError: The session went away mid-injection
        """
        validate_css(fix.css)

        identical = self.find_identical(fix)
        if identical is not None:
            logger.info(f"{identical.fix_id} already applies {fix.id} on {fix.selector}, keeping it")
            return identical

        existing = self._active.get((fix.fix_type, fix.selector))
        if existing is not None:
            logger.info(f"Replacing {existing} with {fix.id} on {fix.selector}")
            await self.remove(existing)

        record = InjectionRecord(
            fix_id=fix.id, fix_type=fix.fix_type, selector=fix.selector, css=fix.css, attributes=fix.attributes
        )

        if fix.css.strip():
            await self._inject_css(fix, record)

        for name, value in fix.attributes:
            try:
                previous = await self._channel.set_attribute(fix.selector, name, value)
            except SessionError:
                raise
            except Exception as e:
                error = classify_injection_error(e)
                logger.warning(f"Setting {name} on {fix.selector} failed ({error.code}), undoing {fix.id}")
                await self._undo(record)
                raise error from e
            record.previous_attributes.append((name, previous))

        self._records[fix.id] = record
        self._active[(fix.fix_type, fix.selector)] = fix.id
        strategy = record.strategy.value if record.strategy else "attributes"
        logger.info(f"Injected {fix.id} on {fix.selector} via {strategy}")
        return record

    async def _inject_css(self, fix: CSSFixSolution, record: InjectionRecord) -> None:
        last_error: Optional[InjectionError] = None
        for strategy in self.strategies:
            try:
                await self._apply(strategy, fix, record)
                record.strategy = strategy
                return
            except SessionError:
                raise
            except Exception as e:
                last_error = classify_injection_error(e)
                record.fallback_errors.append(f"{strategy.value}: {last_error}")
                logger.warning(f"Strategy {strategy.value} failed for {fix.id} ({last_error.code}), trying next")
        raise InjectionError(
            last_error.code if last_error else "UNKNOWN",
            f"All strategies failed for {fix.id}: {'; '.join(record.fallback_errors)}",
        )

    async def _apply(self, strategy: InjectionStrategy, fix: CSSFixSolution, record: InjectionRecord) -> None:
        if strategy == InjectionStrategy.STYLESHEET:
            record.handle = await self._channel.add_style_sheet(fix.css)
        elif strategy == InjectionStrategy.RULE:
            record.handle = await self._channel.insert_rules(fix.id, split_rules(fix.css))
        else:
            declarations = {}
            for rule in split_rules(fix.css):
                if rule_selector(rule) != fix.selector:
                    raise InjectionError("INVALID_CSS", f"Inline styles cannot express {rule_selector(rule)!r}")
                for name, value in parse_declarations(rule).items():
                    declarations[name] = value.removesuffix("!important").strip()
            record.previous_inline = await self._channel.set_inline_style(fix.selector, declarations)

    async def remove(self, fix_id: str) -> None:
        """
        Take a fix off the page: styles first, then attributes in reverse.

        Removing an unknown fix is a no-op. If any step fails the record is
        kept so the remaining state can be inspected or removed later.
        """
        record = self._records.get(fix_id)
        if record is None:
            return
        await self._undo(record)
        del self._records[fix_id]
        if self._active.get((record.fix_type, record.selector)) == fix_id:
            del self._active[(record.fix_type, record.selector)]
        logger.info(f"Removed {fix_id} from {record.selector}")

    async def _undo(self, record: InjectionRecord) -> None:
        if record.strategy == InjectionStrategy.STYLESHEET:
            await self._channel.remove_style_sheet(record.handle)
        elif record.strategy == InjectionStrategy.RULE:
            await self._channel.remove_rules(record.handle)
        elif record.strategy == InjectionStrategy.INLINE:
            await self._channel.restore_inline_style(record.selector, record.previous_inline)
        record.strategy = None
        record.handle = None

        while record.previous_attributes:
            name, previous = record.previous_attributes[-1]
            if previous is None:
                await self._channel.remove_attribute(record.selector, name)
            else:
                await self._channel.set_attribute(record.selector, name, previous)
            record.previous_attributes.pop()

