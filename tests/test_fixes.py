from __future__ import annotations

import pytest

from a11y_bot.errors import InjectionError
from a11y_bot.perception.color import contrast_ratio, parse_color
from a11y_bot.remediation.fixes import CSSFixGenerator, parse_declarations, split_rules, validate_css
from a11y_bot.remediation.models import (
    AccessibilityIssue,
    ElementContext,
    FixType,
    IssueType,
    PageTheme,
    Severity,
    TaskPriority,
)


def context(selector="#save", tag="button", **kwargs) -> ElementContext:
    return ElementContext(selector=selector, tag=tag, **kwargs)


def issue(issue_type: IssueType, selector="#save", **evidence) -> AccessibilityIssue:
    return AccessibilityIssue(issue_type, Severity.MAJOR, selector, "", (), evidence)


class TestFocusFix:
    def test_outline_rule(self):
        fix = CSSFixGenerator().focus_fix(context())

        assert fix.fix_type == FixType.FOCUS_VISIBLE
        assert "#save:focus,\n#save:focus-visible {" in fix.css
        assert "outline: 2px solid #005fcc !important;" in fix.css
        assert "outline-offset: 2px !important;" in fix.css
        assert fix.wcag_criteria == ("2.4.7",)
        assert fix.confidence == 0.9
        assert fix.priority == TaskPriority.HIGH

    def test_existing_outline_is_thickened(self):
        ctx = context(computed_style={"outline-style": "solid", "outline-width": "2px"})
        fix = CSSFixGenerator().focus_fix(ctx)

        assert "outline: 3px solid" in fix.css
        assert fix.confidence == 0.95

    def test_colour_contrasts_with_the_background(self):
        ctx = context(computed_style={"background-color": "rgb(0, 95, 204)"})
        fix = CSSFixGenerator().focus_fix(ctx)

        # Blue on blue is invisible; the generator moves on to the next candidate
        assert "#005fcc" not in fix.css
        assert fix.confidence == pytest.approx(0.8)

    def test_dark_theme(self):
        ctx = context(theme=PageTheme(background="#000000", foreground="#ffffff", dark=True))
        fix = CSSFixGenerator().focus_fix(ctx)

        color = fix.css.split("solid ")[1].split(" ")[0]
        assert contrast_ratio(parse_color(color), parse_color("#000000")) >= 3

    @pytest.mark.parametrize("ctx,priority", [
        (context(tag="div", in_navigation=True), TaskPriority.HIGH),
        (context(tag="input"), TaskPriority.MEDIUM),
        (context(tag="div"), TaskPriority.LOW),
    ])
    def test_priority(self, ctx, priority):
        assert CSSFixGenerator().focus_fix(ctx).priority == priority

    def test_fix_is_valid_css(self):
        validate_css(CSSFixGenerator().focus_fix(context()).css)


class TestContrastFix:
    def test_darkens_text(self):
        fix = CSSFixGenerator().contrast_fix(context(), current=2.32, target=4.5,
                                             foreground="#aaaaaa", background="#ffffff")

        color = parse_declarations(fix.css)["color"].removesuffix("!important").strip()
        assert contrast_ratio(parse_color(color), parse_color("#ffffff")) >= 4.5
        assert fix.target_ratio == 4.5
        assert fix.description == "Improve color contrast from 2.3:1 to 4.5:1"
        assert fix.priority == TaskPriority.HIGH
        assert fix.confidence == 0.7

    def test_falls_back_to_background(self):
        # Even black text on this grey stays under 7:1, but a lighter background gets there
        fix = CSSFixGenerator().contrast_fix(context(), current=1.89, target=7.0,
                                             foreground="#555555", background="#808080")

        declarations = parse_declarations(fix.css)
        assert "background-color" in declarations
        assert "color" not in declarations

    def test_generate_reads_issue_evidence(self):
        found = issue(IssueType.LOW_CONTRAST, current=3.5, target=4.5, foreground="#888888", background="#ffffff")
        fixes = CSSFixGenerator().generate(found, context())

        assert [f.fix_type for f in fixes] == [FixType.COLOR_CONTRAST]
        assert fixes[0].confidence == 0.8
        assert fixes[0].priority == TaskPriority.MEDIUM


class TestKeyboardFix:
    def test_div_gets_tabindex_and_role(self):
        fix = CSSFixGenerator().keyboard_fix(context("#menu", "div", tab_index=-1, text="Menu"))

        assert fix.css == ""
        assert fix.attributes == (("tabindex", "0"), ("role", "button"))
        assert fix.confidence == 0.8
        assert fix.wcag_criteria == ("2.1.1", "2.4.3")

    def test_existing_role_is_kept(self):
        fix = CSSFixGenerator().keyboard_fix(context("#tab", "span", tab_index=-1, role="tab"))

        assert fix.attributes == (("tabindex", "0"),)
        assert fix.confidence == 0.8

    def test_nothing_to_do(self):
        assert CSSFixGenerator().keyboard_fix(context(tab_index=0)) is None


class TestAccessibleNameFix:
    def test_label_from_placeholder(self):
        fix = CSSFixGenerator().accessible_name_fix(context("#email", "input", attributes={"placeholder": "Email"}))

        assert fix.attributes == (("aria-label", "Email"),)
        assert fix.confidence == 0.6

    def test_title_wins(self):
        ctx = context(attributes={"title": "Close dialog", "name": "close"})
        fix = CSSFixGenerator().accessible_name_fix(ctx)

        assert fix.attributes == (("aria-label", "Close dialog"),)
        assert fix.confidence == 0.7

    def test_no_source_means_no_fix(self):
        assert CSSFixGenerator().generate(issue(IssueType.MISSING_LABEL), context()) == []


class TestCssHelpers:
    def test_split_rules(self):
        rules = split_rules("a:focus { outline: 0 } b { color: red; }")
        assert rules == ["a:focus { outline: 0 }", "b { color: red; }"]

    @pytest.mark.parametrize("css", [
        "#a { color: red;",
        "#a { color: red;; }",
        "#a { #b { color: red } }",
        "{ color: red }",
        "#a { }",
        "color: red",
    ])
    def test_invalid_css(self, css):
        with pytest.raises(InjectionError) as exc:
            validate_css(css)
        assert exc.value.code == "INVALID_CSS"
        assert not exc.value.retryable

    def test_empty_css_is_allowed(self):
        validate_css("")
