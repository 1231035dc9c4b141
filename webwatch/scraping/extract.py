"""
Content extraction for scraping jobs.

Two grammars are supported:
  - CSS selectors (soupsieve, matched against a BeautifulSoup/html5lib tree)
  - Regular expressions (stdlib `re`), capture group 1 if the pattern has one

Both return items in document order with empty entries dropped. Zero
matches is a valid (successful) result; only a malformed selector is an error.
"""

from __future__ import annotations

import logging
import re

import soupsieve
from bs4 import BeautifulSoup, Tag

from .models import AttributeData, DataKind, SelectorKind, TextData

log = logging.getLogger(__name__)


class SelectorCompileError(ValueError):
    """Raised when a CSS selector cannot be compiled."""

    def __init__(self, selector: str, reason: str):
        super().__init__(f"Invalid CSS selector {selector!r}: {reason}")
        self.selector = selector
        self.reason = reason


class RegexCompileError(SelectorCompileError):
    """Raised when a regular expression cannot be compiled."""

    def __init__(self, pattern: str, reason: str):
        ValueError.__init__(self, f"Invalid regex pattern {pattern!r}: {reason}")
        self.selector = pattern
        self.reason = reason


# ---- Public API -------------------------------------------------------------


def extract(content: str, selector_kind: SelectorKind, selector: str, data_kind: DataKind) -> list[str]:
    """Dispatch to the CSS or regex path according to `selector_kind`."""
    if selector_kind is SelectorKind.CSS:
        return extract_css(content, selector, data_kind)
    if selector_kind is SelectorKind.REGEX:
        return extract_regex(content, selector)
    raise TypeError(f"unsupported selector kind: {selector_kind!r}")


def compile_css(selector: str) -> soupsieve.SoupSieve:
    if not selector or not selector.strip():
        raise SelectorCompileError(selector, "selector is empty")
    try:
        return soupsieve.compile(selector)
    except soupsieve.SelectorSyntaxError as e:
        raise SelectorCompileError(selector, str(e).splitlines()[0]) from e


def compile_regex(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise RegexCompileError(pattern, str(e)) from e


def extract_css(html: str, selector: str, data_kind: DataKind) -> list[str]:
    compiled = compile_css(selector)
    soup = BeautifulSoup(html, "html5lib")

    results: list[str] = []
    for el in compiled.select(soup):
        value = _element_value(el, data_kind)
        if value:
            results.append(value)

    if results:
        log.info("Found %d item(s) with CSS selector %r", len(results), selector)
    else:
        log.warning("No data found with CSS selector %r", selector)
    return results


def extract_regex(text: str, pattern: str) -> list[str]:
    regex = compile_regex(pattern)
    use_group = regex.groups > 0

    results: list[str] = []
    for m in regex.finditer(text):
        value = (m.group(1) or "") if use_group else m.group(0)
        if value:
            results.append(value)

    if results:
        log.info("Found %d item(s) with regex pattern %r", len(results), pattern)
    else:
        log.warning("No data found with regex pattern %r", pattern)
    return results


def validate_css_selector(selector: str) -> bool:
    """Return True or raise SelectorCompileError."""
    compile_css(selector)
    return True


def validate_regex_pattern(pattern: str) -> bool:
    """Return True or raise RegexCompileError."""
    compile_regex(pattern)
    return True


# ---- Internal helpers -------------------------------------------------------


def _element_value(el: Tag, data_kind: DataKind) -> str:
    if isinstance(data_kind, TextData):
        return el.get_text(separator=" ").strip()
    if isinstance(data_kind, AttributeData):
        raw = el.get(data_kind.name)
        if raw is None:
            return ""
        # bs4 returns multi-valued attributes (class, rel, ...) as lists
        if isinstance(raw, list):
            return " ".join(raw)
        return str(raw)
    raise TypeError(f"unsupported data kind: {data_kind!r}")
