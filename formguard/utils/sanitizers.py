"""
String and HTML Sanitization Utilities

This module provides the two text sanitizers of the formguard engine. StringSanitizer reduces
untrusted input to inert plain text, HtmlSanitizer keeps a small allow-list of formatting tags
for rich content fields and removes everything else. The final allow-list pass of the HTML
sanitizer is delegated to bleach 6.0+.

Features:
- Tag stripping with script and style block removal
- Dangerous URI scheme removal tolerant of case variation and whitespace around the colon
- Inline event handler removal
- Neutralization of HTML entities that could rebuild markup
- Zero-width character removal
- Allow-list HTML cleaning with every attribute dropped
- Field-name routing between plain text and HTML sanitization

Plain text sanitization is applied until the output no longer changes, so that a removal can
never reassemble a dangerous construct from the surrounding text.

The sanitizer classes raise SanitizationError for values without a text form. The module level
sanitize_string and sanitize_html return an empty string instead, and
formguard.utils.validators.sanitize_input reports the failure as an invalid result.
"""

import re
from typing import Any, FrozenSet, Pattern

import bleach
import structlog

from formguard.monitoring.metrics import sanitization_counter
from formguard.utils.exceptions import SanitizationError

logger = structlog.get_logger(__name__)


DANGEROUS_PROTOCOLS = (
    'chrome-extension',
    'moz-extension',
    'ms-browser-extension',
    'javascript',
    'vbscript',
    'livescript',
    'chrome',
    'about',
    'mocha',
    'data',
    'file',
)

DANGEROUS_TAGS = (
    'script', 'iframe', 'object', 'embed', 'form', 'input', 'textarea', 'select', 'button',
    'link', 'meta', 'style', 'base', 'applet', 'body', 'html', 'head', 'title', 'frame',
    'frameset', 'noframes', 'noscript', 'xml', 'import', 'template',
)

ALLOWED_HTML_TAGS: FrozenSet[str] = frozenset({
    'p', 'br', 'strong', 'em', 'u', 'i', 'b', 'ul', 'ol', 'li',
    'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
})

HTML_ALLOWED_FIELD_MARKERS = ('content', 'description', 'headline', 'sectioncontent')

# Entities that could rebuild markup once decoded; angle brackets are dropped, not decoded
ENTITY_REPLACEMENTS = {
    '&lt;': '',
    '&gt;': '',
    '&quot;': '"',
    '&#x27;': "'",
    '&#x2f;': '/',
    '&#x5c;': '\\',
    '&#96;': '`',
}

_PROTOCOL_ALTERNATION = '|'.join(re.escape(protocol) for protocol in DANGEROUS_PROTOCOLS)

SCRIPT_STYLE_BLOCK_PATTERN = re.compile(
    r'<\s*(script|style)\b[^>]*>.*?<\s*/\s*\1\s*>', re.IGNORECASE | re.DOTALL
)
TAG_PATTERN = re.compile(r'<[^>]*>')
PROTOCOL_PATTERN = re.compile(rf'(?:{_PROTOCOL_ALTERNATION})\s*:\s*', re.IGNORECASE)
EVENT_HANDLER_PATTERN = re.compile(r'\s*on\w+\s*=', re.IGNORECASE)
ENTITY_PATTERN = re.compile(
    '|'.join(re.escape(entity) for entity in ENTITY_REPLACEMENTS), re.IGNORECASE
)
ZERO_WIDTH_PATTERN = re.compile('[\u200B-\u200D\uFEFF]')

DANGEROUS_TAG_PATTERN = re.compile(
    r'<\s*/?\s*(?:' + '|'.join(DANGEROUS_TAGS) + r')\b[^>]*>', re.IGNORECASE
)
ATTRIBUTE_PROTOCOL_PATTERN = re.compile(
    rf'(?:{_PROTOCOL_ALTERNATION})\s*:[^\s"\'>]*', re.IGNORECASE
)
EVENT_HANDLER_ATTRIBUTE_PATTERN = re.compile(
    r'\s*on\w+\s*=\s*(?:"[^"]*"|\'[^\']*\'|[^\s>]*)', re.IGNORECASE
)
STYLE_ATTRIBUTE_PATTERN = re.compile(r'\s*style\s*=\s*["\'][^"\']*["\']', re.IGNORECASE)
SCRIPT_BLOCK_PATTERN = re.compile(
    r'<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>', re.IGNORECASE
)
COMMENT_PATTERN = re.compile(r'<!--.*?-->', re.DOTALL)
CDATA_PATTERN = re.compile(r'<!\[CDATA\[.*?\]\]>', re.DOTALL)


def _replace_entity(match: 're.Match[str]') -> str:
    return ENTITY_REPLACEMENTS[match.group(0).lower()]


def _remove_until_stable(text: str, *patterns: Pattern[str]) -> str:
    previous = None
    while previous != text:
        previous = text
        for pattern in patterns:
            text = pattern.sub('', text)
    return text


def coerce_to_text(value: Any) -> str:
    """
    Convert an arbitrary value to text for sanitization.

    Raises:
        SanitizationError: When the value cannot be converted to a string
    """
    if value is None:
        return ''
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    try:
        return str(value)
    except Exception as e:
        raise SanitizationError(
            "Failed to sanitize input",
            details={'value_type': type(value).__name__, 'reason': str(e)}
        )


class StringSanitizer:
    """
    Plain text sanitizer removing every construct that could execute in a browser.

    Each pass strips script and style blocks, tags, dangerous URI schemes, inline event
    handlers, markup-rebuilding entities and zero-width characters, then trims the result.
    Passes repeat until the text is stable, which makes ``sanitize`` idempotent.
    """

    def _single_pass(self, text: str) -> str:
        text = SCRIPT_STYLE_BLOCK_PATTERN.sub('', text)
        text = TAG_PATTERN.sub('', text)
        text = PROTOCOL_PATTERN.sub('', text)
        text = EVENT_HANDLER_PATTERN.sub('', text)
        text = ENTITY_PATTERN.sub(_replace_entity, text)
        text = ZERO_WIDTH_PATTERN.sub('', text)
        return text.strip()

    def sanitize(self, value: Any) -> str:
        """
        Sanitize an untrusted value into plain text.

        Args:
            value: Untrusted input; ``None`` yields an empty string and other
                non-string values are converted with ``str()`` first

        Returns:
            Sanitized text, possibly empty

        Raises:
            SanitizationError: When the value cannot be converted to a string
        """
        original = coerce_to_text(value)

        # Every pass either leaves the text unchanged or makes it strictly shorter
        text = original
        previous = None
        while previous != text:
            previous = text
            text = self._single_pass(text)

        sanitization_counter.labels(
            sanitizer='string',
            result='modified' if text != original else 'clean'
        ).inc()
        return text


class HtmlSanitizer:
    """
    Allow-list HTML sanitizer for content fields that may keep basic formatting.

    Dangerous elements, attributes and schemes are removed with targeted patterns first,
    then bleach rewrites the remaining markup so that only ``ALLOWED_HTML_TAGS`` survive
    and no tag keeps any attribute.
    """

    def __init__(self, allowed_tags: FrozenSet[str] = ALLOWED_HTML_TAGS):
        self.allowed_tags = frozenset(allowed_tags)

    def sanitize(self, value: Any) -> str:
        """
        Sanitize untrusted HTML, keeping only allow-listed formatting tags.

        Args:
            value: Untrusted HTML input

        Returns:
            HTML containing only bare allow-listed tags

        Raises:
            SanitizationError: When the value cannot be converted to a string
        """
        original = coerce_to_text(value)

        html = SCRIPT_STYLE_BLOCK_PATTERN.sub('', original)
        html = DANGEROUS_TAG_PATTERN.sub('', html)
        html = ATTRIBUTE_PROTOCOL_PATTERN.sub('', html)
        html = EVENT_HANDLER_ATTRIBUTE_PATTERN.sub('', html)
        html = STYLE_ATTRIBUTE_PATTERN.sub('', html)
        html = SCRIPT_BLOCK_PATTERN.sub('', html)
        html = COMMENT_PATTERN.sub('', html)
        html = CDATA_PATTERN.sub('', html)

        html = bleach.clean(
            html,
            tags=self.allowed_tags,
            attributes={},
            protocols=[],
            strip=True,
            strip_comments=True
        )

        # Stripping disallowed tags or invisible characters can join text fragments
        # into a new scheme or handler
        html = ZERO_WIDTH_PATTERN.sub('', html)
        html = _remove_until_stable(html, PROTOCOL_PATTERN, EVENT_HANDLER_PATTERN).strip()

        if html != original:
            logger.debug(
                "HTML content modified by sanitization",
                input_length=len(original),
                output_length=len(html)
            )
        sanitization_counter.labels(
            sanitizer='html',
            result='modified' if html != original else 'clean'
        ).inc()
        return html


def is_html_allowed_field(field_name: str) -> bool:
    """Return True when a field with this name may keep allow-listed HTML."""
    name = str(field_name).lower()
    return any(marker in name for marker in HTML_ALLOWED_FIELD_MARKERS)


_string_sanitizer = StringSanitizer()
_html_sanitizer = HtmlSanitizer()


def sanitize_string(value: Any) -> str:
    """
    Convenience function for plain text sanitization.

    Args:
        value: Untrusted input

    Returns:
        Sanitized plain text, or an empty string when the value has no text form
    """
    try:
        return _string_sanitizer.sanitize(value)
    except SanitizationError:
        return ''


def sanitize_html(value: Any) -> str:
    """
    Convenience function for allow-list HTML sanitization.

    Args:
        value: Untrusted HTML input

    Returns:
        Sanitized HTML, or an empty string when the value has no text form
    """
    try:
        return _html_sanitizer.sanitize(value)
    except SanitizationError:
        return ''


__all__ = [
    'DANGEROUS_PROTOCOLS',
    'DANGEROUS_TAGS',
    'ALLOWED_HTML_TAGS',
    'HTML_ALLOWED_FIELD_MARKERS',
    'StringSanitizer',
    'HtmlSanitizer',
    'coerce_to_text',
    'is_html_allowed_field',
    'sanitize_string',
    'sanitize_html'
]
