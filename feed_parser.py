#!/usr/bin/env python3
"""
Feed parsing on top of feedparser.

``parse_feed`` turns a downloaded RSS/Atom document into a ``ParsedFeed`` of
``FeedEntry`` objects exposing the handful of fields the engine stores, and
custom element specifiers (``tag``, ``ns:tag``, ``tag@attr``) let operators
pull extra per-item values out of the raw entries.
"""

from calendar import timegm
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from hashlib import md5
from typing import Any, Iterable, List, Optional

import feedparser

from config import config, get_logger
from errors import FeedParseError
from telemetry import trace_span

logger = get_logger("feed_parser")

# Language codes written right to left
RTL_LANGUAGES = {'ar', 'arc', 'ckb', 'dv', 'fa', 'ha', 'he', 'iw', 'khw', 'ks', 'ku', 'ps', 'sd', 'ur', 'yi'}

# feedparser stores some well-known elements under a different key
FEEDPARSER_ALIASES = {
    'dc_creator': 'author',
    'dc_date': 'updated',
    'pubdate': 'published',
    'description': 'summary',
    'guid': 'id',
    'content_encoded': 'content',
    'category': 'tags',
    'enclosure': 'enclosures',
}

DATE_FIELDS = ('published', 'updated', 'created', 'issued', 'modified', 'date')


class ElementKind(Enum):
    ELEMENT = 'element'
    NAMESPACED = 'namespaced'
    ATTRIBUTE = 'attribute'


@dataclass(frozen=True)
class ElementSpec:
    """A custom element specifier such as ``media:thumbnail@url``.

    ``text`` is the specifier as written by the operator and is used as the
    property name the extracted value is stored under.
    """

    kind: ElementKind
    name: str
    namespace: Optional[str] = None
    attribute: Optional[str] = None
    text: str = ''

    @property
    def key(self) -> str:
        """The key feedparser uses for this element in an entry."""
        raw = f"{self.namespace}_{self.name}" if self.namespace else self.name
        raw = raw.lower()
        return FEEDPARSER_ALIASES.get(raw, raw)


def parse_element_spec(text: str) -> ElementSpec:
    """Parse one specifier line.

    Raises:
        ValueError: if the element name or attribute name is empty.
    """
    spec_text = (text or '').strip()
    element, sep, attribute = spec_text.partition('@')
    if sep and not attribute.strip():
        raise ValueError(f"Custom element '{spec_text}' has an empty attribute name")
    namespace, colon, name = element.partition(':')
    if not colon:
        namespace, name = None, element
    name = name.strip()
    if not name or (colon and not namespace.strip()):
        raise ValueError(f"Custom element '{spec_text}' has an empty element name")

    if sep:
        kind = ElementKind.ATTRIBUTE
    elif colon:
        kind = ElementKind.NAMESPACED
    else:
        kind = ElementKind.ELEMENT
    return ElementSpec(
        kind=kind,
        name=name,
        namespace=namespace.strip() if namespace else None,
        attribute=attribute.strip() if sep else None,
        text=spec_text,
    )


def parse_element_specs(lines: Iterable[str]) -> List[ElementSpec]:
    """Parse operator specifier lines, skipping blanks and malformed entries."""
    specs = []
    for line in lines or []:
        if not line or not line.strip():
            continue
        try:
            specs.append(parse_element_spec(line))
        except ValueError as e:
            logger.warning(f"Ignoring custom element: {e}")
    return specs


def _struct_to_datetime(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(timegm(tuple(value)[:9]), tz=timezone.utc)
    except (OverflowError, ValueError, OSError, TypeError):
        return None


def _string_to_datetime(value: str) -> Optional[datetime]:
    parsed = feedparser.datetimes._parse_date(value)
    if parsed:
        return _struct_to_datetime(parsed)
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_entry_date(entry) -> Optional[datetime]:
    """Return the entry's publication date as an aware UTC datetime, or None."""
    for name in DATE_FIELDS:
        parsed = entry.get(f"{name}_parsed")
        if parsed:
            dt = _struct_to_datetime(parsed)
            if dt:
                return dt
    for name in DATE_FIELDS:
        value = entry.get(name)
        if isinstance(value, str) and value.strip():
            dt = _string_to_datetime(value.strip())
            if dt:
                return dt
    return None


def _first_text(value: Any) -> Optional[str]:
    """Reduce a feedparser value (str, detail dict or list) to its element text.

    Attribute-only values such as ``href`` are left to ``tag@attr`` specifiers.
    """
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = next((value[key] for key in ('value', 'title', 'term', 'label') if value.get(key)), None)
    if value in (None, ''):
        return None
    return str(value)


@dataclass
class FeedEntry:
    """The fields of one feed entry the engine cares about."""

    id: str
    title: str = ''
    link: str = ''
    language: str = ''
    author: str = ''
    published: Optional[datetime] = None
    content: str = ''
    summary: str = ''
    enclosure_url: str = ''
    enclosure_type: str = ''
    rtl: bool = False
    raw: Any = field(default=None, repr=False)

    @classmethod
    def from_feedparser(cls, entry, feed_language: str = '') -> "FeedEntry":
        title = entry.get('title', '') or ''
        link = entry.get('link', '') or ''
        entry_id = entry.get('id') or ''
        if not entry_id and (link or title):
            entry_id = md5(f"{link}{title}".encode('utf-8')).hexdigest()

        content = ''
        language = ''
        if entry.get('content'):
            first = entry['content'][0]
            content = first.get('value', '') or ''
            language = first.get('language') or ''
        summary = entry.get('summary', '') or ''
        if not language:
            language = (entry.get('summary_detail') or {}).get('language') or feed_language or ''

        enclosure_url = ''
        enclosure_type = ''
        for enclosure in entry.get('enclosures') or []:
            if enclosure.get('href'):
                enclosure_url = enclosure['href']
                enclosure_type = enclosure.get('type', '') or ''
                break

        return cls(
            id=entry_id,
            title=title,
            link=link,
            language=language,
            author=entry.get('author', '') or '',
            published=parse_entry_date(entry),
            content=content,
            summary=summary,
            enclosure_url=enclosure_url,
            enclosure_type=enclosure_type,
            rtl=language.split('-')[0].lower() in RTL_LANGUAGES if language else False,
            raw=entry,
        )

    def effective_content(self, use_summary: bool) -> str:
        """Pick the text stored as the item's content.

        With ``use_summary`` the summary (RSS description / Atom summary) wins
        when present; otherwise the full content is used, falling back to the
        summary when the entry has no content element.
        """
        if use_summary and self.summary:
            return self.summary
        return self.content or self.summary

    def values(self, spec: ElementSpec) -> List[str]:
        """All values the entry holds for a custom element specifier."""
        if self.raw is None:
            return []
        value = self.raw.get(spec.key)
        if value in (None, '', []):
            return []
        candidates = value if isinstance(value, list) else [value]

        if spec.kind == ElementKind.ATTRIBUTE:
            found = []
            for candidate in candidates:
                if isinstance(candidate, dict) and candidate.get(spec.attribute) not in (None, ''):
                    found.append(str(candidate[spec.attribute]))
            return found

        found = []
        for candidate in candidates:
            text = _first_text(candidate)
            if text is not None:
                found.append(text)
        return found

    def value(self, spec: ElementSpec) -> Optional[str]:
        found = self.values(spec)
        return found[0] if found else None


@dataclass
class ParsedFeed:
    title: str = ''
    link: str = ''
    language: str = ''
    version: str = ''
    entries: List[FeedEntry] = field(default_factory=list)


@trace_span(
    "parse_feed",
    tracer_name="feed_parser",
    attr_from_args=lambda body, encoding=None, content_type=None, url=None: {
        "feed.url": url or '',
        "feed.bytes": len(body or b''),
    },
)
def parse_feed(body, encoding: Optional[str] = None, content_type: Optional[str] = None,
               url: Optional[str] = None) -> ParsedFeed:
    """Parse an RSS/Atom document.

    Raises:
        FeedParseError: when the document is malformed and yields no entries,
            or is not recognisable as a feed at all.
    """
    headers = {}
    if content_type or encoding:
        media_type = content_type or 'application/xml'
        headers['content-type'] = f"{media_type}; charset={encoding}" if encoding else media_type
    if url:
        headers['content-location'] = url

    parsed = feedparser.parse(
        body,
        response_headers=headers or None,
        sanitize_html=config.CONTENT_FILTERING,
    )

    if not parsed.entries and (parsed.get('bozo') or not parsed.get('version')):
        reason = parsed.get('bozo_exception') or 'not an RSS or Atom document'
        raise FeedParseError(f"Unable to parse feed {url}: {reason}" if url else f"Unable to parse feed: {reason}")
    if parsed.get('bozo'):
        logger.debug(f"Feed {url} is not well formed ({parsed.get('bozo_exception')}), using recovered entries")

    channel = parsed.get('feed', {})
    feed_language = channel.get('language', '') or ''
    return ParsedFeed(
        title=channel.get('title', '') or '',
        link=channel.get('link', '') or '',
        language=feed_language,
        version=parsed.get('version', '') or '',
        entries=[FeedEntry.from_feedparser(entry, feed_language) for entry in parsed.entries],
    )
