#!/usr/bin/env python3
"""
Rendering of selected feed items into campaign content.

Applies the item template to each selected item, builds a table of contents,
derives plain text versions and rewrites the campaign subject. The output is
a ``RenderResult`` the caller passes to ``substitute`` for each outgoing
message body.
"""

import re
from dataclasses import dataclass, field
from html import escape
from typing import Any, Dict, List, Mapping, Optional

from config import config, get_logger
from selector import LATEST_FIRST, OLDEST_FIRST
from utils import format_timestamp, html_to_text, resolve_timezone

logger = get_logger("renderer")

ANCHOR_TEMPLATE = '<a name="item_{index}"></a>'
TOC_ITEM_TEMPLATE = '<li><a href="#item_{index}">{title}</a></li>'


@dataclass
class RenderResult:
    html: str = ''
    text: str = ''
    toc: str = ''
    toc_text: str = ''
    subject: str = ''
    items: List[Dict[str, Any]] = field(default_factory=list)
    warning: str = ''


def replace_placeholders(template: str, values: Mapping[str, Any]) -> str:
    """Replace each ``[KEY]`` in template, ignoring case, by its value."""
    for key, value in values.items():
        replacement = '' if value is None else str(value)
        template = re.sub(re.escape(f"[{key}]"), lambda _m: replacement, template, flags=re.IGNORECASE)
    return template


def render_items(items: List[Dict[str, Any]], template: Optional[str] = None,
                 date_format: Optional[str] = None, tz=None) -> Dict[str, str]:
    """Render items in the given order.

    Returns:
        A dict with ``html`` and ``toc`` keys.
    """
    item_template = template if template and template.strip() else config.ITEM_HTML_TEMPLATE
    date_format = date_format or config.DATE_FORMAT
    tz = tz or resolve_timezone(config.DISPLAY_TIMEZONE)

    html_parts = []
    toc_parts = []
    for index, item in enumerate(items):
        title = escape(item.get('title') or '')
        values = {
            'published': format_timestamp(item.get('published'), date_format, tz),
            'title': title,
        }
        for key, value in item.items():
            values.setdefault(key, value)
        html_parts.append(ANCHOR_TEMPLATE.format(index=index))
        html_parts.append(replace_placeholders(item_template, values))
        toc_parts.append(TOC_ITEM_TEMPLATE.format(index=index, title=title))

    return {
        'html': ''.join(html_parts),
        'toc': f"<ul>{''.join(toc_parts)}</ul>",
    }


def new_subject(subject: str, items: List[Dict[str, Any]], suffix: Optional[str] = None) -> str:
    """Fill the subject placeholders from chronologically ordered items.

    ``[RSSITEM:TITLE]`` becomes the title of the newest (last) item, with the
    suffix appended when there is more than one item.
    """
    size = len(items)
    suffix = config.SUBJECT_SUFFIX if suffix is None else suffix
    if size == 0:
        title = 'No title'
    else:
        title = items[-1].get('title') or ''
        if size > 1 and suffix:
            title += suffix
    return replace_placeholders(
        subject or '',
        {'RSSITEM:TITLE': title, 'RSS:N': size, 'RSS:N-1': size - 1},
    )


def render_campaign(campaign: Dict[str, Any], items: List[Dict[str, Any]], warning: str = '') -> RenderResult:
    """Render the selected items of a campaign.

    ``items`` are in display order as returned by the selector.
    """
    rendered = render_items(items, campaign.get('rss_template') or '')
    chronological = list(items)
    if int(campaign.get('rss_order') or OLDEST_FIRST) == LATEST_FIRST:
        chronological.reverse()

    result = RenderResult(
        html=rendered['html'],
        text=html_to_text(rendered['html']),
        toc=rendered['toc'],
        toc_text=html_to_text(rendered['toc']),
        subject=new_subject(campaign.get('subject') or '', chronological),
        items=list(items),
        warning=warning,
    )
    logger.debug(f"Rendered {len(items)} items for campaign {campaign.get('id')}")
    return result


def substitute(content: str, result: Optional[RenderResult], text: bool = False) -> str:
    """Replace ``[RSS]`` and ``[RSS:TOC]`` in an outgoing message body."""
    if result is None:
        return content
    if text:
        return replace_placeholders(content, {'RSS': result.text, 'RSS:TOC': result.toc_text})
    return replace_placeholders(content, {'RSS': result.html, 'RSS:TOC': result.toc})
