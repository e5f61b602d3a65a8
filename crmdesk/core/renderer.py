"""
Markdown to HTML rendering for report previews.

A line-oriented renderer covering headings, paragraphs, lists, blockquotes,
fenced code, pipe tables, rules and a handful of inline spans. It is not
CommonMark; output goes into a sandboxed preview frame.
"""

import logging
import re
from enum import Enum
from typing import List, Optional

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r'^\s*```')
BLANK_PATTERN = re.compile(r'^\s*$')
HEADING_PATTERN = re.compile(r'^(#{1,6})\s+(.*)$')
RULE_PATTERN = re.compile(r'^(\*(?:\s*\*){2,}|-{3,}|_{3,})\s*$')
BLOCKQUOTE_PATTERN = re.compile(r'^\s*>\s?(.*)$')
# ASCII digits only
ORDERED_ITEM_PATTERN = re.compile(r'^\s*[0-9]+\.\s+(.*)$')
UNORDERED_ITEM_PATTERN = re.compile(r'^\s*[-*+]\s+(.*)$')
SEPARATOR_CELL_PATTERN = re.compile(r'^:?-+:?$')

# Tags are matched as a whole so URLs inside attributes are left alone
AUTOLINK_PATTERN = re.compile(r'(<[^>]*>)|(^|[\s(])(https?://[^\s)<"]+)')
AUTOLINK_TRAILING_CHARS = '.,:!?'
ESCAPED_ENTITIES = ('&amp;', '&lt;', '&gt;', '&quot;', '&#39;')
CODE_SPAN_PATTERN = re.compile(r'`([^`]+?)`')
BOLD_STAR_PATTERN = re.compile(r'\*\*([^*]+?)\*\*')
BOLD_UNDERSCORE_PATTERN = re.compile(r'__([^_]+?)__')

LINK_ATTRS = 'target="_blank" rel="noopener noreferrer"'

PREVIEW_STYLE = (
    'body{font-family:ui-sans-serif,system-ui,-apple-system,Segoe UI,Roboto,Helvetica,Arial,'
    '"Apple Color Emoji","Segoe UI Emoji";padding:16px;line-height:1.7;color:#111827;background:#fff;}'
    'h1,h2,h3,h4,h5,h6{margin:16px 0 10px;line-height:1.25;}'
    'p{margin:10px 0;}'
    'ul,ol{margin:10px 0 10px 24px;}'
    'li{margin:6px 0;}'
    'hr{border:none;border-top:1px solid #e5e7eb;margin:16px 0;}'
    'blockquote{margin:12px 0;padding:8px 12px;border-left:4px solid #e5e7eb;background:#f9fafb;'
    'color:#374151;border-radius:6px;}'
    'a{color:#2563eb;text-decoration:underline;}'
    'img{max-width:100%;height:auto;display:block;border-radius:8px;border:1px solid #e5e7eb;'
    'background:#fff;margin:10px 0;}'
    'table{width:100%;border-collapse:collapse;margin:12px 0;font-size:14px;}'
    'th,td{border:1px solid #e5e7eb;padding:8px 10px;vertical-align:top;}'
    'th{background:#f9fafb;font-weight:600;}'
    'tbody tr:nth-child(even){background:#fcfcfd;}'
    'code{font-family:ui-monospace,SFMono-Regular,Menlo,Monaco,Consolas,"Liberation Mono",'
    '"Courier New",monospace;font-size:.95em;background:#f3f4f6;border-radius:4px;padding:2px 6px;}'
    'pre{white-space:pre-wrap;word-break:break-word;background:#0b1220;color:#e5e7eb;'
    'border-radius:8px;padding:12px;overflow:auto;}'
    'pre code{background:transparent;padding:0;color:inherit;}'
)

DOCUMENT_TEMPLATE = (
    '<!doctype html><html><head><meta charset="utf-8" />'
    '<meta name="viewport" content="width=device-width,initial-scale=1" />'
    '<title>Template Preview</title><style>{style}</style></head><body>{body}</body></html>'
)


def escape_html(text: str) -> str:
    return (
        (text or '')
        .replace('&', '&amp;')
        .replace('<', '&lt;')
        .replace('>', '&gt;')
        .replace('"', '&quot;')
        .replace("'", '&#39;')
    )


def _resolve_url(raw: str) -> str:
    """First whitespace-delimited token of a link target, angle brackets removed."""
    url = (raw or '').strip()
    if url.startswith('&lt;') and url.endswith('&gt;'):
        url = url[4:-4].strip()
    elif url.startswith('<') and url.endswith('>'):
        url = url[1:-1].strip()
    parts = url.split()
    return parts[0] if parts else ''


def _replace_image(alt: str, raw_url: str) -> str:
    alt = alt.strip()
    url = _resolve_url(raw_url)
    if not url:
        return f'<span>{alt}</span>' if alt else ''
    return f'<img src="{url}" alt="{alt}" />'


def _replace_link(text: str, raw_url: str) -> str:
    text = text.strip()
    url = _resolve_url(raw_url)
    if not url:
        return text
    return f'<a href="{url}" {LINK_ATTRS}>{text}</a>'


def substitute_bracketed(value: str, opener: str, allow_empty_text: bool, replace) -> str:
    """
    Replace ``<opener>text](url)`` spans, left to right, without overlap.

    The text runs to the first ``]`` and the URL to the first ``)``, neither
    may contain its closing character. Closing positions are cached across
    start candidates, so a line full of unmatched openers is still scanned
    in linear time.
    """
    out = []
    consumed = 0
    close_bracket = close_paren = -1
    start = value.find(opener)
    while start >= 0:
        text_start = start + len(opener)
        if close_bracket < text_start:
            close_bracket = value.find(']', text_start)
            if close_bracket < 0:
                break
        text_ok = allow_empty_text or close_bracket > text_start
        url_start = close_bracket + 2
        if text_ok and value.startswith('(', close_bracket + 1):
            if close_paren < url_start:
                close_paren = value.find(')', url_start)
                if close_paren < 0:
                    break
            if close_paren > url_start:
                out.append(value[consumed:start])
                out.append(replace(value[text_start:close_bracket], value[url_start:close_paren]))
                consumed = close_paren + 1
                start = value.find(opener, consumed)
                continue
        start = value.find(opener, start + 1)
    out.append(value[consumed:])
    return ''.join(out)


def split_autolink_trailing(url: str):
    """Split sentence punctuation off the end of a bare URL; ``;`` closing an entity stays."""
    end = len(url)
    while end:
        char = url[end - 1]
        if char in AUTOLINK_TRAILING_CHARS:
            end -= 1
        elif char == ';' and not url.endswith(ESCAPED_ENTITIES, 0, end):
            end -= 1
        else:
            break
    return url[:end], url[end:]


def _replace_autolink(match) -> str:
    if match.group(1):
        return match.group(1)
    prefix = match.group(2)
    url, suffix = split_autolink_trailing(match.group(3))
    return f'{prefix}<a href="{url}" {LINK_ATTRS}>{url}</a>{suffix}'


def render_inline(escaped_text: str) -> str:
    """
    Apply inline spans to already-escaped text.
    Order matters: images, links, bare URLs, code spans, then bold.
    """
    value = escaped_text or ''
    value = substitute_bracketed(value, '![', True, _replace_image)
    value = substitute_bracketed(value, '[', False, _replace_link)
    value = AUTOLINK_PATTERN.sub(_replace_autolink, value)
    value = CODE_SPAN_PATTERN.sub(lambda m: f'<code>{m.group(1)}</code>', value)
    value = BOLD_STAR_PATTERN.sub(lambda m: f'<strong>{m.group(1)}</strong>', value)
    value = BOLD_UNDERSCORE_PATTERN.sub(lambda m: f'<strong>{m.group(1)}</strong>', value)
    return value


def _inline(text: str) -> str:
    return render_inline(escape_html(text))


def split_table_row(line: str) -> List[str]:
    trimmed = (line or '').strip()
    if trimmed.startswith('|'):
        trimmed = trimmed[1:]
    if trimmed.endswith('|'):
        trimmed = trimmed[:-1]
    return [cell.strip() for cell in trimmed.split('|')]


def is_table_separator(line: str) -> bool:
    trimmed = (line or '').strip()
    if not trimmed or '|' not in trimmed:
        return False
    cells = split_table_row(trimmed)
    if len(cells) < 2:
        return False
    return all(SEPARATOR_CELL_PATTERN.match(cell) for cell in cells)


def table_alignments(separator_line: str) -> List[str]:
    alignments = []
    for cell in split_table_row(separator_line):
        left = cell.startswith(':')
        right = cell.endswith(':')
        if left and right:
            alignments.append('center')
        elif right:
            alignments.append('right')
        elif left:
            alignments.append('left')
        else:
            alignments.append('')
    return alignments


class BlockMode(Enum):
    NORMAL = 'normal'
    CODE = 'code'
    LIST = 'list'
    BLOCKQUOTE = 'blockquote'


class _BlockRenderer:
    """
    One rendering pass over a document.
    Holds the output buffer and the currently open block; never reused.
    """

    def __init__(self, lines: List[str]):
        self.lines = lines
        self.html: List[str] = []
        self.mode = BlockMode.NORMAL
        self.list_tag: Optional[str] = None
        self.code_lines: List[str] = []

    def close_list(self):
        if self.mode == BlockMode.LIST:
            self.html.append(f'</{self.list_tag}>')
            self.list_tag = None
            self.mode = BlockMode.NORMAL

    def close_blockquote(self):
        if self.mode == BlockMode.BLOCKQUOTE:
            self.html.append('</blockquote>')
            self.mode = BlockMode.NORMAL

    def close_open_blocks(self):
        self.close_list()
        self.close_blockquote()

    def flush_code(self):
        if self.mode != BlockMode.CODE:
            return
        code = escape_html('\n'.join(self.code_lines))
        self.html.append(f'<pre><code>{code}</code></pre>')
        self.code_lines = []
        self.mode = BlockMode.NORMAL

    def render_table(self, index: int) -> int:
        """Emit the table starting at ``index``; return the index of its last consumed line."""
        header = split_table_row(self.lines[index])
        alignments = table_alignments(self.lines[index + 1])
        rows: List[List[str]] = []

        cursor = index + 2
        while cursor < len(self.lines):
            row_line = self.lines[cursor]
            if not row_line.strip() or '|' not in row_line:
                break
            rows.append(split_table_row(row_line))
            cursor += 1

        width = max([len(header), len(alignments)] + [len(row) for row in rows])
        header += [''] * (width - len(header))
        alignments += [''] * (width - len(alignments))
        for row in rows:
            row += [''] * (width - len(row))

        styles = [f' style="text-align:{align}"' if align else '' for align in alignments]

        self.html.append('<table><thead><tr>')
        for col in range(width):
            self.html.append(f'<th{styles[col]}>{_inline(header[col])}</th>')
        self.html.append('</tr></thead><tbody>')
        for row in rows:
            self.html.append('<tr>')
            for col in range(width):
                self.html.append(f'<td{styles[col]}>{_inline(row[col])}</td>')
            self.html.append('</tr>')
        self.html.append('</tbody></table>')

        # The line that stopped the scan is re-examined by the caller
        return cursor - 1

    def open_list(self, tag: str):
        self.close_blockquote()
        if self.mode != BlockMode.LIST or self.list_tag != tag:
            self.close_list()
            self.html.append(f'<{tag}>')
            self.list_tag = tag
            self.mode = BlockMode.LIST

    def run(self) -> str:
        index = 0
        total = len(self.lines)
        while index < total:
            line = self.lines[index]

            if self.mode == BlockMode.CODE:
                if FENCE_PATTERN.match(line):
                    self.flush_code()
                else:
                    self.code_lines.append(line)
                index += 1
                continue

            if FENCE_PATTERN.match(line):
                self.close_open_blocks()
                self.mode = BlockMode.CODE
                self.code_lines = []
                index += 1
                continue

            if BLANK_PATTERN.match(line):
                self.close_open_blocks()
                index += 1
                continue

            next_line = self.lines[index + 1] if index + 1 < total else ''
            if '|' in line.strip() and is_table_separator(next_line) and not BLOCKQUOTE_PATTERN.match(line):
                self.close_open_blocks()
                index = self.render_table(index) + 1
                continue

            heading = HEADING_PATTERN.match(line)
            if heading:
                self.close_open_blocks()
                level = len(heading.group(1))
                self.html.append(f'<h{level}>{_inline(heading.group(2))}</h{level}>')
                index += 1
                continue

            if RULE_PATTERN.match(line.strip()):
                self.close_open_blocks()
                self.html.append('<hr />')
                index += 1
                continue

            quote = BLOCKQUOTE_PATTERN.match(line)
            if quote:
                self.close_list()
                if self.mode != BlockMode.BLOCKQUOTE:
                    self.html.append('<blockquote>')
                    self.mode = BlockMode.BLOCKQUOTE
                self.html.append(f'<p>{_inline(quote.group(1))}</p>')
                index += 1
                continue

            ordered = ORDERED_ITEM_PATTERN.match(line)
            if ordered:
                self.open_list('ol')
                self.html.append(f'<li>{_inline(ordered.group(1))}</li>')
                index += 1
                continue

            unordered = UNORDERED_ITEM_PATTERN.match(line)
            if unordered:
                self.open_list('ul')
                self.html.append(f'<li>{_inline(unordered.group(1))}</li>')
                index += 1
                continue

            self.close_open_blocks()
            self.html.append(f'<p>{_inline(line)}</p>')
            index += 1

        # Unterminated fences still render
        self.flush_code()
        self.close_open_blocks()
        return '\n'.join(self.html)


def render_markdown(markdown: Optional[str]) -> str:
    """
    Render Markdown text to an HTML fragment.

    Never raises: anything that does not parse as a known block becomes a
    paragraph. Empty input gives empty output.
    """
    text = markdown or ''
    if not text:
        return ''
    lines = text.replace('\r\n', '\n').replace('\r', '\n').split('\n')
    logger.debug(f"Render markdown: {len(text)} chars, {len(lines)} lines")
    return _BlockRenderer(lines).run()


def wrap_as_document(markdown: Optional[str]) -> str:
    """Render Markdown and place it in a standalone, styled HTML page for the preview frame."""
    body = render_markdown(markdown)
    return DOCUMENT_TEMPLATE.format(style=PREVIEW_STYLE, body=body)
