"""
Cleanup steps for text produced by the report agents.

Models sometimes leak their reasoning in <think>/<analysis> tags, or answer
with a finished HTML page instead of Markdown. These helpers normalize the
answer before it reaches the renderer.
"""

import re

from crmdesk.features.registry import Feature, FeatureState, FeatureType

REASONING_BLOCK = re.compile(r'<(think|analysis)>.*?</\1>', re.IGNORECASE | re.DOTALL)
REASONING_TAG = re.compile(r'</?(?:think|analysis)>', re.IGNORECASE)
BODY_TAG = re.compile(r'<body[\s>]', re.IGNORECASE)
CLOSING_TAG = re.compile(r'</[a-z][a-z0-9]*\s*>', re.IGNORECASE)
FILE_EXTENSION = re.compile(r'\.[a-z0-9]+$', re.IGNORECASE)

MAX_TARGET_FILE = 48


def normalize_newlines(text: str) -> str:
    return (text or '').replace('\r\n', '\n')


def strip_think_tags(text: str) -> str:
    value = normalize_newlines(text)
    value = REASONING_BLOCK.sub('', value)
    value = REASONING_TAG.sub('', value)
    return value.strip()


def looks_like_html(text: str) -> bool:
    trimmed = (text or '').strip()
    if not trimmed:
        return False
    if trimmed.startswith('<'):
        return True
    return bool(BODY_TAG.search(trimmed) or CLOSING_TAG.search(trimmed))


def normalize_target_file(raw: str, template_id: str) -> str:
    """File name the agent should write the preview to; always a short .html name."""
    value = (raw or '').strip()
    if not value:
        value = f"template-{template_id[:12]}.html"
    value = value.replace('/', '-').replace('\\', '-')
    if not FILE_EXTENSION.search(value):
        value = f"{value}.html"
    if not value.lower().endswith('.html'):
        value = f"{value}.html"
    if len(value) > MAX_TARGET_FILE:
        ext = '.html'
        value = value[:max(1, MAX_TARGET_FILE - len(ext))] + ext
    return value


def get_features():
    """Standard cleanup steps, in the order they must run."""
    return [
        Feature("STD_NEWLINES", normalize_newlines, FeatureState.STANDARD, FeatureType.ALGORITHM),
        Feature("STD_STRIP_REASONING", strip_think_tags, FeatureState.STANDARD, FeatureType.ALGORITHM),
    ]
