"""
Logical field lookup over loosely-typed CRM rows.

The hosted tables were created by hand over time, so the same logical field
shows up under several column spellings. Each logical field gets an explicit,
prioritized list of synonyms; the first present value wins.
"""

from typing import Any, Dict, Iterable, Mapping

FIELD_SYNONYMS: Dict[str, tuple] = {
    'lead_id': ('lead_id', '线索ID', '客户线索ID', 'leadId', 'clue_id'),
    'time': ('发送时间', 'created_at', '创建时间', 'createdAt', '时间'),
    'role': ('role', '角色', '身份', '说话方', '说话人', '发送人', '发送方', 'sender', 'author'),
    'content': ('content', '沟通内容', '内容', '发送内容', '消息内容', '文本'),
    'template_name': ('temp_name', 'name'),
    'report_title': ('report_title', 'reportTitle'),
    'owner': ('负责销售员', 'owner', 'sales_owner'),
    'file_name': ('file_name', 'fileName', 'name'),
    'file_path': ('file_path', 'filePath', 'path'),
    'mime_type': ('mime_type', 'mimeType'),
    'pros': ('有利因素', 'pros'),
    'cons': ('不利因素', 'cons'),
    'suggestions': ('后续建议', 'suggestions'),
    'mark_content': ('ai_gen_content',),
}


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def first_present(row: Mapping[str, Any], keys: Iterable[str], default: Any = None) -> Any:
    """Return the value of the first key in ``keys`` that holds a non-empty value."""
    if not row:
        return default
    for key in keys:
        value = row.get(key)
        if _is_present(value):
            return value
    return default


def get_field(row: Mapping[str, Any], field: str, default: Any = None) -> Any:
    """Look up a logical field by its registered synonyms."""
    try:
        keys = FIELD_SYNONYMS[field]
    except KeyError:
        raise KeyError(f"Unknown logical field: {field}")
    return first_present(row, keys, default)


# Where the different agent deployments put the generated text, most specific first.
AGENT_OUTPUT_PATHS = (
    ('answer',),
    ('output',),
    ('result',),
    ('data', 'answer'),
    ('data', 'output'),
    ('data', 'result'),
    ('data', 'outputs', 'text'),
    ('data', 'outputs', 'output'),
    ('data', 'outputs', 'result'),
    ('outputs', 'text'),
    ('outputs', 'output'),
    ('outputs', 'result'),
    ('message', 'content'),
)


def _walk(payload: Any, path: tuple) -> Any:
    value = payload
    for key in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def extract_agent_output(payload: Any) -> str:
    """Return the first non-blank string found along ``AGENT_OUTPUT_PATHS``."""
    for path in AGENT_OUTPUT_PATHS:
        value = _walk(payload, path)
        if isinstance(value, str) and value.strip():
            return value
    return ''
