"""
Template report previews.

Collects a template's attachments, hands them to the report agent together
with a prompt built from the template fields, and turns the answer into a
previewable HTML document. A preview request never fails outright: when the
agent is unreachable or silent the caller still gets a placeholder document
describing what happened.
"""

import logging
import threading
from collections import namedtuple
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from crmdesk.core.agent_gateway import AgentGateway, format_error
from crmdesk.core.attachments import extract_excel_markdown, is_excel_attachment
from crmdesk.core.fields import get_field
from crmdesk.core.record_store import RecordStore, query_with_fallback
from crmdesk.core.renderer import wrap_as_document
from crmdesk.features.agent_text import looks_like_html, normalize_target_file, strip_think_tags
from crmdesk.features.registry import Pipeline

logger = logging.getLogger(__name__)

TEMPLATE_TABLE = 'document_templates'
ATTACHMENT_TABLE = 'document_template_attachments'

TEMPLATE_ID_FIELDS = ('id', 'temp_id', 'template_id')
TEMPLATE_COLUMN_SETS = (
    ('id', 'temp_id', 'template_id', 'temp_name', 'name', 'report_title', 'reportTitle'),
    ('id', 'temp_id', 'template_id', 'temp_name', 'name', 'report_title'),
    ('id', 'temp_id', 'template_id', 'temp_name', 'name'),
    None,
)
ATTACHMENT_TEMPLATE_FIELDS = ('template_id', 'temp_id')
ATTACHMENT_COLUMN_SETS = (
    ('id', 'file_name', 'file_path', 'file_size', 'mime_type', 'created_at', 'created_by', 'template_id'),
    ('id', 'file_name', 'file_path', 'file_size', 'mime_type', 'created_at', 'created_by', 'temp_id'),
    None,
)

DEFAULT_CLASSIFICATION = 6
WEEKLY_CLASSIFICATION = 7
UPLOAD_CONCURRENCY = 3

CachedUpload = namedtuple('CachedUpload', ['file_id', 'extracted'])


class UploadCache:
    """
    Remembers uploaded attachments by (user, path, size, mtime).
    Concurrent requests for the same file share one upload.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[Tuple, Future] = {}

    def get_or_upload(self, key: Tuple, upload) -> CachedUpload:
        with self._lock:
            future = self._entries.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._entries[key] = future
        if owner:
            try:
                result = upload()
            except Exception as e:
                with self._lock:
                    self._entries.pop(key, None)
                future.set_exception(e)
                raise
            future.set_result(result)
            return result
        return future.result()

    def __len__(self):
        return len(self._entries)


def to_text(value: Any) -> str:
    if value is None:
        return ''
    return str(value)


def parse_classification(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_CLASSIFICATION
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return DEFAULT_CLASSIFICATION


def fetch_template_meta(store: RecordStore, template_id: str) -> Optional[Dict[str, Any]]:
    rows = query_with_fallback(store, TEMPLATE_TABLE, TEMPLATE_ID_FIELDS, template_id,
                               column_sets=TEMPLATE_COLUMN_SETS, limit=1, skip_empty=True)
    return rows[0] if rows else None


def fetch_attachments(store: RecordStore, template_id: str) -> List[Dict[str, Any]]:
    return query_with_fallback(store, ATTACHMENT_TABLE, ATTACHMENT_TEMPLATE_FIELDS, template_id,
                               column_sets=ATTACHMENT_COLUMN_SETS, order=('created_at', True))


def upload_attachments(gateway: AgentGateway, rows: Sequence[Dict[str, Any]], user: str,
                       cache: UploadCache) -> Tuple[List[Dict[str, str]], List[str]]:
    """
    Upload attachment files for the agent.
    Returns the agent file references and the Markdown extracted from spreadsheets,
    both in attachment order.
    """

    def handle(row):
        file_path = to_text(get_field(row, 'file_path'))
        file_name = to_text(get_field(row, 'file_name'))
        if not file_path or not file_name:
            logger.debug(f"Skipping attachment without path or name: {row.get('id')}")
            return None
        mime_type = to_text(get_field(row, 'mime_type')) or 'application/octet-stream'
        path = Path(file_path)
        try:
            stat = path.stat()
            size, mtime = stat.st_size, stat.st_mtime
        except OSError:
            size, mtime = -1, -1

        def upload():
            content = path.read_bytes()
            extracted = ''
            if is_excel_attachment(file_name, mime_type):
                try:
                    extracted = extract_excel_markdown(content, file_name).strip()
                except Exception as e:
                    logger.warning(f"Could not read spreadsheet {file_name}: {e}")
            file_id = gateway.upload_file(file_name, content, mime_type, user)
            return CachedUpload(file_id, extracted)

        return cache.get_or_upload((user, str(path), size, mtime), upload)

    if not rows:
        return [], []

    with ThreadPoolExecutor(max_workers=min(UPLOAD_CONCURRENCY, len(rows))) as pool:
        results = list(pool.map(handle, rows))

    files = []
    extracts = []
    for item in results:
        if item is None:
            continue
        files.append({'type': 'document', 'transfer_method': 'local_file', 'upload_file_id': item.file_id})
        if item.extracted:
            extracts.append(item.extracted)
    return files, extracts


def build_report_prompt(classification: int, template_name: str = '', report_title: str = '',
                        report_date: str = '', department: str = '', template_text: str = '',
                        attachment_text: str = '', has_files: bool = False) -> str:
    if classification == WEEKLY_CLASSIFICATION:
        task = f"Task type: weekly report generation (classification {WEEKLY_CLASSIFICATION})"
    else:
        task = f"Task type: template report generation (classification {DEFAULT_CLASSIFICATION})"
    pieces = [
        task,
        "Output only the final content. Do not output your reasoning or any <think> or <analysis> sections.",
        "Output format: Markdown.",
        f"Template name: {template_name}" if template_name else '',
        f"Report title: {report_title}" if report_title else '',
        f"Date: {report_date}" if report_date else '',
        f"Department: {department}" if department else '',
        f"Template description (template_text):\n{template_text}" if template_text else '',
        ("Attachment data (parsed from spreadsheets; use exactly this data and do not invent figures):"
         f"\n\n{attachment_text}") if attachment_text else '',
        "Attachments: uploaded, use them when writing the report." if has_files else "Attachments: none.",
        "Write the report body directly.",
    ]
    return '\n\n'.join(p for p in pieces if p)


def build_agent_inputs(target_file: str, template_text: str, classification: int,
                       template_name: str = '', report_title: str = '', report_date: str = '',
                       department: str = '', attachment_text: str = '') -> Dict[str, Any]:
    inputs = {
        'target_file': target_file,
        'template_text': template_text,
        'classification': classification,
    }
    optional = {
        'template_name': template_name,
        'report_title': report_title,
        'report_date': report_date,
        'department': department,
        'attachment_excel_markdown': attachment_text,
    }
    inputs.update({k: v for k, v in optional.items() if v})
    return inputs


def fallback_document(prompt: str, attachment_names: Sequence[str]) -> str:
    return '\n'.join([
        "(The agent returned no content)",
        "",
        "Prompt:",
        prompt or "(empty)",
        "",
        "Attachments:",
        ', '.join(attachment_names) or "(none)",
    ])


def failure_document(error: BaseException) -> str:
    return f"(Preview failed)\n\n{format_error(error)}"


def finish_output(output: str, pipeline: Optional[Pipeline] = None) -> Dict[str, str]:
    """Clean agent output and produce the preview payload."""
    cleaned = pipeline.run(output) if pipeline is not None else strip_think_tags(output)
    cleaned = (cleaned or '').strip()
    if looks_like_html(cleaned):
        return {'html': cleaned, 'markdown': ''}
    markdown = cleaned or output
    return {'html': wrap_as_document(markdown), 'markdown': markdown}


def generate_template_preview(store: RecordStore, gateway: AgentGateway, template_id: str,
                              body: Dict[str, Any], pipeline: Optional[Pipeline] = None,
                              cache: Optional[UploadCache] = None) -> Dict[str, str]:
    """
    Produce ``{'html': ..., 'markdown': ...}`` for a template preview request.
    Never raises; failures become a placeholder document.
    """
    cache = cache if cache is not None else UploadCache()
    text = to_text(body.get('text'))
    target_file = normalize_target_file(to_text(body.get('targetFile')), template_id)
    template_name = to_text(body.get('templateName')).strip()
    report_title = to_text(body.get('reportTitle')).strip()
    department = to_text(body.get('department')).strip()
    report_date = to_text(body.get('reportDate')).strip()
    classification = parse_classification(body.get('classification'))
    raw_ids = body.get('attachmentIds')
    attachment_ids = [to_text(i) for i in raw_ids if to_text(i)] if isinstance(raw_ids, list) else []

    try:
        rows = fetch_attachments(store, template_id)
        selected = [r for r in rows if to_text(r.get('id')) in attachment_ids] if attachment_ids else rows
        user = f"template-{template_id}"
        files, extracts = upload_attachments(gateway, selected, user, cache)

        if not template_name or not report_title:
            try:
                meta = fetch_template_meta(store, template_id)
            except Exception as e:
                logger.warning(f"Template meta lookup failed for {template_id}: {e}")
                meta = None
            if meta:
                template_name = template_name or to_text(get_field(meta, 'template_name')).strip()
                report_title = report_title or to_text(get_field(meta, 'report_title')).strip()

        attachment_text = '\n\n'.join(e.strip() for e in extracts if e.strip())
        prompt = build_report_prompt(
            classification, template_name, report_title, report_date, department,
            text.strip(), attachment_text, has_files=bool(files),
        )
        payload = {
            'inputs': build_agent_inputs(
                target_file, text, classification, template_name, report_title,
                report_date, department, attachment_text,
            ),
            'query': prompt,
            'user': user,
        }
        if files:
            payload['files'] = files

        logger.info(f"Template preview {template_id}: {len(selected)} attachments, {len(files)} uploaded")
        output = gateway.complete(payload).strip()

        if not output and files:
            logger.warning(f"Template preview {template_id}: empty answer with files, retrying without them")
            retry_payload = {k: v for k, v in payload.items() if k != 'files'}
            output = gateway.complete(retry_payload).strip()

        if not output:
            names = [to_text(get_field(r, 'file_name')) for r in selected]
            fallback = fallback_document(prompt, [n for n in names if n])
            return {'html': wrap_as_document(fallback), 'markdown': fallback}

        return finish_output(output, pipeline)

    except Exception as e:
        logger.error(f"Template preview {template_id} failed: {e}", exc_info=True)
        fallback = failure_document(e)
        return {'html': wrap_as_document(fallback), 'markdown': fallback}
