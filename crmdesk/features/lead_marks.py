"""
AI scoring of sales leads.

The agent scores a lead from its profile columns and lists the factors for
and against a deal. One mark is kept per lead in ``lead_marks``; scoring a
lead again overwrites it.
"""

import json
import logging
import math
from collections import namedtuple
from typing import Any, Dict, Optional

from crmdesk.core.agent_gateway import AgentGateway, AgentResponseError
from crmdesk.core.fields import get_field
from crmdesk.core.record_store import RecordStore
from crmdesk.features.lead_analysis import LEAD_CODE_COLUMN, LEADS_TABLE

logger = logging.getLogger(__name__)

MARKS_TABLE = 'lead_marks'
MAX_ANSWER_SNIPPET = 200
NOT_PROVIDED = '(not provided)'

# Lead column -> prompt label
PROFILE_FIELDS = (
    ('客户岗位', 'Customer position'),
    ('参加培训的需求强弱', 'Strength of training demand'),
    ('预算范围', 'Budget range'),
    ('试听课收听时长', 'Trial lesson listening time'),
    ('与客户沟通次数', 'Number of conversations with the customer'),
    ('来源渠道', 'Source channel'),
)

LeadMark = namedtuple('LeadMark', ['score', 'pros', 'cons', 'suggestions', 'raw'])


class LeadMarkError(Exception):
    """A lead could not be scored: unknown lead or no scoring agent."""


def fetch_lead_profile(store: RecordStore, lead_id: str) -> Dict[str, Any]:
    rows = store.query(LEADS_TABLE, filters={LEAD_CODE_COLUMN: lead_id}, limit=1)
    if not rows:
        raise LeadMarkError(f"Lead not found: {lead_id}")
    return rows[0]


def build_mark_prompt(lead_id: str, profile: Dict[str, Any]) -> str:
    lines = [
        "You score sales leads. Based on the lead information below, give the lead a score "
        "from 0 to 100 and a structured analysis.",
        "",
        f"Lead ID: {lead_id}",
    ]
    for column, label in PROFILE_FIELDS:
        value = profile.get(column)
        lines.append(f"{label}: {value if value not in (None, '') else NOT_PROVIDED}")
    lines += [
        "",
        "Answer with one JSON object with these fields:",
        "score: number, an integer from 0 to 100, the overall lead score;",
        "pros: array or string, factors in favour of closing the deal;",
        "cons: array or string, factors against closing the deal;",
        "suggestions: array or string, concrete follow-up advice for the sales rep.",
        "",
        "Output only the JSON, without any other text.",
    ]
    return '\n'.join(lines)


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if not text.startswith('```'):
        return text
    lines = text.split('\n')
    if len(lines) < 2:
        return text
    lines = lines[1:]
    if lines[-1].strip().startswith('```'):
        lines = lines[:-1]
    return '\n'.join(lines).strip()


def _json_object_text(text: str) -> str:
    """Outermost ``{...}`` span of ``text``, or the text itself when there is none."""
    start = text.find('{')
    end = text.rfind('}')
    if start >= 0 and end > start:
        return text[start:end + 1]
    return text


def parse_score(value: Any) -> int:
    """Agent score as an integer clamped to 0..100; halves round up."""
    if isinstance(value, bool):
        number = float(value)
    elif isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip() or 0)
        except ValueError:
            number = math.nan
    else:
        number = math.nan
    if not math.isfinite(number):
        raise AgentResponseError("Score is missing or not a number")
    return min(100, max(0, int(math.floor(number + 0.5))))


def normalize_text(value: Any) -> str:
    if isinstance(value, list):
        return '\n'.join(str(item) for item in value)
    if value is None:
        return ''
    return str(value)


def parse_mark_answer(content: str) -> LeadMark:
    """Read the agent's JSON answer, tolerating code fences and surrounding prose."""
    try:
        parsed = json.loads(_json_object_text(_strip_code_fence(content)))
    except ValueError:
        snippet = content[:MAX_ANSWER_SNIPPET]
        raise AgentResponseError(
            f"Agent answer is not valid JSON, first {MAX_ANSWER_SNIPPET} chars: {snippet}" if snippet
            else "Agent answer is not valid JSON"
        )
    if not isinstance(parsed, dict):
        parsed = {}

    return LeadMark(
        score=parse_score(parsed.get('score')),
        pros=normalize_text(parsed.get('pros')),
        cons=normalize_text(parsed.get('cons')),
        suggestions=normalize_text(parsed.get('suggestions')),
        raw=content,
    )


def generate_mark(store: RecordStore, gateway: Optional[AgentGateway], lead_id: str) -> LeadMark:
    profile = fetch_lead_profile(store, lead_id)
    if gateway is None:
        raise LeadMarkError("Lead mark agent is not configured (missing CRM_LEAD_MARK_AGENT_API_URL)")
    if not gateway.api_key:
        raise LeadMarkError("Lead mark agent key is not configured (missing CRM_LEAD_MARK_AGENT_API_KEY)")

    prompt = build_mark_prompt(lead_id, profile)
    content = gateway.complete_blocking({
        'inputs': {},
        'query': prompt,
        'conversation_id': '',
        'user': f"lead-{lead_id}",
    })
    if not content:
        raise AgentResponseError("Agent returned no content")

    mark = parse_mark_answer(content)
    logger.info(f"Scored lead {lead_id}: {mark.score}")
    return mark


def latest_mark(store: RecordStore, lead_id: str) -> Optional[Dict[str, Any]]:
    rows = store.query(MARKS_TABLE, filters={LEAD_CODE_COLUMN: lead_id}, limit=1)
    return rows[0] if rows else None


def save_mark(store: RecordStore, lead_id: str, mark: LeadMark) -> Dict[str, Any]:
    """Insert or overwrite the lead's mark."""
    values = {
        LEAD_CODE_COLUMN: lead_id,
        '线索分数': mark.score,
        '有利因素': mark.pros,
        '不利因素': mark.cons,
        '后续建议': mark.suggestions,
        'ai_gen_content': mark.raw,
    }
    if latest_mark(store, lead_id) is not None:
        row = store.update(MARKS_TABLE, {LEAD_CODE_COLUMN: lead_id}, values)[0]
    else:
        row = store.insert(MARKS_TABLE, values)
    logger.info(f"Saved lead mark for {lead_id}")
    return row


def _stored_score(row: Dict[str, Any]) -> Optional[float]:
    for key in ('线索分数', 'score'):
        value = row.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
    return None


def to_mark_item(row: Dict[str, Any], lead_id: str) -> Dict[str, Any]:
    return {
        'id': row.get('id'),
        'leadId': str(get_field(row, 'lead_id', lead_id)),
        'score': _stored_score(row),
        'pros': get_field(row, 'pros', ''),
        'cons': get_field(row, 'cons', ''),
        'suggestions': get_field(row, 'suggestions', ''),
        'content': get_field(row, 'mark_content'),
    }
