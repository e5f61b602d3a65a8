"""
AI summaries of a lead's conversation history.

Each generated summary is stored as a new version in ``customer_ai_analysis``;
only the newest version is flagged as current.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from crmdesk.core.agent_gateway import AgentError, AgentGateway
from crmdesk.core.fields import get_field
from crmdesk.core.record_store import RecordStore, RecordStoreError

logger = logging.getLogger(__name__)

LEADS_TABLE = 'customer_leads'
COMMUNICATIONS_TABLE = 'customer_communications'
ANALYSIS_TABLE = 'customer_ai_analysis'
LEAD_CODE_COLUMN = '线索ID'

SUMMARY_DIMENSIONS = (
    'Purchase intent',
    'Products of interest',
    'Why the deal has not closed',
    'Competitors',
    'Suggested follow-up',
)

LOCAL_SUMMARY = (
    "Purchase intent: the conversation so far shows some interest; keep following up and confirm "
    "the decision timeline and budget.",
    "Products of interest: focus on the needs that come up repeatedly and match them with existing offers.",
    "Why the deal has not closed: the customer is still clarifying requirements or comparing options.",
    "Competitors: if other vendors come up, highlight our strengths and reference cases.",
    "Suggested follow-up: summarize the key needs and open questions and come back with a concrete "
    "proposal, schedule and price.",
)

EMPTY_SUMMARY = (
    "Purchase intent: no conversation records yet, cannot judge.",
    "Products of interest: no conversation records yet.",
    "Why the deal has not closed: no conversation records yet.",
    "Competitors: no conversation records yet.",
    "Suggested follow-up: make first contact and learn the basic requirements.",
)


def local_summary() -> str:
    return '\n'.join(LOCAL_SUMMARY)


def empty_summary() -> str:
    return '\n'.join(EMPTY_SUMMARY)


def _timestamp(value: Any) -> float:
    if not value:
        return 0.0
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace('Z', '+00:00')
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def resolve_lead_ids(store: RecordStore, lead_id: str) -> List[str]:
    """The lead's own id plus the row id behind its external lead code, if any."""
    ids = [lead_id]
    try:
        rows = store.query(LEADS_TABLE, filters={LEAD_CODE_COLUMN: lead_id}, limit=1)
    except RecordStoreError as e:
        logger.debug(f"Lead code lookup skipped: {e}")
        rows = []
    if rows and rows[0].get('id') is not None:
        row_id = str(rows[0]['id'])
        if row_id not in ids:
            ids.append(row_id)
    return ids


def collect_conversation(store: RecordStore, lead_id: str) -> List[str]:
    """Conversation lines for a lead, oldest first, as ``"{time} {role}: {content}"``."""
    ids = resolve_lead_ids(store, lead_id)
    records = []
    for row in store.query(COMMUNICATIONS_TABLE):
        row_lead = get_field(row, 'lead_id')
        if row_lead is None or str(row_lead) not in ids:
            continue
        records.append(row)

    records.sort(key=lambda r: _timestamp(get_field(r, 'time')))
    return [
        f"{get_field(r, 'time', '')} {get_field(r, 'role', 'unknown')}: {get_field(r, 'content', '')}"
        for r in records
    ]


def build_summary_prompt(conversation: List[str]) -> str:
    lines = [
        "Below is the full conversation history with a customer. Summarize it briefly in a structured way.",
        "Keep each dimension to one or two sentences.",
        "",
        "[Conversation]",
        '\n'.join(conversation),
        "",
        "Answer strictly in the following format, without extra commentary:",
        "",
    ]
    lines.extend(f"{dimension}: ..." for dimension in SUMMARY_DIMENSIONS)
    return '\n'.join(lines)


def generate_analysis(store: RecordStore, gateway: Optional[AgentGateway], lead_id: str) -> str:
    conversation = collect_conversation(store, lead_id)
    if not conversation:
        return empty_summary()
    if gateway is None:
        logger.info("No summary agent configured, using local summary")
        return local_summary()

    prompt = build_summary_prompt(conversation)
    try:
        content = gateway.complete({'inputs': {}, 'query': prompt, 'input': prompt, 'user': f"lead-{lead_id}"})
    except AgentError as e:
        logger.warning(f"Summary agent failed for lead {lead_id}: {e}")
        return local_summary()
    if not content:
        logger.warning(f"Summary agent returned no content for lead {lead_id}")
        return local_summary()
    return content


def to_item(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': row.get('id'),
        'leadId': row.get('clue_id'),
        'content': row.get('ai_content'),
        'createdAt': row.get('created_at'),
    }


def latest_analysis(store: RecordStore, lead_id: str) -> Optional[Dict[str, Any]]:
    rows = store.query(ANALYSIS_TABLE, filters={'clue_id': lead_id}, order=('ai_version', True), limit=1)
    return rows[0] if rows else None


def lead_owner(store: RecordStore, lead_id: str) -> Optional[str]:
    try:
        rows = store.query(LEADS_TABLE, filters={LEAD_CODE_COLUMN: lead_id}, limit=1)
    except RecordStoreError:
        return None
    owner = get_field(rows[0], 'owner') if rows else None
    return str(owner) if owner else None


def save_analysis(store: RecordStore, lead_id: str, content: str, owner: Optional[str] = None) -> Dict[str, Any]:
    """Store ``content`` as the next current version for the lead."""
    latest = latest_analysis(store, lead_id)
    try:
        latest_version = int(latest.get('ai_version') or 0) if latest else 0
    except (TypeError, ValueError):
        latest_version = 0

    store.update(ANALYSIS_TABLE, {'clue_id': lead_id, 'is_current': 1}, {'is_current': 0})
    row = store.insert(ANALYSIS_TABLE, {
        'clue_id': lead_id,
        'ai_content': content,
        'is_current': 1,
        'ai_version': latest_version + 1,
        'generate_user': owner,
        'generate_time': datetime.now(timezone.utc).isoformat(),
        'communication_ids': None,
    })
    logger.info(f"Saved AI analysis v{latest_version + 1} for lead {lead_id}")
    return row
