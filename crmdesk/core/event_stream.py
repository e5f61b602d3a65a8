"""
Decoding of streamed chat completions.

The agent streams ``data: {json}`` lines grouped into blocks separated by a
blank line. Text pieces are accumulated until a terminal event arrives.
"""

import json
import logging
from typing import Any, Dict, Iterable, Iterator, List

from crmdesk.core.fields import extract_agent_output

logger = logging.getLogger(__name__)

DONE_SENTINEL = '[DONE]'
TERMINAL_EVENTS = {'message_end', 'workflow_finished', 'conversation_end'}


def iter_event_blocks(chunks: Iterable[str]) -> Iterator[str]:
    """Yield complete event blocks from decoded text chunks, then any trailing remainder."""
    buffer = ''
    for chunk in chunks:
        if not chunk:
            continue
        buffer = (buffer + chunk).replace('\r\n', '\n')
        index = buffer.find('\n\n')
        while index >= 0:
            yield buffer[:index]
            buffer = buffer[index + 2:]
            index = buffer.find('\n\n')
    if buffer.strip():
        yield buffer


def parse_event_block(block: str) -> List[Dict[str, Any]]:
    events = []
    for line in block.split('\n'):
        stripped = line.strip()
        if not stripped.startswith('data:'):
            continue
        data = stripped[5:].strip()
        if not data or data == DONE_SENTINEL:
            continue
        try:
            event = json.loads(data)
        except ValueError:
            logger.debug(f"Skipping undecodable stream line: {data[:80]}")
            continue
        if isinstance(event, dict):
            events.append(event)
    return events


def collect_stream_output(chunks: Iterable[str]) -> str:
    """
    Accumulate the generated text from a stream of decoded chunks.

    A ``message_end`` event that carries the full answer replaces what was
    accumulated when it is longer. Reading stops at the first terminal event.
    """
    output = ''
    for block in iter_event_blocks(chunks):
        for event in parse_event_block(block):
            name = event.get('event')
            piece = extract_agent_output(event)
            if piece:
                if name == 'message_end':
                    if len(piece) > len(output):
                        output = piece
                else:
                    output += piece
            if name in TERMINAL_EVENTS:
                logger.debug(f"Stream finished on '{name}' event ({len(output)} chars)")
                return output.strip()
    return output.strip()
