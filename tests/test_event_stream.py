import unittest
import sys
from pathlib import Path

# Add project root to sys.path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crmdesk.core.event_stream import collect_stream_output, iter_event_blocks, parse_event_block


class TestEventBlocks(unittest.TestCase):
    def test_blocks_split_across_chunks(self):
        chunks = ['data: {"a":', ' 1}\r\n\r\ndata: {"b": 2}\n', '\n', 'data: tail']
        self.assertEqual(list(iter_event_blocks(chunks)), ['data: {"a": 1}', 'data: {"b": 2}', 'data: tail'])

    def test_empty_chunks(self):
        self.assertEqual(list(iter_event_blocks(['', None, '\n\n'])), [''])

    def test_parse_skips_noise(self):
        block = 'event: ping\ndata: [DONE]\ndata: not json\ndata: [1, 2]\ndata: {"event": "message"}'
        self.assertEqual(parse_event_block(block), [{'event': 'message'}])


class TestCollectStreamOutput(unittest.TestCase):
    def test_accumulates_pieces(self):
        chunks = [
            'data: {"event":"message","answer":"Hel',
            'lo"}\n\ndata: {"event":"message","answer":" world"}\n\n',
            'data: [DONE]\n\n',
        ]
        self.assertEqual(collect_stream_output(chunks), "Hello world")

    def test_longer_message_end_replaces_text(self):
        chunks = [
            'data: {"event":"message","answer":"Hi"}\n\n',
            'data: {"event":"message_end","answer":"Hi there, full"}\n\n',
            'data: {"event":"message","answer":"ignored"}\n\n',
        ]
        self.assertEqual(collect_stream_output(chunks), "Hi there, full")

    def test_shorter_message_end_is_ignored(self):
        chunks = [
            'data: {"event":"message","answer":"Complete answer"}\n\n',
            'data: {"event":"message_end","answer":"Comp"}\n\n',
        ]
        self.assertEqual(collect_stream_output(chunks), "Complete answer")

    def test_stops_at_workflow_finished(self):
        chunks = [
            'data: {"event":"message","answer":"A"}\n\n'
            'data: {"event":"workflow_finished","data":{"outputs":{"text":"B"}}}\n\n'
            'data: {"event":"message","answer":"C"}\n\n'
        ]
        self.assertEqual(collect_stream_output(chunks), "AB")

    def test_trailing_block_without_blank_line(self):
        self.assertEqual(collect_stream_output(['data: {"answer":"  last  "}']), "last")

    def test_empty_stream(self):
        self.assertEqual(collect_stream_output([]), "")


if __name__ == '__main__':
    unittest.main()
