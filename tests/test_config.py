import json
import logging
import tempfile
import unittest
import sys
from pathlib import Path

# Add project root to sys.path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crmdesk.config import DEFAULTS, load_config, read_env
from crmdesk.core.logging_config import LOG_FILE_NAME, setup_logging

MISSING = Path('/nonexistent/config.json')


class TestConfig(unittest.TestCase):
    def test_read_env_strips_quotes(self):
        self.assertEqual(read_env('"abc"'), 'abc')
        self.assertEqual(read_env("  'abc'  "), 'abc')
        self.assertEqual(read_env('`x`'), 'x')
        self.assertEqual(read_env(None), '')
        self.assertEqual(read_env('   '), '')

    def test_defaults(self):
        config = load_config(MISSING, environ={})
        self.assertEqual(config, DEFAULTS)

    def test_environment_overrides(self):
        config = load_config(MISSING, environ={
            'CRM_V3_AGENT_API_URL': '"https://agent/v1/chat-messages"',
            'CRM_AGENT_API_KEY': 'key',
            'CRM_V3_AGENT_API_KEY': 'ignored',
            'CRM_API_TOKEN': 'token',
        })
        self.assertEqual(config['agent_url'], 'https://agent/v1/chat-messages')
        self.assertEqual(config['agent_key'], 'key')
        self.assertEqual(config['api_token'], 'token')

    def test_lead_mark_agent_settings(self):
        config = load_config(MISSING, environ={
            'CRM_LEAD_MARK_AGENT_API_URL': 'https://marks/v1/chat-messages',
            'CRM_LEAD_MARK_AGENT_API_KEY': "'mark-key'",
        })
        self.assertEqual(config['lead_mark_agent_url'], 'https://marks/v1/chat-messages')
        self.assertEqual(config['lead_mark_agent_key'], 'mark-key')

    def test_blank_env_value_falls_through(self):
        config = load_config(MISSING, environ={'CRM_AGENT_API_URL': '""', 'CRM_V3_AGENT_API_URL': 'https://v3'})
        self.assertEqual(config['agent_url'], 'https://v3')

    def test_config_file_then_env(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'config.json'
            path.write_text(json.dumps({'agent_url': 'https://file', 'max_markdown_size': 100}), encoding='utf-8')
            config = load_config(path, environ={'CRM_AGENT_API_URL': 'https://env'})
            broken = Path(tmp) / 'broken.json'
            broken.write_text('{', encoding='utf-8')
            fallback = load_config(broken, environ={})
        self.assertEqual(config['agent_url'], 'https://env')
        self.assertEqual(config['max_markdown_size'], 100)
        self.assertEqual(fallback, DEFAULTS)

    def test_development_mode(self):
        self.assertTrue(load_config(MISSING, environ={'FLASK_ENV': 'development'})['debug'])
        self.assertFalse(load_config(MISSING, environ={'FLASK_ENV': 'production'})['debug'])


class TestLoggingSetup(unittest.TestCase):
    def setUp(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level
        # setup_logging closes whatever it replaces; keep the runner's handlers out of reach
        for handler in self.saved_handlers:
            self.root.removeHandler(handler)

    def tearDown(self):
        for handler in list(self.root.handlers):
            self.root.removeHandler(handler)
            handler.close()
        for handler in self.saved_handlers:
            self.root.addHandler(handler)
        self.root.setLevel(self.saved_level)

    def test_setup_creates_log_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_file = setup_logging(Path(tmp) / 'logs', debug_mode=True)
            logging.getLogger('crmdesk.test').debug('hello from test')
            for handler in self.root.handlers:
                handler.flush()

            self.assertEqual(log_file.name, LOG_FILE_NAME)
            self.assertIn('hello from test', log_file.read_text(encoding='utf-8'))
            self.assertEqual(len(self.root.handlers), 2)
            self.assertEqual(self.root.level, logging.DEBUG)

            setup_logging(Path(tmp) / 'logs')
            self.assertEqual(len(self.root.handlers), 2)
            self.assertEqual(self.root.level, logging.INFO)
            for handler in list(self.root.handlers):
                self.root.removeHandler(handler)
                handler.close()

    def test_http_client_logs_are_quieted(self):
        with tempfile.TemporaryDirectory() as tmp:
            setup_logging(Path(tmp), debug_mode=True)
            self.assertEqual(logging.getLogger('urllib3').level, logging.WARNING)
            self.assertEqual(logging.getLogger('werkzeug').level, logging.WARNING)
            for handler in list(self.root.handlers):
                self.root.removeHandler(handler)
                handler.close()


if __name__ == '__main__':
    unittest.main()
