import unittest
import sys
from pathlib import Path
from unittest.mock import MagicMock

# Add project root to sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from crmdesk.app import build_gateway, create_app
from crmdesk.config import DEFAULTS
from crmdesk.core.record_store import InMemoryRecordStore
from crmdesk.core.services import TOKEN_HEADER
from crmdesk.features.registry import PluginRegistry

TOKEN = 'test-token'


def make_config(**overrides):
    config = dict(DEFAULTS)
    config.update({'api_token': TOKEN, 'agent_url': '', 'summary_agent_url': ''})
    config.update(overrides)
    return config


class ApiTestCase(unittest.TestCase):
    config_overrides = {}

    def setUp(self):
        PluginRegistry._instance = None
        self.store = InMemoryRecordStore({
            'document_templates': [{'id': 't1', 'temp_name': 'Weekly', 'report_title': 'Sales'}],
            'customer_leads': [{'id': 7, '线索ID': 'L-1', '负责销售员': 'Alice'}],
            'customer_communications': [
                {'id': 1, 'lead_id': 'L-1', 'created_at': '2024-01-01T09:00:00', 'role': 'customer', 'content': 'hi'},
            ],
        })
        self.report_gateway = MagicMock()
        self.report_gateway.api_key = 'key'
        self.summary_gateway = MagicMock()
        self.lead_mark_gateway = MagicMock()
        self.lead_mark_gateway.api_key = 'key'
        self.app = create_app(
            make_config(**self.config_overrides),
            store=self.store,
            report_gateway=self.report_gateway,
            summary_gateway=self.summary_gateway,
            lead_mark_gateway=self.lead_mark_gateway,
            configure_logging=False,
        )
        self.app.config['TESTING'] = True
        self.client = self.app.test_client()
        self.headers = {TOKEN_HEADER: TOKEN}

    def tearDown(self):
        PluginRegistry._instance = None


class TestMarkdownApi(ApiTestCase):
    def test_version(self):
        response = self.client.get('/api/version')
        self.assertEqual(response.status_code, 200)
        self.assertIn('version', response.get_json())

    def test_token_required(self):
        response = self.client.post('/api/markdown/render', json={'markdown': '# T'})
        self.assertEqual(response.status_code, 401)
        response = self.client.post('/api/markdown/render', json={'markdown': '# T'},
                                    headers={TOKEN_HEADER: 'wrong'})
        self.assertEqual(response.status_code, 401)

    def test_render_fragment(self):
        response = self.client.post('/api/markdown/render', json={'markdown': '# T\n\n- 中文'}, headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['html'], '<h1>T</h1>\n<ul>\n<li>中文</li>\n</ul>')

    def test_render_document(self):
        response = self.client.post('/api/markdown/render', json={'markdown': '# T', 'document': True},
                                    headers=self.headers)
        html = response.get_json()['html']
        self.assertTrue(html.startswith('<!doctype html>'))
        self.assertTrue(html.endswith('<body><h1>T</h1></body></html>'))

    def test_missing_markdown(self):
        response = self.client.post('/api/markdown/render', json={}, headers=self.headers)
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/markdown/render', data='not json', headers=self.headers)
        self.assertEqual(response.status_code, 400)

    def test_markdown_must_be_text(self):
        response = self.client.post('/api/markdown/render', json={'markdown': 12}, headers=self.headers)
        self.assertEqual(response.status_code, 400)

    def test_empty_markdown(self):
        response = self.client.post('/api/markdown/render', json={'markdown': ''}, headers=self.headers)
        self.assertEqual(response.get_json(), {'html': ''})


class TestMarkdownSizeLimit(ApiTestCase):
    config_overrides = {'max_markdown_size': 10}

    def test_too_large(self):
        response = self.client.post('/api/markdown/render', json={'markdown': 'x' * 11}, headers=self.headers)
        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.get_json()['error'], 'Markdown Too Large')


class TestOpenAccess(ApiTestCase):
    config_overrides = {'api_token': ''}

    def test_no_token_configured(self):
        response = self.client.post('/api/markdown/render', json={'markdown': 'a'})
        self.assertEqual(response.status_code, 200)


class TestTemplatePreviewApi(ApiTestCase):
    def test_blueprints_registered(self):
        self.assertIn('template_preview', self.app.blueprints)
        self.assertIn('lead_analysis', self.app.blueprints)
        self.assertIn('lead_marks', self.app.blueprints)

    def test_preview(self):
        self.report_gateway.complete.return_value = '<think>x</think># Hi'
        response = self.client.post('/api/templates/t1/preview', json={'text': 'body'}, headers=self.headers)
        self.assertEqual(response.status_code, 200)
        data = response.get_json()
        self.assertEqual(data['markdown'], '# Hi')
        self.assertIn('<h1>Hi</h1>', data['html'])

        payload = self.report_gateway.complete.call_args[0][0]
        self.assertIn('Template name: Weekly', payload['query'])

    def test_agent_failure_still_returns_document(self):
        from crmdesk.core.agent_gateway import AgentNetworkError
        self.report_gateway.complete.side_effect = AgentNetworkError('unreachable')
        response = self.client.post('/api/templates/t1/preview', json={}, headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.get_json()['markdown'].startswith('(Preview failed)'))

    def test_other_methods_rejected(self):
        for method in ('get', 'put', 'patch', 'delete'):
            response = getattr(self.client, method)('/api/templates/t1/preview', headers=self.headers)
            self.assertEqual(response.status_code, 405, method)
            self.assertEqual(response.headers['Allow'], 'POST')

    def test_token_checked_first(self):
        response = self.client.get('/api/templates/t1/preview')
        self.assertEqual(response.status_code, 401)

    def test_missing_key(self):
        self.report_gateway.api_key = ''
        response = self.client.post('/api/templates/t1/preview', json={}, headers=self.headers)
        self.assertEqual(response.status_code, 500)
        self.assertIn('CRM_AGENT_API_KEY', response.get_json()['error'])


class TestUnconfiguredAgent(unittest.TestCase):
    def setUp(self):
        PluginRegistry._instance = None
        self.app = create_app(make_config(api_token=''), store=InMemoryRecordStore(), configure_logging=False)
        self.client = self.app.test_client()

    def tearDown(self):
        PluginRegistry._instance = None

    def test_missing_url(self):
        response = self.client.post('/api/templates/t1/preview', json={})
        self.assertEqual(response.status_code, 500)
        self.assertIn('CRM_AGENT_API_URL', response.get_json()['error'])

    def test_misconfiguration_reported_before_method_check(self):
        response = self.client.get('/api/templates/t1/preview')
        self.assertEqual(response.status_code, 500)

    def test_build_gateway(self):
        self.assertIsNone(build_gateway('', 'key'))
        gateway = build_gateway('https://agent/v1/chat-messages', 'key')
        self.assertEqual(gateway.url, 'https://agent/v1/chat-messages')


class TestLeadAnalysisApi(ApiTestCase):
    def test_no_analysis_yet(self):
        response = self.client.get('/api/leads/L-1/ai-analysis', headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'item': None})

    def test_generate_and_fetch(self):
        self.summary_gateway.complete.return_value = 'Purchase intent: strong'
        response = self.client.post('/api/leads/L-1/ai-analysis', headers=self.headers)
        self.assertEqual(response.status_code, 201)
        item = response.get_json()['item']
        self.assertEqual(item['content'], 'Purchase intent: strong')
        self.assertEqual(item['leadId'], 'L-1')

        response = self.client.get('/api/leads/L-1/ai-analysis', headers=self.headers)
        self.assertEqual(response.get_json()['item']['id'], item['id'])

        stored = self.store.query('customer_ai_analysis', filters={'clue_id': 'L-1'})
        self.assertEqual(stored[0]['generate_user'], 'Alice')

    def test_store_failure(self):
        self.store.insert = MagicMock(side_effect=RuntimeError('store offline'))
        self.summary_gateway.complete.return_value = 'text'
        response = self.client.post('/api/leads/L-1/ai-analysis', headers=self.headers)
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json()['error'], 'store offline')

    def test_token_required(self):
        response = self.client.get('/api/leads/L-1/ai-analysis')
        self.assertEqual(response.status_code, 401)


class TestLeadMarkApi(ApiTestCase):
    URL = '/api/leads/L-1/ai-mark'

    def test_no_mark_yet(self):
        response = self.client.get(self.URL, headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'item': None})

    def test_score_and_fetch(self):
        self.lead_mark_gateway.complete_blocking.return_value = (
            '```json\n{"score": 88, "pros": ["budget"], "cons": [], "suggestions": "call back"}\n```'
        )
        response = self.client.post(self.URL, headers=self.headers)
        self.assertEqual(response.status_code, 201)
        item = response.get_json()['item']
        self.assertEqual(item['leadId'], 'L-1')
        self.assertEqual(item['score'], 88)
        self.assertEqual(item['pros'], 'budget')
        self.assertEqual(item['suggestions'], 'call back')

        response = self.client.get(self.URL, headers=self.headers)
        self.assertEqual(response.get_json()['item']['id'], item['id'])

    def test_rescoring_overwrites(self):
        self.lead_mark_gateway.complete_blocking.side_effect = ['{"score": 10}', '{"score": 20}']
        self.client.post(self.URL, headers=self.headers)
        self.client.post(self.URL, headers=self.headers)
        rows = self.store.query('lead_marks')
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['线索分数'], 20)

    def test_unknown_lead(self):
        response = self.client.post('/api/leads/L-404/ai-mark', headers=self.headers)
        self.assertEqual(response.status_code, 500)
        self.assertIn('L-404', response.get_json()['error'])

    def test_unparseable_answer(self):
        self.lead_mark_gateway.complete_blocking.return_value = 'I think it is a good lead'
        response = self.client.post(self.URL, headers=self.headers)
        self.assertEqual(response.status_code, 500)
        self.assertIn('not valid JSON', response.get_json()['error'])

    def test_other_methods_not_allowed(self):
        response = self.client.delete(self.URL, headers=self.headers)
        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.headers['Allow'], 'GET, POST')

    def test_token_required(self):
        self.assertEqual(self.client.post(self.URL).status_code, 401)
        self.lead_mark_gateway.complete_blocking.assert_not_called()


class TestUnconfiguredLeadMarkAgent(unittest.TestCase):
    def setUp(self):
        PluginRegistry._instance = None
        store = InMemoryRecordStore({'customer_leads': [{'id': 7, '线索ID': 'L-1'}]})
        self.app = create_app(make_config(api_token=''), store=store, configure_logging=False)
        self.client = self.app.test_client()

    def tearDown(self):
        PluginRegistry._instance = None

    def test_scoring_needs_agent(self):
        response = self.client.post('/api/leads/L-1/ai-mark')
        self.assertEqual(response.status_code, 500)
        self.assertIn('CRM_LEAD_MARK_AGENT_API_URL', response.get_json()['error'])

    def test_reading_works_without_agent(self):
        self.assertEqual(self.client.get('/api/leads/L-1/ai-mark').get_json(), {'item': None})


class TestAppFactory(unittest.TestCase):
    def tearDown(self):
        PluginRegistry._instance = None

    def test_second_app_has_same_features(self):
        PluginRegistry._instance = None
        first = create_app(make_config(), store=InMemoryRecordStore(), configure_logging=False)
        second = create_app(make_config(), store=InMemoryRecordStore(), configure_logging=False)
        names = [f.name for f in PluginRegistry().get_all_plugins()]
        self.assertEqual(len(names), len(set(names)))
        self.assertEqual(sorted(first.blueprints), sorted(second.blueprints))


if __name__ == '__main__':
    unittest.main()
