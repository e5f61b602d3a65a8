"""
CRM Desk
A Flask back-office service that previews AI-generated reports as HTML.
"""

from flask import Flask, request, jsonify
import logging
import traceback
from pathlib import Path
from typing import Any, Dict, Optional

from crmdesk.config import load_config
from crmdesk.core.agent_gateway import AgentGateway
from crmdesk.core.loader import load_plugins
from crmdesk.core.logging_config import setup_logging
from crmdesk.core.record_store import InMemoryRecordStore, RecordStore
from crmdesk.core.renderer import render_markdown, wrap_as_document
from crmdesk.core.services import EXTENSION_KEY, check_token
from crmdesk.features import agent_text
from crmdesk.features.registry import FeatureManager, PluginRegistry
from crmdesk.features.reports import UploadCache
from crmdesk.version_info import __version__ as VERSION

logger = logging.getLogger(__name__)


def build_store(config: Dict[str, Any]) -> RecordStore:
    data_file = config.get('data_file')
    if data_file and Path(data_file).exists():
        return InMemoryRecordStore.from_json_file(Path(data_file))
    if data_file:
        logger.warning(f"Data file not found: {data_file}, starting with an empty store")
    return InMemoryRecordStore()


def build_gateway(url: str, api_key: str) -> Optional[AgentGateway]:
    if not url:
        return None
    return AgentGateway(url, api_key)


def create_app(config: Optional[Dict[str, Any]] = None, store: Optional[RecordStore] = None,
               report_gateway: Optional[AgentGateway] = None,
               summary_gateway: Optional[AgentGateway] = None,
               lead_mark_gateway: Optional[AgentGateway] = None,
               configure_logging: bool = True) -> Flask:
    """Create the Flask app with its plugins and shared services."""
    config = config if config is not None else load_config()

    if configure_logging:
        setup_logging(Path(config.get('log_dir') or 'logs'), bool(config.get('debug')))
    logger.info(f"Application starting - Version {VERSION}")

    app = Flask(__name__)
    app.json.ensure_ascii = False

    registry = PluginRegistry()
    load_plugins(registry)

    features = FeatureManager(registry)
    for feature in agent_text.get_features():
        features.register(feature)
    features.refresh()

    app.extensions[EXTENSION_KEY] = {
        'config': config,
        'store': store if store is not None else build_store(config),
        'report_gateway': report_gateway if report_gateway is not None
        else build_gateway(config.get('agent_url'), config.get('agent_key')),
        'summary_gateway': summary_gateway if summary_gateway is not None
        else build_gateway(config.get('summary_agent_url'), config.get('summary_agent_key')),
        'lead_mark_gateway': lead_mark_gateway if lead_mark_gateway is not None
        else build_gateway(config.get('lead_mark_agent_url'), config.get('lead_mark_agent_key')),
        'features': features,
        'upload_cache': UploadCache(),
    }

    registry.register_blueprints(app)
    register_core_routes(app)
    logger.info(f"Registered blueprints: {sorted(app.blueprints)}")
    return app


def register_core_routes(app: Flask) -> None:

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"500 Error: {error}\n{traceback.format_exc()}")
        return jsonify({'error': 'Internal Server Error'}), 500

    @app.route('/api/version')
    def get_version():
        return jsonify({'version': VERSION})

    @app.route('/api/markdown/render', methods=['POST'])
    def render_markdown_endpoint():
        """Render posted Markdown as a fragment, or as a full preview document."""
        denied = check_token()
        if denied:
            return denied

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}
        markdown_text = data.get('markdown')
        if markdown_text is None:
            return jsonify({'error': 'Missing markdown'}), 400
        if not isinstance(markdown_text, str):
            return jsonify({'error': 'markdown must be a string'}), 400

        max_size = app.extensions[EXTENSION_KEY]['config'].get('max_markdown_size')
        size = len(markdown_text.encode('utf-8'))
        if max_size and size > max_size:
            return jsonify({
                'error': 'Markdown Too Large',
                'message': f"The content is {size / (1024 * 1024):.2f} MB, "
                           f"which exceeds the maximum of {max_size / (1024 * 1024):.0f} MB.",
            }), 413

        if data.get('document'):
            html = wrap_as_document(markdown_text)
        else:
            html = render_markdown(markdown_text)
        return jsonify({'html': html})
