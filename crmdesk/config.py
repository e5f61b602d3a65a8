"""
Runtime configuration.

Values come from an optional ``config.json`` in the project root, overridden
by environment variables. Deployment tooling tends to wrap env values in
quotes, so those are stripped.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONFIG_FILE = PROJECT_ROOT / 'config.json'

# Setting name -> environment variables, first one set wins
ENV_KEYS = {
    'api_token': ('CRM_API_TOKEN',),
    'agent_url': ('CRM_AGENT_API_URL', 'CRM_V3_AGENT_API_URL'),
    'agent_key': ('CRM_AGENT_API_KEY', 'CRM_V3_AGENT_API_KEY'),
    'summary_agent_url': ('CRM_SUMMARY_AGENT_URL', 'CRM_AGENT_V2_API_URL'),
    'summary_agent_key': ('CRM_SUMMARY_AGENT_KEY',),
    'lead_mark_agent_url': ('CRM_LEAD_MARK_AGENT_API_URL',),
    'lead_mark_agent_key': ('CRM_LEAD_MARK_AGENT_API_KEY',),
    'data_file': ('CRM_DATA_FILE',),
    'log_dir': ('CRM_LOG_DIR',),
}

DEFAULTS = {
    'api_token': '',
    'agent_url': '',
    'agent_key': '',
    'summary_agent_url': '',
    'summary_agent_key': '',
    'lead_mark_agent_url': '',
    'lead_mark_agent_key': '',
    'data_file': '',
    'log_dir': str(PROJECT_ROOT / 'logs'),
    'debug': False,
    'max_markdown_size': 5 * 1024 * 1024,  # 5 MB
}


def read_env(value: Any) -> str:
    """Trim a raw env value and drop one pair of wrapping quotes."""
    raw = str(value).strip() if value is not None else ''
    if not raw:
        return ''
    if raw[0] in '\'"`':
        raw = raw[1:]
    if raw and raw[-1] in '\'"`':
        raw = raw[:-1]
    return raw.strip()


def load_config(config_file: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Load settings: defaults, then config file, then environment."""
    environ = os.environ if environ is None else environ
    config_file = CONFIG_FILE if config_file is None else Path(config_file)
    config = dict(DEFAULTS)

    if config_file.exists():
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config.update(json.load(f))
        except Exception as e:
            logger.error(f"Failed to load config: {e}")

    for key, names in ENV_KEYS.items():
        for name in names:
            value = read_env(environ.get(name))
            if value:
                config[key] = value
                break

    if environ.get('FLASK_ENV') == 'development':
        config['debug'] = True
    return config
