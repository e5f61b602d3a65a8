from flask import Blueprint, jsonify
import logging

from crmdesk.core.services import check_token, get_services
from crmdesk.features.lead_analysis import generate_analysis, latest_analysis, lead_owner, save_analysis, to_item
from crmdesk.features.registry import Feature, FeatureType, FeatureState

# Create Blueprint
lead_analysis_bp = Blueprint('lead_analysis', __name__)
blueprint = lead_analysis_bp
logger = logging.getLogger(__name__)

@lead_analysis_bp.route('/api/leads/<lead_id>/ai-analysis', methods=['GET'])
def get_analysis(lead_id):
    """Return the newest AI summary for a lead, or null."""
    denied = check_token()
    if denied:
        return denied

    try:
        row = latest_analysis(get_services()['store'], lead_id)
    except Exception as e:
        logger.error(f"Failed to load AI analysis for lead {lead_id}: {e}", exc_info=True)
        return jsonify({'error': str(e)}), 500
    return jsonify({'item': to_item(row) if row else None})

@lead_analysis_bp.route('/api/leads/<lead_id>/ai-analysis', methods=['POST'])
def create_analysis(lead_id):
    """Summarize the lead's conversations and store the summary as a new version."""
    denied = check_token()
    if denied:
        return denied

    services = get_services()
    store = services['store']
    try:
        content = generate_analysis(store, services['summary_gateway'], lead_id)
        row = save_analysis(store, lead_id, content, owner=lead_owner(store, lead_id))
    except Exception as e:
        logger.error(f"AI analysis generation failed for lead {lead_id}: {e}", exc_info=True)
        return jsonify({'error': str(e) or 'AI analysis generation failed'}), 500
    return jsonify({'item': to_item(row)}), 201

def get_features():
    """Register the lead analysis endpoints."""
    return [
        Feature(
            name="Lead AI Analysis",
            handler=None,
            state=FeatureState.STANDARD,
            feature_type=FeatureType.ENDPOINT,
            meta={"source": "bundled", "routes": ["/api/leads/<lead_id>/ai-analysis"]}
        )
    ]

# Metadata
PLUGIN_METADATA = {
    'name': 'Lead AI Analysis',
    'description': 'Versioned AI summaries of lead conversation history.',
    'category': 'leads',
    'preinstalled': True
}
