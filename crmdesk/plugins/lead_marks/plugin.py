from flask import Blueprint, request, jsonify
import logging

from crmdesk.core.services import check_token, get_services
from crmdesk.features.lead_marks import generate_mark, latest_mark, save_mark, to_mark_item
from crmdesk.features.registry import Feature, FeatureType, FeatureState

# Create Blueprint
lead_marks_bp = Blueprint('lead_marks', __name__)
blueprint = lead_marks_bp
logger = logging.getLogger(__name__)

@lead_marks_bp.route('/api/leads/<lead_id>/ai-mark', methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE'])
def lead_mark(lead_id):
    """GET returns the lead's stored score; POST scores the lead through the agent and stores it."""
    denied = check_token()
    if denied:
        return denied

    if request.method not in ('GET', 'POST'):
        response = jsonify({'error': 'Method Not Allowed'})
        response.headers['Allow'] = 'GET, POST'
        return response, 405

    services = get_services()
    store = services['store']
    if request.method == 'GET':
        try:
            row = latest_mark(store, lead_id)
        except Exception as e:
            logger.error(f"Failed to load lead mark for {lead_id}: {e}", exc_info=True)
            return jsonify({'error': str(e)}), 500
        return jsonify({'item': to_mark_item(row, lead_id) if row else None})

    try:
        mark = generate_mark(store, services['lead_mark_gateway'], lead_id)
        row = save_mark(store, lead_id, mark)
    except Exception as e:
        logger.error(f"Lead scoring failed for {lead_id}: {e}", exc_info=True)
        return jsonify({'error': str(e) or 'Lead scoring failed'}), 500
    return jsonify({'item': to_mark_item(row, lead_id)}), 201

def get_features():
    """Register the lead scoring endpoint."""
    return [
        Feature(
            name="Lead AI Mark",
            handler=None,
            state=FeatureState.STANDARD,
            feature_type=FeatureType.ENDPOINT,
            meta={"source": "bundled", "routes": ["/api/leads/<lead_id>/ai-mark"]}
        )
    ]

# Metadata
PLUGIN_METADATA = {
    'name': 'Lead AI Mark',
    'description': 'Agent-generated 0-100 scores for sales leads with pros, cons and follow-up advice.',
    'category': 'leads',
    'preinstalled': True
}
