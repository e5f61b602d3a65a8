from flask import Blueprint, request, jsonify
import logging

from crmdesk.core.services import check_token, get_services
from crmdesk.features.registry import Feature, FeatureType, FeatureState
from crmdesk.features.reports import generate_template_preview

# Create Blueprint
template_preview_bp = Blueprint('template_preview', __name__)
blueprint = template_preview_bp
logger = logging.getLogger(__name__)

@template_preview_bp.route('/api/templates/<template_id>/preview', methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE'])
def preview_template(template_id):
    """Generate a report for a template through the agent and return it as a preview document."""
    denied = check_token()
    if denied:
        return denied

    services = get_services()
    gateway = services['report_gateway']
    if gateway is None:
        return jsonify({'error': 'Report agent is not configured (missing CRM_AGENT_API_URL)'}), 500
    if not gateway.api_key:
        return jsonify({'error': 'Report agent key is not configured (missing CRM_AGENT_API_KEY)'}), 500

    if request.method != 'POST':
        response = jsonify({'error': 'Method Not Allowed'})
        response.headers['Allow'] = 'POST'
        return response, 405

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}

    pipeline = services['features'].build_pipeline(enable_experimental=False, name="AgentOutput")
    logger.info(f"Template preview requested: {template_id} (pipeline steps: {len(pipeline)})")
    result = generate_template_preview(
        services['store'],
        gateway,
        template_id,
        body,
        pipeline=pipeline,
        cache=services['upload_cache'],
    )
    return jsonify(result), 200

def get_features():
    """Register the template preview endpoint."""
    return [
        Feature(
            name="Template Preview",
            handler=None,
            state=FeatureState.STANDARD,
            feature_type=FeatureType.ENDPOINT,
            meta={"source": "bundled", "routes": ["/api/templates/<template_id>/preview"]}
        )
    ]

# Metadata
PLUGIN_METADATA = {
    'name': 'Template Preview',
    'description': 'Generates report previews for document templates through the report agent.',
    'category': 'reports',
    'preinstalled': True
}
