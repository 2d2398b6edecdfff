"""
HTTP API for metadata generation and CSV export
"""
import asyncio
import logging
from datetime import datetime

from flask import Blueprint, Response, jsonify, request

from .batching import build_input_items
from .config import config
from .exporters import TEMPLATES, export_to_csv, generate_filename
from .models import Metadata
from .pipeline import MetadataPipeline

logger = logging.getLogger(__name__)

# Create Blueprint for analysis API
analysis_api = Blueprint('analysis_api', __name__, url_prefix='/api/v1')


def create_pipeline() -> MetadataPipeline:
    """Pipeline used by request handlers"""
    return MetadataPipeline(config)


@analysis_api.route('/health', methods=['GET'])
def health():
    """Lightweight liveness probe that does not call the analysis service"""
    return jsonify({
        'success': True,
        'data': {
            'status': 'ok',
            'api_backend': config.api_backend,
            'api_key_configured': config.api_key_configured,
        },
        'timestamp': datetime.now().isoformat()
    })


@analysis_api.route('/analyze', methods=['POST'])
def analyze_images():
    """Generate metadata for a list of base64-encoded images"""
    data = request.get_json(silent=True)
    if not data or not isinstance(data.get('images'), list):
        return jsonify({
            'success': False,
            'error': 'images array is required'
        }), 400

    try:
        items = build_input_items(data['images'])
    except (ValueError, AttributeError) as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400

    try:
        pipeline = create_pipeline()
        result = asyncio.run(pipeline.process_images(items))
    except Exception as e:
        logger.error(f"Error analyzing {len(items)} images: {e}")
        return jsonify({
            'success': False,
            'error': str(e),
            'timestamp': datetime.now().isoformat()
        }), 500

    payload = result.to_dict()
    return jsonify({
        'success': result.success,
        'data': {
            'metadata': payload['metadata'],
            'stats': payload['stats'],
        },
        'timestamp': datetime.now().isoformat()
    })


@analysis_api.route('/export/templates', methods=['GET'])
def list_export_templates():
    return jsonify({
        'success': True,
        'data': {
            'default': config.default_export_template,
            'templates': {name: t.headers for name, t in TEMPLATES.items()},
        }
    })


@analysis_api.route('/export/<template_name>', methods=['POST'])
def export_metadata(template_name: str):
    """Export posted metadata as a stock-site CSV"""
    data = request.get_json(silent=True)
    if not data or not isinstance(data.get('metadata'), list):
        return jsonify({
            'success': False,
            'error': 'metadata array is required'
        }), 400

    if template_name not in TEMPLATES:
        return jsonify({
            'success': False,
            'error': f"Template {template_name} not found"
        }), 404

    try:
        rows = [Metadata.from_dict(m) for m in data['metadata']]
        csv_data = export_to_csv(rows, template_name)
    except (ValueError, TypeError, AttributeError) as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400

    filename = generate_filename(template_name)
    return Response(
        csv_data,
        mimetype='text/csv',
        headers={
            'Content-Disposition': f'attachment; filename="{filename}"',
            'Content-Length': str(len(csv_data.encode('utf-8')))
        }
    )
