"""
Service-level routes: health check.
"""

from datetime import datetime

from flask import Blueprint, jsonify

from .. import limiter

main_bp = Blueprint('main', __name__)

API_VERSION = '1.0.0'


@main_bp.route('/health')
@limiter.exempt
def health():
    """Liveness check for load balancers and the PWAs."""
    return jsonify({
        'status': 'OK',
        'message': 'ServoLeY API is running',
        'timestamp': datetime.utcnow().isoformat() + 'Z',
        'version': API_VERSION,
    })
