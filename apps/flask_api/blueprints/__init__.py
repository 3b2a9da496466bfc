"""Flask API Blueprints package.

- health: Health check and version endpoints
- remediations: Playbook execution, gate preview and run endpoints
"""

from apps.flask_api.blueprints.health import health_bp
from apps.flask_api.blueprints.remediations import remediations_bp

__all__ = [
    "health_bp",
    "remediations_bp",
]
