"""Flask API utilities package.

- responses: Standardized HTTP response helpers
- params: Request body parsing
"""

from apps.flask_api.utils.params import _inputs_from_payload, _json_body
from apps.flask_api.utils.responses import _err, _internal_error, _ok, set_debug_mode

__all__ = [
    # responses
    "_ok",
    "_err",
    "_internal_error",
    "set_debug_mode",
    # params
    "_json_body",
    "_inputs_from_payload",
]
