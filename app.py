# Standard library
import os
import logging
from flask import Flask, jsonify, request
# CORS configuration
from flask_cors import CORS
# Rate limiting
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
# HTTP exception handling
from werkzeug.exceptions import RequestEntityTooLarge, BadRequest, HTTPException

from relay_config import FileRelayConfig, env_relay
from relay_planner import compute_relay_plan, validate_relay_url

# Logging setup
logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO'))
logger = logging.getLogger(__name__)

# App init
app = Flask(__name__)
# Limit request payload size (e.g. default 1MB)
app.config['MAX_CONTENT_LENGTH'] = int(os.getenv("MAX_CONTENT_LENGTH", 1048576))
# Configure CORS origins from environment (comma-separated). Fallback to '*' if not set.
origins_env = os.getenv("FRONTEND_ORIGINS", "").strip()
if origins_env:
    origins = [o.strip() for o in origins_env.split(",") if o.strip()]
else:
    origins = ["*"]
CORS(app, origins=origins, supports_credentials=True)
limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)

# Configuration
RELAY_PLAN_RATE_LIMIT = os.getenv("RELAY_PLAN_RATE_LIMIT", "60/minute")

# Injected so tests can swap in a StaticRelayConfig
relay_config = FileRelayConfig()


def error_response(message, status_code):
    return jsonify({'error': message}), status_code


def _optional_str(data, key):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise BadRequest(f"{key} must be a string")
    return value.strip() or None


@app.route('/relay-plan', methods=['POST'])
@limiter.limit(RELAY_PLAN_RATE_LIMIT)
def relay_plan():
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return error_response("Invalid relay plan request", 400)
    try:
        group_credential = _optional_str(data, 'groupCredential')
        env_override = _optional_str(data, 'envRelay')
    except BadRequest as e:
        return error_response(e.description, 400)
    decoded_group = data.get('decodedGroup')
    if decoded_group is not None and not isinstance(decoded_group, dict):
        return error_response("decodedGroup must be an object", 400)
    explicit = data.get('explicitRelays')
    if explicit is not None:
        if not isinstance(explicit, list) or not all(isinstance(r, str) for r in explicit):
            return error_response("explicitRelays must be a list of strings", 400)
        explicit = [r for r in explicit if r.strip()]

    try:
        plan = compute_relay_plan(
            group_credential=group_credential,
            decoded_group=decoded_group,
            explicit_relays=explicit,
            env_relay=env_override or env_relay(),
            config=relay_config,
        )
    except Exception as e:
        logger.error("Relay plan computation failed: %s", e, exc_info=e)
        return jsonify({'ok': False, 'reason': 'computation-failed', 'message': str(e)}), 500
    logger.debug("Computed relay plan: %s", plan.relays)
    return jsonify({'ok': True, 'relayPlan': plan.to_dict()})


@app.route('/validate-relay', methods=['POST'])
def validate_relay():
    data = request.get_json(silent=True) or {}
    relay = data.get('relay') if isinstance(data, dict) else None
    if relay is not None and not isinstance(relay, str):
        return error_response("relay must be a string", 400)
    result = validate_relay_url(relay)
    body = {'isValid': result.is_valid}
    if result.normalized:
        body['normalized'] = result.normalized
    if result.message:
        body['message'] = result.message
    return jsonify(body)


# Health check for uptime probes
@app.route('/health')
def health():
    return jsonify({'status': 'ok'})


# Centralized error handlers
@app.errorhandler(RequestEntityTooLarge)
def handle_payload_too_large(e):
    return jsonify({"error": "Payload too large"}), 413


@app.errorhandler(BadRequest)
def handle_bad_request_error(e):
    return jsonify({"error": "Bad request"}), 400


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    code = 500
    if isinstance(e, HTTPException):
        code = e.code
    logger.error(f"Unhandled exception: {e}", exc_info=e)
    return jsonify({"error": "Internal server error"}), code


if __name__ == '__main__':
    # Toggle debug via FLASK_DEBUG env var
    debug_mode = os.getenv("FLASK_DEBUG", "false").lower() in ("1", "true", "yes")
    app.run(debug=debug_mode)
