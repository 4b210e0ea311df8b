"""Flask application exposing /info, /read-modbus and /set-modbus over HTTP."""

import json
import logging
import os

from flask import Blueprint, Flask, current_app, jsonify, request
from werkzeug.exceptions import ClientDisconnected

from . import __version__
from .bridge import ProtocolBridge, parse_command
from .codec import to_json
from .errors import (
    CapacityExceededError,
    CharacteristicNotFoundError,
    ConfigurationError,
    GatewayError,
    InvalidArgumentError,
    RequestParseError,
    TransportError,
)

logger = logging.getLogger(__name__)

SCRATCH_BUFSIZE = 10240

_STATUS: list[tuple[type[GatewayError], int]] = [
    (RequestParseError, 400),
    (InvalidArgumentError, 400),
    (CharacteristicNotFoundError, 404),
    (TransportError, 502),
    (CapacityExceededError, 500),
    (ConfigurationError, 500),
]

api = Blueprint("modbus_api", __name__)


class _ReceiveError(GatewayError):
    pass


def _bridge() -> ProtocolBridge:
    return current_app.extensions["mbgateway.bridge"]


def _read_body() -> dict:
    """Receive the body into the scratch limit and decode it as a JSON object."""
    total_len = request.content_length
    if total_len is not None and total_len >= SCRATCH_BUFSIZE:
        raise CapacityExceededError(total_len, SCRATCH_BUFSIZE)
    try:
        buf = request.get_data(cache=True)
    except ClientDisconnected as e:
        raise _ReceiveError("Failed to post control value") from e
    if len(buf) >= SCRATCH_BUFSIZE:
        raise CapacityExceededError(len(buf), SCRATCH_BUFSIZE)
    try:
        root = json.loads(buf)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RequestParseError(f"Malformed JSON body: {e}") from e
    return root


@api.errorhandler(GatewayError)
def handle_gateway_error(e: GatewayError):
    status = 500
    for cls, code in _STATUS:
        if isinstance(e, cls):
            status = code
            break
    if status >= 500:
        logger.error("%s: %s", type(e).__name__, e)
    else:
        logger.warning("%s: %s", type(e).__name__, e)
    body = {"error": type(e).__name__, "message": str(e)}
    if isinstance(e, TransportError):
        body["code"] = e.code
    return jsonify(body), status


@api.route("/info", methods=["GET"])
def info():
    return jsonify({"version": __version__, "cores": os.cpu_count() or 1})


@api.route("/read-modbus", methods=["POST"])
def read_modbus():
    root = _read_body()
    command = parse_command(root)
    result = _bridge().get(command)
    root["value"] = to_json(result.value)
    return jsonify(root)


@api.route("/set-modbus", methods=["POST"])
def set_modbus():
    root = _read_body()
    command = parse_command(root, require_value=True)
    _bridge().set(command)
    return jsonify(root)


def create_app(bridge: ProtocolBridge) -> Flask:
    """Build the HTTP application around a ProtocolBridge."""
    app = Flask(__name__)
    app.extensions["mbgateway.bridge"] = bridge
    app.register_blueprint(api)
    logger.info("HTTP routes registered: /info, /read-modbus, /set-modbus")
    return app
