"""
Face Index HTTP API

Thin Flask layer mapping HTTP requests onto FaceRecognizer operations.
"""

import base64
import binascii
import logging
import re
from datetime import datetime
from typing import Any, Dict, Tuple

from flask import Flask, request, jsonify

from .errors import (
    FaceIndexError,
    DegenerateRegion,
    DimensionMismatch,
    EmbeddingFailed,
    EmbeddingTimeout,
    IndexSchemaConflict,
    InvalidMetadata,
    InvalidVector,
    NotFound,
)
from .recognizer import FaceRecognizer

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = re.compile(r'^data:image/[a-zA-Z0-9.+-]+;base64,')

# Most specific classes first
ERROR_STATUS = (
    (NotFound, 404),
    (IndexSchemaConflict, 409),
    (EmbeddingTimeout, 504),
    (EmbeddingFailed, 422),
    (DegenerateRegion, 422),
    (InvalidMetadata, 400),
    (InvalidVector, 400),
    (DimensionMismatch, 400),
)


class InvalidRequest(Exception):
    pass


def decode_image_field(payload: Dict[str, Any]) -> bytes:
    """Read a base64 image from the 'image' or 'image_base64' field."""
    encoded = payload.get('image') or payload.get('image_base64')
    if not encoded or not isinstance(encoded, str):
        raise InvalidRequest("Missing required field: image")

    encoded = DATA_URL_PREFIX.sub('', encoded.strip())
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidRequest("Field 'image' is not valid base64") from e


def error_response(error: Exception) -> Tuple[Any, int]:
    if isinstance(error, InvalidRequest):
        return jsonify({'error': str(error), 'stage': 'request'}), 400

    if isinstance(error, FaceIndexError):
        status = next((code for cls, code in ERROR_STATUS if isinstance(error, cls)), 500)
        return jsonify({'error': error.message, 'stage': error.stage}), status

    if isinstance(error, ValueError):
        return jsonify({'error': str(error), 'stage': 'request'}), 400

    logger.exception("Unhandled API error")
    return jsonify({'error': 'Internal server error', 'stage': 'core'}), 500


def create_app(recognizer: FaceRecognizer, config: Dict[str, Any] = None) -> Flask:
    """
    Create the Flask application around an existing recognizer.

    Args:
        recognizer: Recognizer the routes delegate to
        config: Configuration dictionary; api.max_content_length bounds uploads
    """
    config = config or recognizer.config
    api_config = config.get('api', {})

    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = api_config.get('max_content_length', 50 * 1024 * 1024)
    app.extensions['face_recognizer'] = recognizer

    @app.errorhandler(InvalidRequest)
    @app.errorhandler(FaceIndexError)
    @app.errorhandler(ValueError)
    def handle_error(error):
        if isinstance(error, FaceIndexError):
            logger.warning(f"Request failed at {error.stage} stage: {error.message}")
        return error_response(error)

    @app.route('/health', methods=['GET'])
    def health():
        """Health check endpoint"""
        status = recognizer.health()
        return jsonify({
            'status': 'OK' if status['embedding_service'] else 'DEGRADED',
            'timestamp': datetime.now().isoformat(),
            'embedding_service': status['embedding_service'],
            'index': status['index'],
        })

    @app.route('/api/face/register', methods=['POST'])
    @app.route('/api/face/embed', methods=['POST'])
    def register_face():
        """Embed a face image and store it under the given id"""
        payload = request.get_json(silent=True) or {}

        identity_id = payload.get('id')
        if not identity_id or not isinstance(identity_id, str):
            raise InvalidRequest("Missing required field: id")
        image = decode_image_field(payload)

        record = recognizer.register_identity(
            identity_id,
            image,
            metadata=payload.get('metadata') or {},
            content_type=payload.get('content_type'),
        )

        return jsonify({
            'message': 'Face embedded and stored successfully',
            'id': record.id,
            'vectorDimension': int(record.vector.shape[0]),
        })

    @app.route('/api/face/search', methods=['POST'])
    def search_face():
        """Find the registered faces most similar to an image"""
        payload = request.get_json(silent=True) or {}
        image = decode_image_field(payload)

        k = payload.get('k', payload.get('topK', 5))
        if isinstance(k, bool) or not isinstance(k, int):
            raise InvalidRequest("Field 'k' must be an integer")

        metadata_filter = payload.get('filter') or None
        if metadata_filter is not None and not isinstance(metadata_filter, dict):
            raise InvalidRequest("Field 'filter' must be an object of metadata equality constraints")

        results = recognizer.find_similar(
            image, k, metadata_filter, content_type=payload.get('content_type')
        )

        return jsonify({
            'message': 'Search completed',
            'count': len(results),
            'topK': k,
            'results': [result.to_dict() for result in results],
        })

    @app.route('/api/face/<identity_id>', methods=['GET'])
    def get_face(identity_id):
        """Get a registered face by id"""
        return jsonify(recognizer.get_identity(identity_id).to_dict())

    @app.route('/api/face/<identity_id>', methods=['DELETE'])
    def delete_face(identity_id):
        """Delete a registered face; absent ids are not an error"""
        deleted = recognizer.delete_identity(identity_id)
        return jsonify({'id': identity_id, 'deleted': deleted})

    return app
