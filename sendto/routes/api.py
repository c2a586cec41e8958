import logging
import uuid

from flask import Blueprint, current_app, jsonify, request

from ..context import get_context
from ..errors import AuthError, NotRegisteredError
from ..extensions import limiter, register_limit
from ..services.uploads import upload_document

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__)


@api_bp.route("/signup-enabled", methods=["GET"])
def signup_enabled():
    return jsonify({'signupEnabled': not current_app.config.get("SIGNUP_DISABLED", True)})


@api_bp.route("/register", methods=["POST"])
@limiter.limit(register_limit)
def register():
    if current_app.config.get("SIGNUP_DISABLED", True):
        logger.warning("Signup is currently disabled")
        return jsonify({'error': 'Signup is currently disabled'}), 400
    try:
        data = request.get_json(silent=True) or {}
        link_code = data.get('linkCode')
        if not (isinstance(link_code, str) and link_code.strip()):
            return jsonify({'error': 'Link code is required'}), 400

        device_id = str(uuid.uuid4())
        auth_id = str(uuid.uuid4())
        logger.info("Registration attempt: auth_id=%s device_id=%s", auth_id, device_id)

        try:
            result = get_context().accounts.get(auth_id).register(link_code.strip(), device_id)
        except AuthError as e:
            logger.warning("Registration failed for %s: %s", auth_id, e.reason)
            return jsonify({'error': e.reason}), 400

        logger.info("Device registered: auth_id=%s device_id=%s", auth_id, result.device_id)
        return jsonify({
            'success': True,
            'authId': auth_id,
            'message': 'Device registered successfully. Use the authId for future API calls.'
        })
    except Exception as e:
        logger.exception("Registration error")
        return jsonify({'error': 'Registration failed', 'details': str(e)}), 500


@api_bp.route("/auth/<auth_id>/status", methods=["GET"])
def auth_status(auth_id):
    try:
        status = get_context().accounts.get(auth_id).get_status()
        return jsonify(status.to_dict())
    except Exception as e:
        logger.exception("Status check error for %s", auth_id)
        return jsonify({'error': 'Failed to check status', 'details': str(e)}), 500


@api_bp.route("/auth/<auth_id>", methods=["DELETE"])
def destroy_auth(auth_id):
    try:
        get_context().accounts.get(auth_id).destroy()
        return jsonify({'success': True, 'message': 'Authentication destroyed successfully'})
    except Exception as e:
        logger.exception("Auth destruction error for %s", auth_id)
        return jsonify({'error': 'Failed to destroy authentication', 'details': str(e)}), 500


@api_bp.route("/upload", methods=["POST"])
def upload():
    try:
        file = request.files.get('file')
        if file is None or file.filename == '':
            return jsonify({'error': 'No file provided'}), 400
        auth_id = (request.form.get('authId') or '').strip()
        if not auth_id:
            return jsonify({'error': 'authId is required'}), 400

        try:
            result = upload_document(
                get_context(),
                auth_id,
                file.stream,
                file.filename,
                content_type=file.mimetype or 'application/octet-stream',
            )
        except NotRegisteredError as e:
            return jsonify({'error': str(e)}), 401

        return jsonify({'success': result.success, 'fileId': result.file_id, 'jobId': result.job_id})
    except Exception as e:
        logger.exception("Error processing file upload")
        return jsonify({'error': 'Failed to process file upload', 'details': str(e)}), 500


@api_bp.route("/jobs/<job_id>", methods=["GET"])
def job_status(job_id):
    status = get_context().jobs.status(job_id)
    if status is None:
        return jsonify({'error': 'Unknown job id'}), 404
    return jsonify(status)
