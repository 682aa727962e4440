from flask import Blueprint, request, jsonify
import models
import logging
from batches import BatchConfigurationError, create_batch, update_batch, delete_batch, deactivate_batch
from routes.auth import require_login
from utils import error_response, validate_json_structure

logger = logging.getLogger(__name__)

bp = Blueprint('ncf', __name__, url_prefix='/api/ncf-settings')


def batch_error_response(e, batch_id=None):
    if e.status_code == 404:
        error_type = 'not_found'
    elif e.status_code == 409:
        error_type = 'conflict'
    elif e.code == 'BATCH_IN_USE':
        error_type = 'business'
    else:
        error_type = 'validation'
    return error_response(error_type, e.message, code=e.code, status_code=e.status_code,
                          log_context={'batch_id': batch_id})


@bp.route('')
def list_batches():
    """NCF batches of the current user, active first"""
    user = require_login()
    if not isinstance(user, models.User):
        return user

    batches = models.NumberingBatch.query.filter_by(owner_id=user.id).order_by(
        models.NumberingBatch.is_active.desc(),
        models.NumberingBatch.document_type,
        models.NumberingBatch.created_at.desc(),
    ).all()
    return jsonify([batch.to_dict() for batch in batches])


@bp.route('', methods=['POST'])
def register_batch():
    user = require_login()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    structure = validate_json_structure(
        data,
        ['document_type', 'range_start', 'range_end', 'expires_at'],
        ['sequence_type'],
    )
    if not structure['valid']:
        return error_response('validation', structure['message'])

    try:
        batch = create_batch(
            user,
            document_type=data['document_type'],
            sequence_type=data.get('sequence_type', 'electronic'),
            range_start=data['range_start'],
            range_end=data['range_end'],
            expires_at=data['expires_at'],
        )
    except BatchConfigurationError as e:
        return batch_error_response(e)

    return jsonify(batch.to_dict()), 201


@bp.route('/<int:batch_id>', methods=['PUT'])
def edit_batch(batch_id):
    user = require_login()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    structure = validate_json_structure(data or {}, [], ['range_start', 'range_end', 'expires_at'])
    if not structure['valid']:
        return error_response('validation', structure['message'])

    try:
        batch = update_batch(user, batch_id, data or {})
    except BatchConfigurationError as e:
        return batch_error_response(e, batch_id)

    return jsonify(batch.to_dict())


@bp.route('/<int:batch_id>', methods=['DELETE'])
def remove_batch(batch_id):
    user = require_login()
    if not isinstance(user, models.User):
        return user

    try:
        delete_batch(user, batch_id)
    except BatchConfigurationError as e:
        return batch_error_response(e, batch_id)

    return jsonify({'success': True, 'message': 'Lote NCF eliminado'})


@bp.route('/<int:batch_id>/deactivate', methods=['POST'])
def disable_batch(batch_id):
    user = require_login()
    if not isinstance(user, models.User):
        return user

    try:
        batch = deactivate_batch(user, batch_id)
    except BatchConfigurationError as e:
        return batch_error_response(e, batch_id)

    return jsonify(batch.to_dict())
