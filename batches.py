"""
NCF numbering batch configuration

Creating, editing, deactivating and deleting the DGII-authorized ranges a
tenant issues from. Every change leaves a NumberingBatchAudit snapshot.
"""
import logging
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError

from models import (
    db, NumberingBatch, NumberingBatchAudit, SeriesPrefix,
    ELECTRONIC_DOCUMENT_TYPES, TRADITIONAL_DOCUMENT_TYPES,
)
from utils import validate_integer_range, log_success

logger = logging.getLogger(__name__)

MAX_SEQUENCE = {
    SeriesPrefix.ELECTRONIC.value: 9999999999,
    SeriesPrefix.TRADITIONAL.value: 99999999,
}


class BatchConfigurationError(ValueError):
    def __init__(self, message, code='VALIDATION', status_code=400):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


def series_for(sequence_type):
    """'traditional' -> B, anything else -> E"""
    if sequence_type == 'traditional':
        return SeriesPrefix.TRADITIONAL.value
    return SeriesPrefix.ELECTRONIC.value


def _parse_expiry(value):
    if isinstance(value, date):
        return value
    if not value:
        raise BatchConfigurationError('La fecha de vencimiento es requerida')
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise BatchConfigurationError('Fecha de vencimiento inválida (use AAAA-MM-DD)')


def _validate_range(series_prefix, range_start, range_end):
    maximum = MAX_SEQUENCE[series_prefix]
    start_check = validate_integer_range(range_start, 1, maximum, 'Número inicial')
    if not start_check['valid']:
        raise BatchConfigurationError(start_check['message'])
    end_check = validate_integer_range(range_end, 1, maximum, 'Número final')
    if not end_check['valid']:
        raise BatchConfigurationError(end_check['message'])
    if end_check['value'] < start_check['value']:
        raise BatchConfigurationError('El número final debe ser mayor o igual al inicial')
    return start_check['value'], end_check['value']


def _validate_document_type(series_prefix, document_type):
    catalogue = ELECTRONIC_DOCUMENT_TYPES if series_prefix == SeriesPrefix.ELECTRONIC.value \
        else TRADITIONAL_DOCUMENT_TYPES
    if document_type not in catalogue:
        raise BatchConfigurationError(
            f'Tipo {document_type} no pertenece a la serie {series_prefix}. '
            f'Tipos válidos: {", ".join(sorted(catalogue))}'
        )


def _audit(batch_id, user_id, action, before=None, after=None):
    db.session.add(NumberingBatchAudit(
        batch_id=batch_id,
        user_id=user_id,
        action=action,
        before_json=before,
        after_json=after,
    ))


def _get_owned(owner, batch_id):
    batch = NumberingBatch.query.filter_by(id=batch_id, owner_id=owner.id).first()
    if batch is None:
        raise BatchConfigurationError('Lote NCF no encontrado', code='NOT_FOUND', status_code=404)
    return batch


def create_batch(owner, document_type, sequence_type, range_start, range_end, expires_at):
    """
    Register a new authorized range and make it the active one

    Prior active batches of the same owner, type and series are deactivated
    in the same transaction.
    """
    series_prefix = series_for(sequence_type)
    document_type = str(document_type or '').strip()
    try:
        _validate_document_type(series_prefix, document_type)
        range_start, range_end = _validate_range(series_prefix, range_start, range_end)
        expiry = _parse_expiry(expires_at)

        superseded = NumberingBatch.query.filter_by(
            owner_id=owner.id,
            document_type=document_type,
            series_prefix=series_prefix,
            is_active=True,
        ).all()
        for previous in superseded:
            before = previous.to_dict()
            previous.is_active = False
            _audit(previous.id, owner.id, 'superseded', before, previous.to_dict())
        # Desactivar antes de insertar: solo puede haber un lote activo por tipo
        db.session.flush()

        batch = NumberingBatch(
            owner_id=owner.id,
            document_type=document_type,
            series_prefix=series_prefix,
            range_start=range_start,
            range_end=range_end,
            cursor=range_start - 1,
            expires_at=expiry,
            is_active=True,
            created_at=datetime.utcnow(),
        )
        db.session.add(batch)
        db.session.flush()
        _audit(batch.id, owner.id, 'created', None, batch.to_dict())
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise BatchConfigurationError(
            f'Ya existe un lote activo para el tipo {document_type}. Intente nuevamente.',
            code='BATCH_CONFLICT',
            status_code=409
        )
    except Exception:
        db.session.rollback()
        raise

    log_success('batch_created', f'Lote {series_prefix}{document_type} {range_start}-{range_end} registrado', {
        'batch_id': batch.id,
        'superseded': len(superseded),
    })
    return batch


def update_batch(owner, batch_id, changes):
    """Edit range or expiry; only allowed while no number has been issued"""
    try:
        batch = _get_owned(owner, batch_id)
        if not batch.is_unused:
            raise BatchConfigurationError(
                'No se puede editar un lote que ya emitió comprobantes. Registre un nuevo lote.',
                code='BATCH_IN_USE'
            )

        before = batch.to_dict()
        range_start, range_end = _validate_range(
            batch.series_prefix,
            changes.get('range_start', batch.range_start),
            changes.get('range_end', batch.range_end),
        )
        batch.range_start = range_start
        batch.range_end = range_end
        batch.cursor = range_start - 1
        if 'expires_at' in changes:
            batch.expires_at = _parse_expiry(changes['expires_at'])

        _audit(batch.id, owner.id, 'edited', before, batch.to_dict())
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success('batch_updated', f'Lote {batch.id} actualizado', {'batch_id': batch.id})
    return batch


def delete_batch(owner, batch_id):
    """Remove a batch that never issued a number"""
    try:
        batch = _get_owned(owner, batch_id)
        if not batch.is_unused:
            raise BatchConfigurationError(
                'No se puede eliminar un lote que ya emitió comprobantes. Desactívelo en su lugar.',
                code='BATCH_IN_USE'
            )
        snapshot = batch.to_dict()
        _audit(batch.id, owner.id, 'deleted', snapshot, None)
        db.session.delete(batch)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success('batch_deleted', f'Lote {batch_id} eliminado', {'batch_id': batch_id})
    return snapshot


def deactivate_batch(owner, batch_id):
    """Stop issuing from a batch; its cursor stays where it is"""
    try:
        batch = _get_owned(owner, batch_id)
        if batch.is_active:
            before = batch.to_dict()
            batch.is_active = False
            _audit(batch.id, owner.id, 'deactivated', before, batch.to_dict())
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success('batch_deactivated', f'Lote {batch.id} desactivado', {'batch_id': batch.id})
    return batch
