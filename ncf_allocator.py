"""
NCF sequence allocation

Reserves the next number of a tenant's active numbering batch with a single
conditional UPDATE ... RETURNING, so two concurrent requests can never
observe and take the same cursor value. The reservation joins the caller's
transaction: rolling it back also gives the number back.
"""
import logging
from typing import NamedTuple, Optional, Tuple

from sqlalchemy import update, select

from models import db, NumberingBatch, SeriesPrefix
from utils import local_today

logger = logging.getLogger(__name__)

ELECTRONIC_PADDING = 10
TRADITIONAL_PADDING = 8


class ReservedSequence(NamedTuple):
    batch_id: int
    number: int
    identifier: str


def render_identifier(series_prefix: str, document_type: str, number: int) -> str:
    """
    Build the fiscal identifier: serie + tipo + secuencia con ceros a la izquierda

    >>> render_identifier('E', '32', 7)
    'E320000000007'
    >>> render_identifier('B', '01', 7)
    'B0100000007'
    """
    if series_prefix == SeriesPrefix.ELECTRONIC.value:
        width = ELECTRONIC_PADDING
    else:
        width = TRADITIONAL_PADDING
    return f"{series_prefix}{document_type}{number:0{width}d}"


def reserve_sequence(owner_id: int, document_type: str, session=None, today=None) -> Optional[ReservedSequence]:
    """
    Atomically take the next number from the owner's active batch

    Args:
        owner_id: Tenant (user) issuing the document
        document_type: Two-digit NCF type ('31', '32', '34', '01', ...)
        session: SQLAlchemy session holding the caller's transaction
        today: Date used for the expiry filter (defaults to the local date in Santo Domingo)

    Returns:
        ReservedSequence, or None when no active, unexpired batch has numbers left
    """
    if session is None:
        session = db.session
    today = today or local_today()

    available = (
        NumberingBatch.owner_id == owner_id,
        NumberingBatch.document_type == document_type,
        NumberingBatch.is_active.is_(True),
        NumberingBatch.cursor < NumberingBatch.range_end,
        NumberingBatch.expires_at >= today,
    )
    # Exactly one batch advances, even if two were left active
    target_batch = (
        select(NumberingBatch.id)
        .where(*available)
        .order_by(NumberingBatch.id)
        .limit(1)
        .scalar_subquery()
    )
    stmt = (
        update(NumberingBatch)
        .where(NumberingBatch.id == target_batch, *available)
        .values(cursor=NumberingBatch.cursor + 1)
        .returning(NumberingBatch.id, NumberingBatch.series_prefix, NumberingBatch.cursor)
        .execution_options(synchronize_session=False)
    )
    row = session.execute(stmt).first()

    if row is None:
        logger.warning(f"Sin secuencia NCF disponible: owner={owner_id} tipo={document_type}")
        return None

    batch_id, series_prefix, number = row
    identifier = render_identifier(series_prefix, document_type, number)
    logger.info(f"NCF reservado {identifier} (lote {batch_id}, owner={owner_id})")
    return ReservedSequence(batch_id=batch_id, number=number, identifier=identifier)


def allocate_sequence(owner_id: int, document_type: str, session=None, today=None) -> Optional[str]:
    """Reserve the next NCF and return only its rendered identifier, or None"""
    reserved = reserve_sequence(owner_id, document_type, session=session, today=today)
    return reserved.identifier if reserved else None


def explain_unavailable(owner_id: int, document_type: str, session=None, today=None) -> Tuple[str, str]:
    """
    Tell the user why no number could be reserved

    Only reads; call it after reserve_sequence returned None.

    Returns:
        tuple: (code, message)
    """
    if session is None:
        session = db.session
    today = today or local_today()

    active_batches = session.execute(
        select(NumberingBatch).where(
            NumberingBatch.owner_id == owner_id,
            NumberingBatch.document_type == document_type,
            NumberingBatch.is_active.is_(True),
        )
    ).scalars().all()

    if not active_batches:
        return (
            'NO_ACTIVE_BATCH',
            f'No hay secuencias NCF disponibles para el tipo {document_type}. Configure un lote en Configuración.'
        )

    if all(batch.expires_at < today for batch in active_batches):
        return (
            'BATCH_EXPIRED',
            'El rango de NCF ha vencido. Configure un nuevo lote en Configuración.'
        )

    return (
        'BATCH_EXHAUSTED',
        f'La secuencia NCF del tipo {document_type} está agotada. Registre un nuevo lote autorizado por la DGII.'
    )
