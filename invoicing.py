"""
Fiscal document issuance

Every operation here runs in a single database transaction: the NCF
reservation, the document rows and the customer upsert are committed
together or rolled back together. A rollback also returns the reserved
sequence number to its batch.
"""
import logging
from datetime import datetime

from sqlalchemy import update, func

from models import (
    db, FiscalDocument, DocumentItem, DocumentStatus, Customer, Quote,
    INVOICE_TYPES, PAYMENT_TYPES, SeriesPrefix,
)
from ncf_allocator import reserve_sequence, explain_unavailable
from subscriptions import SubscriptionRepository, SubscriptionService
from utils import (
    PLACEHOLDER_CLIENT_NAME, clean_tax_id, validate_tax_id, validate_ncf_for_client,
    sanitize_input, calculate_itbis, mask_tax_id, log_success,
    local_now, local_to_utc, month_bounds_utc,
)

logger = logging.getLogger(__name__)

MAX_AMOUNT = 999999999
ELECTRONIC_CREDIT_NOTE = '34'
TRADITIONAL_CREDIT_NOTE = '04'


class IssuanceError(ValueError):
    """Business rule violation while issuing a fiscal document"""

    def __init__(self, message, code='VALIDATION', status_code=400):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


def parse_items(raw_items):
    """Sanitize line items; raises IssuanceError if none survive"""
    if not isinstance(raw_items, list):
        raise IssuanceError('Los items deben ser una lista')

    items = []
    for raw in raw_items[:200]:
        if not isinstance(raw, dict):
            continue
        description = sanitize_input(raw.get('description', ''), 300)
        try:
            quantity = float(raw.get('quantity', 1))
            price = float(raw.get('price', 0))
        except (TypeError, ValueError):
            raise IssuanceError(f'Cantidad o precio inválido en el item "{description}"')

        if not description:
            raise IssuanceError('Cada item requiere una descripción')
        if quantity <= 0 or quantity > MAX_AMOUNT:
            raise IssuanceError(f'Cantidad inválida en el item "{description}"')
        if price < 0 or price > MAX_AMOUNT:
            raise IssuanceError(f'Precio inválido en el item "{description}"')

        items.append({
            'description': description,
            'quantity': quantity,
            'price': price,
            'is_exempt': bool(raw.get('is_exempt', False)),
        })

    if not items:
        raise IssuanceError('Debe incluir al menos un item')
    return items


def compute_totals(items):
    """
    Calculate subtotal, ITBIS and total from sanitized items

    ITBIS (18%) applies only to non-exempt lines. Client-supplied totals
    are never trusted.
    """
    subtotal = 0.0
    taxable = 0.0
    for item in items:
        line_total = item['quantity'] * item['price']
        subtotal += line_total
        if not item['is_exempt']:
            taxable += line_total

    subtotal = round(subtotal, 2)
    itbis = calculate_itbis(taxable)
    return {
        'subtotal': subtotal,
        'itbis': itbis,
        'total': round(subtotal + itbis, 2),
    }


def _payment_breakdown(payment_type, total, mixed_payments, now):
    """Derive amount paid, balance and payment status from the payment type"""
    if payment_type == 'credito':
        return 0.0, total, 'pendiente', None

    if payment_type == 'mixto' and mixed_payments:
        paid = 0.0
        for payment in mixed_payments:
            if not isinstance(payment, dict):
                continue
            try:
                amount = float(payment.get('amount', 0))
            except (TypeError, ValueError):
                continue
            if amount > 0:
                paid += min(amount, MAX_AMOUNT)
        paid = round(paid, 2)
        balance = round(max(0.0, total - paid), 2)
        if balance <= 0:
            return paid, 0.0, 'pagado', now
        return paid, balance, 'parcial', None

    return total, 0.0, 'pagado', now


def _parse_amount(value, field_name):
    if value in (None, ''):
        return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise IssuanceError(f'{field_name} debe ser un número válido')
    if amount < 0 or amount > MAX_AMOUNT:
        raise IssuanceError(f'{field_name} fuera de rango')
    return round(amount, 2)


def _parse_issue_date(value, now):
    if not value:
        return now
    try:
        return local_to_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return now


def count_invoices_this_month(owner_id, now=None):
    """Non-cancelled invoices issued in the current local (Santo Domingo) month"""
    local = local_now(now)
    month_start, month_end = month_bounds_utc(local.year, local.month)
    return db.session.query(func.count(FiscalDocument.id)).filter(
        FiscalDocument.owner_id == owner_id,
        FiscalDocument.issued_at >= month_start,
        FiscalDocument.issued_at < month_end,
        FiscalDocument.status != DocumentStatus.CANCELLED,
        FiscalDocument.document_type.in_(INVOICE_TYPES),
    ).scalar()


def _check_quota(owner, now):
    service = SubscriptionService(SubscriptionRepository(db.session))
    quota = service.check_invoice_quota(owner.id, count_invoices_this_month(owner.id, now), now=now)
    if not quota['allowed']:
        raise IssuanceError(quota['message'], code=quota['code'], status_code=403)


def _upsert_customer(owner_id, name, tax_id, now):
    customer = Customer.query.filter_by(owner_id=owner_id, tax_id=tax_id).first()
    if customer is None:
        customer = Customer(owner_id=owner_id, tax_id=tax_id, name=name)
        db.session.add(customer)
    else:
        customer.name = name
    customer.last_invoice_at = now
    return customer


def _build_invoice(owner, data, now):
    """Validate, reserve an NCF and stage the invoice rows without committing"""
    _check_quota(owner, now)

    client_name = sanitize_input(data.get('client_name', ''), 200)
    if not client_name or client_name.upper() == PLACEHOLDER_CLIENT_NAME:
        raise IssuanceError('Indica el nombre real del cliente (no el placeholder).')

    client_tax_id = clean_tax_id(data.get('client_tax_id'))
    if not client_tax_id:
        raise IssuanceError('El RNC/Cédula del cliente es requerido')
    if not validate_tax_id(client_tax_id):
        raise IssuanceError('RNC/Cédula del cliente inválido: dígito verificador incorrecto')

    items = parse_items(data.get('items'))

    document_type = str(data.get('document_type', '')).strip()
    if document_type not in INVOICE_TYPES:
        raise IssuanceError(f'Tipo de comprobante no válido para facturar: {document_type or "vacío"}')

    client_rule = validate_ncf_for_client(document_type, client_tax_id)
    if not client_rule['valid']:
        raise IssuanceError(client_rule['message'])

    payment_type = data.get('payment_type')
    if payment_type not in PAYMENT_TYPES:
        payment_type = 'efectivo'

    totals = compute_totals(items)
    isr_retention = _parse_amount(data.get('isr_retention'), 'Retención ISR')
    itbis_retention = _parse_amount(data.get('itbis_retention'), 'Retención ITBIS')
    amount_paid, balance_due, payment_status, paid_at = _payment_breakdown(
        payment_type, totals['total'], data.get('mixed_payments'), now
    )

    reserved = reserve_sequence(owner.id, document_type)
    if reserved is None:
        code, message = explain_unavailable(owner.id, document_type)
        raise IssuanceError(message, code=code)

    document = FiscalDocument(
        owner_id=owner.id,
        batch_id=reserved.batch_id,
        document_type=document_type,
        sequence_identifier=reserved.identifier,
        status=DocumentStatus.PAID if payment_status == 'pagado' else DocumentStatus.PENDING,
        client_name=client_name,
        client_tax_id=client_tax_id,
        subtotal=totals['subtotal'],
        itbis=totals['itbis'],
        total=totals['total'],
        isr_retention=isr_retention,
        itbis_retention=itbis_retention,
        payment_type=payment_type,
        amount_paid=amount_paid,
        balance_due=balance_due,
        payment_status=payment_status,
        paid_at=paid_at,
        issued_at=_parse_issue_date(data.get('date'), now),
    )
    for item in items:
        document.items.append(DocumentItem(
            description=item['description'],
            quantity=item['quantity'],
            unit_price=item['price'],
            is_exempt=item['is_exempt'],
        ))
    db.session.add(document)

    _upsert_customer(owner.id, client_name, client_tax_id, now)
    return document


def issue_invoice(owner, data, now=None):
    """
    Issue an invoice with the next NCF of the owner's active batch

    Args:
        owner: User issuing the invoice
        data: Payload with client_name, client_tax_id, document_type, items,
              payment_type and optional retentions / mixed_payments / date
        now: Clock override

    Returns:
        The committed FiscalDocument

    Raises:
        IssuanceError: Validation, quota or sequence availability failure
    """
    now = now or datetime.utcnow()
    try:
        document = _build_invoice(owner, data, now)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success('invoice_issued', f'Factura {document.sequence_identifier} emitida', {
        'document_id': document.id,
        'ncf': document.sequence_identifier,
        'client_tax_id': mask_tax_id(document.client_tax_id),
        'total': document.total,
    })
    return document


def issue_credit_note(owner, document_id, reason=None, now=None):
    """
    Annul an invoice by issuing a credit note (type 34 or 04)

    The original is claimed with a conditional status update before any
    NCF is reserved, so a second annulment fails without consuming a number.
    """
    now = now or datetime.utcnow()
    try:
        original = FiscalDocument.query.filter_by(id=document_id, owner_id=owner.id).first()
        if original is None:
            raise IssuanceError('Factura no encontrada', code='NOT_FOUND', status_code=404)
        if original.is_credit_note:
            raise IssuanceError('No se puede anular una nota de crédito', code='INVALID_TARGET')
        if original.status == DocumentStatus.MODIFIED:
            raise IssuanceError('Esta factura ya fue anulada con una nota de crédito',
                                code='DOUBLE_ANNULMENT', status_code=409)
        if original.status == DocumentStatus.CANCELLED:
            raise IssuanceError('No se puede emitir nota de crédito sobre un documento cancelado',
                                code='INVALID_TARGET')

        claimed = db.session.execute(
            update(FiscalDocument)
            .where(FiscalDocument.id == original.id, FiscalDocument.status != DocumentStatus.MODIFIED)
            .values(status=DocumentStatus.MODIFIED)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed == 0:
            raise IssuanceError('Esta factura ya fue anulada con una nota de crédito',
                                code='DOUBLE_ANNULMENT', status_code=409)

        if original.sequence_identifier.startswith(SeriesPrefix.ELECTRONIC.value):
            note_type = ELECTRONIC_CREDIT_NOTE
        else:
            note_type = TRADITIONAL_CREDIT_NOTE

        reserved = reserve_sequence(owner.id, note_type)
        if reserved is None:
            code, message = explain_unavailable(owner.id, note_type)
            raise IssuanceError(message, code=code)

        note = FiscalDocument(
            owner_id=owner.id,
            batch_id=reserved.batch_id,
            document_type=note_type,
            sequence_identifier=reserved.identifier,
            related_document=original.sequence_identifier,
            status=DocumentStatus.PAID,
            client_name=original.client_name,
            client_tax_id=original.client_tax_id,
            subtotal=original.subtotal,
            itbis=original.itbis,
            total=original.total,
            payment_type=original.payment_type,
            amount_paid=original.total,
            balance_due=0.0,
            payment_status='pagado',
            paid_at=now,
            issued_at=now,
        )
        for item in original.items:
            note.items.append(DocumentItem(
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                is_exempt=item.is_exempt,
            ))
        db.session.add(note)

        original.status = DocumentStatus.MODIFIED
        original.related_document = reserved.identifier
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success('credit_note_issued', f'Nota de crédito {note.sequence_identifier} anula {note.related_document}', {
        'document_id': note.id,
        'ncf': note.sequence_identifier,
        'related_document': note.related_document,
        'reason': sanitize_input(reason or '', 200),
    })
    return note


def convert_quote(owner, quote_id, document_type, payment_type=None, now=None):
    """Issue an invoice from a stored quote and mark the quote converted"""
    now = now or datetime.utcnow()
    try:
        quote = Quote.query.filter_by(id=quote_id, owner_id=owner.id).first()
        if quote is None:
            raise IssuanceError('Cotización no encontrada', code='NOT_FOUND', status_code=404)
        if quote.status == 'converted':
            raise IssuanceError('La cotización ya fue convertida en factura', code='ALREADY_CONVERTED',
                                status_code=409)

        document = _build_invoice(owner, {
            'client_name': quote.client_name,
            'client_tax_id': quote.client_tax_id,
            'document_type': document_type,
            'items': quote.items,
            'payment_type': payment_type,
        }, now)
        db.session.flush()

        quote.status = 'converted'
        quote.invoice_id = document.id
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success('quote_converted', f'Cotización {quote.id} convertida en {document.sequence_identifier}', {
        'quote_id': quote.id,
        'document_id': document.id,
        'ncf': document.sequence_identifier,
    })
    return document


def cancel_document(owner, document_id, now=None):
    """Mark an invoice cancelled; its NCF stays assigned and is never reused"""
    now = now or datetime.utcnow()
    try:
        document = FiscalDocument.query.filter_by(id=document_id, owner_id=owner.id).first()
        if document is None:
            raise IssuanceError('Documento no encontrado', code='NOT_FOUND', status_code=404)
        if document.is_credit_note:
            raise IssuanceError('Las notas de crédito no se pueden cancelar', code='INVALID_TARGET')
        if document.status not in (DocumentStatus.PENDING, DocumentStatus.PAID):
            raise IssuanceError(f'No se puede cancelar un documento en estado {document.status.value}',
                                code='INVALID_STATUS', status_code=409)

        document.status = DocumentStatus.CANCELLED
        document.cancelled_at = now
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success('document_cancelled', f'Documento {document.sequence_identifier} cancelado', {
        'document_id': document.id,
        'ncf': document.sequence_identifier,
    })
    return document
