from flask import Blueprint, request, jsonify
import models
from models import db
from datetime import datetime, timedelta, date
from sqlalchemy.exc import IntegrityError
import logging
from invoicing import (
    IssuanceError, issue_invoice, issue_credit_note, cancel_document, convert_quote,
    compute_totals, parse_items,
)
from rnc_lookup import lookup_taxpayer
from routes.auth import require_login
from utils import (
    error_response, describe_tax_id, clean_tax_id, sanitize_input, sanitize_phone,
    validate_email, mask_tax_id, log_success, local_today,
)

# Configure logging
logger = logging.getLogger(__name__)

bp = Blueprint('api', __name__, url_prefix='/api')

CUSTOMER_IMPORT_MAX_ROWS = 20000
QUOTE_VALIDITY_DAYS = 15


def issuance_error_response(e, log_context=None):
    """Map an IssuanceError to the standard error payload"""
    if e.status_code == 404:
        error_type = 'not_found'
    elif e.status_code == 409:
        error_type = 'conflict'
    elif e.status_code == 403:
        error_type = 'permission'
    elif e.code == 'VALIDATION':
        error_type = 'validation'
    else:
        error_type = 'business'
    return error_response(error_type, e.message, code=e.code, status_code=e.status_code,
                          log_context=log_context)


def concurrency_error_response(e, log_context=None):
    logger.warning(f"IntegrityError al emitir comprobante: {e}")
    return error_response(
        'conflict',
        'Error de concurrencia al generar NCF. Intente nuevamente.',
        code='SEQUENCE_CONFLICT',
        status_code=409,
        log_context=log_context,
    )


def server_error_response(message, e, log_context=None):
    logger.error(f"{message}: {e}", exc_info=True)
    return error_response('server', message, status_code=500, log_context=log_context)


def _pagination():
    page = max(1, request.args.get('page', 1, type=int) or 1)
    limit = min(500, max(10, request.args.get('limit', 50, type=int) or 50))
    return page, limit


# --- Facturas ---

@bp.route('/invoices')
def list_invoices():
    user = require_login()
    if not isinstance(user, models.User):
        return user

    page, limit = _pagination()
    query = models.FiscalDocument.query.filter_by(owner_id=user.id)

    status = request.args.get('status')
    if status:
        try:
            query = query.filter(models.FiscalDocument.status == models.DocumentStatus(status))
        except ValueError:
            return error_response('validation', f'Estado inválido: {status}', field='status')

    total = query.count()
    documents = query.order_by(models.FiscalDocument.issued_at.desc(), models.FiscalDocument.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()

    return jsonify({
        'data': [document.to_dict() for document in documents],
        'total': total,
        'page': page,
        'limit': limit,
        'pages': (total + limit - 1) // limit,
    })


@bp.route('/invoices', methods=['POST'])
def create_invoice():
    """Issue an invoice with the next NCF of the active batch"""
    user = require_login()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return error_response('validation', 'Datos no proporcionados')

    log_context = {'document_type': data.get('document_type'),
                   'client_tax_id': mask_tax_id(data.get('client_tax_id'))}
    try:
        document = issue_invoice(user, data)
    except IssuanceError as e:
        return issuance_error_response(e, log_context)
    except IntegrityError as e:
        return concurrency_error_response(e, log_context)
    except Exception as e:
        return server_error_response('Error interno al emitir la factura', e, log_context)

    return jsonify({
        'success': True,
        'message': 'Factura creada exitosamente',
        'ncf': document.sequence_identifier,
        'invoice': document.to_dict()
    }), 201


@bp.route('/invoices/<int:document_id>/credit-note', methods=['POST'])
def create_credit_note(document_id):
    """Annul an invoice by issuing a credit note"""
    user = require_login()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return error_response('validation', 'Los datos deben ser un objeto JSON válido')

    log_context = {'document_id': document_id}
    try:
        note = issue_credit_note(user, document_id, reason=data.get('reason'))
    except IssuanceError as e:
        return issuance_error_response(e, log_context)
    except IntegrityError as e:
        return concurrency_error_response(e, log_context)
    except Exception as e:
        return server_error_response('Error interno al emitir la nota de crédito', e, log_context)

    return jsonify({
        'success': True,
        'message': 'Nota de crédito emitida exitosamente',
        'ncf': note.sequence_identifier,
        'credit_note': note.to_dict()
    }), 201


@bp.route('/invoices/<int:document_id>/cancel', methods=['POST'])
def cancel_invoice(document_id):
    user = require_login()
    if not isinstance(user, models.User):
        return user

    try:
        document = cancel_document(user, document_id)
    except IssuanceError as e:
        return issuance_error_response(e, {'document_id': document_id})

    return jsonify({
        'success': True,
        'message': f'Documento {document.sequence_identifier} cancelado',
        'invoice': document.to_dict()
    })


# --- Clientes ---

@bp.route('/customers')
def list_customers():
    user = require_login()
    if not isinstance(user, models.User):
        return user

    customers = models.Customer.query.filter_by(owner_id=user.id).order_by(models.Customer.name).all()
    return jsonify([customer.to_dict() for customer in customers])


def _customer_fields(row):
    """Sanitized customer attributes from a payload row (accepts Spanish keys)"""
    email_check = validate_email(row.get('email') or row.get('correo') or '')
    return {
        'name': sanitize_input(row.get('name') or row.get('nombre') or '', 200),
        'phone': sanitize_phone(row.get('phone') or row.get('telefono') or ''),
        'email': email_check['formatted'] if email_check['valid'] else None,
        'address': sanitize_input(row.get('address') or row.get('direccion') or '', 300),
        'notes': sanitize_input(row.get('notes') or row.get('notas') or '', 500),
    }


def _upsert_customer(owner_id, tax_id, fields):
    customer = models.Customer.query.filter_by(owner_id=owner_id, tax_id=tax_id).first()
    created = customer is None
    if created:
        customer = models.Customer(owner_id=owner_id, tax_id=tax_id)
        db.session.add(customer)
    for key, value in fields.items():
        if value or key == 'name':
            setattr(customer, key, value)
    return customer, created


@bp.route('/customers', methods=['POST'])
def save_customer():
    """Create or update a customer by RNC/Cédula"""
    user = require_login()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return error_response('validation', 'Datos no proporcionados')

    fields = _customer_fields(data)
    tax_id = clean_tax_id(data.get('tax_id') or data.get('rnc'))
    if not fields['name'] or not tax_id:
        return error_response('validation', 'Nombre y RNC son requeridos')

    tax_check = describe_tax_id(tax_id)
    if not tax_check['valid']:
        return error_response('validation', tax_check['message'], field='tax_id')

    try:
        customer, created = _upsert_customer(user.id, tax_id, fields)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return error_response('conflict', 'El cliente ya existe', status_code=409)

    return jsonify(customer.to_dict()), 201 if created else 200


@bp.route('/customers/import', methods=['POST'])
def import_customers():
    """Bulk upsert customers from a JSON array"""
    user = require_login()
    if not isinstance(user, models.User):
        return user

    rows = request.get_json(silent=True)
    if not isinstance(rows, list):
        return error_response('validation', 'Se espera un arreglo de clientes.')
    if len(rows) > CUSTOMER_IMPORT_MAX_ROWS:
        return error_response('validation',
                              f'Máximo {CUSTOMER_IMPORT_MAX_ROWS} clientes por importación. Divide tu archivo.')

    imported = 0
    updated = 0
    errors = []
    # Fila 1 es el encabezado del archivo original
    for index, row in enumerate(rows, start=2):
        if not isinstance(row, dict):
            continue
        tax_id = clean_tax_id(row.get('tax_id') or row.get('rnc'))
        fields = _customer_fields(row)
        tax_check = describe_tax_id(tax_id)
        if not tax_check['valid']:
            errors.append(f'Fila {index}: {tax_check["message"]}')
            continue
        if not fields['name']:
            errors.append(f'Fila {index}: Nombre requerido.')
            continue

        _, created = _upsert_customer(user.id, tax_id, fields)
        db.session.flush()
        if created:
            imported += 1
        else:
            updated += 1

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return error_response('conflict', 'Clientes duplicados en la importación', status_code=409)

    total = imported + updated
    if total:
        message = f'{total} cliente(s) procesados ({imported} nuevos, {updated} actualizados).'
        if errors:
            message += f' {len(errors)} fila(s) con error.'
    else:
        message = 'No se importó ningún cliente. Revisa el formato (RNC 9/11 dígitos, nombre obligatorio).'

    log_success('customers_imported', message, {'imported': imported, 'updated': updated})
    return jsonify({'message': message, 'imported': imported, 'updated': updated, 'errors': errors[:10]})


@bp.route('/customers/<int:customer_id>', methods=['DELETE'])
def delete_customer(customer_id):
    user = require_login()
    if not isinstance(user, models.User):
        return user

    customer = models.Customer.query.filter_by(id=customer_id, owner_id=user.id).first()
    if not customer:
        return error_response('not_found', 'Cliente no encontrado', status_code=404)

    db.session.delete(customer)
    db.session.commit()
    return jsonify({'success': True, 'message': 'Cliente eliminado'})


# --- Consulta de RNC ---

@bp.route('/rnc/<number>')
def get_rnc(number):
    result = lookup_taxpayer(number)
    if not result['valid']:
        return jsonify({'valid': False, 'message': f'Documento inválido: {result["message"]}'}), 400
    return jsonify(result)


@bp.route('/validate-rnc', methods=['POST'])
def validate_rnc():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data.get('rnc'):
        return jsonify({'valid': False, 'message': 'RNC requerido'}), 400

    result = lookup_taxpayer(data['rnc'])
    if not result['valid']:
        return jsonify({'valid': False, 'message': f'Documento inválido: {result["message"]}'})
    return jsonify({'valid': True, 'name': result['name'], 'type': result['type']})


# --- Cotizaciones ---

@bp.route('/quotes')
def list_quotes():
    user = require_login()
    if not isinstance(user, models.User):
        return user

    quotes = models.Quote.query.filter_by(owner_id=user.id) \
        .order_by(models.Quote.created_at.desc(), models.Quote.id.desc()).all()
    return jsonify([quote.to_dict() for quote in quotes])


@bp.route('/quotes', methods=['POST'])
def create_quote():
    """Store a quote; no NCF is consumed until it is converted"""
    user = require_login()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return error_response('validation', 'Datos no proporcionados')

    client_name = sanitize_input(data.get('client_name', ''), 200)
    if not client_name:
        return error_response('validation', 'El nombre del cliente es requerido', field='client_name')

    try:
        items = parse_items(data.get('items'))
    except IssuanceError as e:
        return issuance_error_response(e)

    valid_until = local_today() + timedelta(days=QUOTE_VALIDITY_DAYS)
    if data.get('valid_until'):
        try:
            valid_until = date.fromisoformat(str(data['valid_until'])[:10])
        except ValueError:
            return error_response('validation', 'Fecha de validez inválida', field='valid_until')

    quote = models.Quote(
        owner_id=user.id,
        client_name=client_name,
        client_tax_id=clean_tax_id(data.get('client_tax_id')),
        items=items,
        status='draft',
        valid_until=valid_until,
        created_at=datetime.utcnow(),
    )
    db.session.add(quote)
    db.session.commit()

    payload = quote.to_dict()
    payload.update(compute_totals(items))
    return jsonify(payload), 201


@bp.route('/quotes/<int:quote_id>/convert', methods=['POST'])
def convert_quote_to_invoice(quote_id):
    user = require_login()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return error_response('validation', 'Datos no proporcionados')

    log_context = {'quote_id': quote_id, 'document_type': data.get('document_type')}
    try:
        document = convert_quote(user, quote_id, str(data.get('document_type', '')),
                                 payment_type=data.get('payment_type'))
    except IssuanceError as e:
        return issuance_error_response(e, log_context)
    except IntegrityError as e:
        return concurrency_error_response(e, log_context)
    except Exception as e:
        return server_error_response('Error interno al convertir la cotización', e, log_context)

    return jsonify({
        'success': True,
        'message': 'Cotización convertida en factura',
        'ncf': document.sequence_identifier,
        'invoice': document.to_dict()
    }), 201
