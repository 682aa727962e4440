from flask import Blueprint, request, jsonify
import models
from models import db
from datetime import datetime
from sqlalchemy import func
import logging
from routes.auth import require_login
from utils import (
    error_response, describe_tax_id, clean_tax_id, validate_ncf_structure,
    validate_numeric_range, validate_integer_range, validate_json_structure,
    sanitize_input, log_success, mask_tax_id, local_now, local_to_utc, month_bounds_utc,
)

logger = logging.getLogger(__name__)

bp = Blueprint('expenses', __name__, url_prefix='/api')

MAX_AMOUNT = 999999999
EXPENSE_PAYMENT_METHODS = ('01', '02', '03', '04', '05', '06', '07')


@bp.route('/expenses')
def list_expenses():
    user = require_login()
    if not isinstance(user, models.User):
        return user

    query = models.Expense.query.filter_by(owner_id=user.id).order_by(models.Expense.expense_date.desc())

    page = request.args.get('page', type=int)
    limit = request.args.get('limit', type=int)
    if page and limit:
        limit = min(limit, 500)
        total = query.count()
        expenses = query.offset((page - 1) * limit).limit(limit).all()
        return jsonify({
            'data': [expense.to_dict() for expense in expenses],
            'total': total,
            'page': page,
            'limit': limit,
            'pages': (total + limit - 1) // limit,
        })

    return jsonify([expense.to_dict() for expense in query.all()])


@bp.route('/expenses', methods=['POST'])
def create_expense():
    """Record a supplier expense backed by an NCF (606 data)"""
    user = require_login()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    structure = validate_json_structure(data, ['supplier_name', 'supplier_tax_id', 'ncf', 'amount', 'category'])
    if not structure['valid']:
        return error_response('validation', structure['message'])

    supplier_check = describe_tax_id(data['supplier_tax_id'])
    if not supplier_check['valid']:
        return error_response('validation', supplier_check['message'], field='supplier_tax_id')

    ncf_check = validate_ncf_structure(str(data['ncf']))
    if not ncf_check['valid']:
        return error_response('validation', ncf_check['message'], field='ncf')

    category = str(data['category']).zfill(2)
    if category not in models.EXPENSE_CATEGORIES:
        return error_response('validation', 'Categoría de gasto DGII inválida (01-11)', field='category')

    amount_check = validate_numeric_range(data['amount'], 0.01, MAX_AMOUNT, 'Monto')
    if not amount_check['valid']:
        return error_response('validation', amount_check['message'], field='amount')

    itbis_check = validate_numeric_range(data.get('itbis') or 0, 0, MAX_AMOUNT, 'ITBIS')
    if not itbis_check['valid']:
        return error_response('validation', itbis_check['message'], field='itbis')

    payment_method = str(data.get('payment_method') or '01').zfill(2)
    if payment_method not in EXPENSE_PAYMENT_METHODS:
        return error_response('validation', 'Forma de pago inválida (01-07)', field='payment_method')

    expense_date = datetime.utcnow()
    if data.get('date'):
        try:
            expense_date = local_to_utc(datetime.fromisoformat(str(data['date'])))
        except ValueError:
            return error_response('validation', 'Fecha inválida', field='date')

    expense = models.Expense(
        owner_id=user.id,
        supplier_name=sanitize_input(data['supplier_name'], 200),
        supplier_tax_id=clean_tax_id(data['supplier_tax_id']),
        ncf=ncf_check['formatted'],
        amount=round(amount_check['value'], 2),
        itbis=round(itbis_check['value'], 2),
        category=category,
        payment_method=payment_method,
        expense_date=expense_date,
    )
    db.session.add(expense)
    db.session.commit()

    log_success('expense_recorded', f'Gasto {expense.ncf} registrado', {
        'expense_id': expense.id,
        'supplier_tax_id': mask_tax_id(expense.supplier_tax_id),
    })
    return jsonify(expense.to_dict()), 201


@bp.route('/expenses/<int:expense_id>', methods=['DELETE'])
def delete_expense(expense_id):
    user = require_login()
    if not isinstance(user, models.User):
        return user

    expense = models.Expense.query.filter_by(id=expense_id, owner_id=user.id).first()
    if not expense:
        return error_response('not_found', 'Gasto no encontrado', status_code=404)

    db.session.delete(expense)
    db.session.commit()
    return jsonify({'success': True, 'message': 'Gasto eliminado'})


@bp.route('/reports/summary')
def report_summary():
    """
    Monthly fiscal summary: sales, credit notes, expenses and ITBIS balance

    Query params:
        month: 1-12 (default current month)
        year: four-digit year (default current year)
    """
    user = require_login()
    if not isinstance(user, models.User):
        return user

    now = local_now()
    month_check = validate_integer_range(request.args.get('month', now.month), 1, 12, 'Mes')
    if not month_check['valid']:
        return error_response('validation', month_check['message'], field='month')
    year_check = validate_integer_range(request.args.get('year', now.year), 2000, 2100, 'Año')
    if not year_check['valid']:
        return error_response('validation', year_check['message'], field='year')

    month, year = month_check['value'], year_check['value']
    start, end = month_bounds_utc(year, month)

    def document_totals(types):
        return db.session.query(
            func.count(models.FiscalDocument.id),
            func.coalesce(func.sum(models.FiscalDocument.subtotal), 0),
            func.coalesce(func.sum(models.FiscalDocument.itbis), 0),
            func.coalesce(func.sum(models.FiscalDocument.total), 0),
        ).filter(
            models.FiscalDocument.owner_id == user.id,
            models.FiscalDocument.issued_at >= start,
            models.FiscalDocument.issued_at < end,
            models.FiscalDocument.status != models.DocumentStatus.CANCELLED,
            models.FiscalDocument.document_type.in_(types),
        ).one()

    invoice_count, subtotal, itbis, total = document_totals(models.INVOICE_TYPES)
    note_count, note_subtotal, note_itbis, note_total = document_totals(models.CREDIT_NOTE_TYPES)

    expense_count, expense_amount, expense_itbis = db.session.query(
        func.count(models.Expense.id),
        func.coalesce(func.sum(models.Expense.amount), 0),
        func.coalesce(func.sum(models.Expense.itbis), 0),
    ).filter(
        models.Expense.owner_id == user.id,
        models.Expense.expense_date >= start,
        models.Expense.expense_date < end,
    ).one()

    itbis_collected = round(float(itbis) - float(note_itbis), 2)
    return jsonify({
        'month': month,
        'year': year,
        'count': invoice_count,
        'subtotal': round(float(subtotal), 2),
        'itbis': round(float(itbis), 2),
        'total': round(float(total), 2),
        'credit_notes': {
            'count': note_count,
            'subtotal': round(float(note_subtotal), 2),
            'itbis': round(float(note_itbis), 2),
            'total': round(float(note_total), 2),
        },
        'expenses': {
            'count': expense_count,
            'amount': round(float(expense_amount), 2),
            'itbis': round(float(expense_itbis), 2),
        },
        'itbis_collected': itbis_collected,
        'itbis_payable': round(itbis_collected - float(expense_itbis), 2),
    })
