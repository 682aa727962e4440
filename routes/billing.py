from flask import Blueprint, request, jsonify
import models
from models import db
from sqlalchemy.exc import IntegrityError
import logging
from routes.auth import require_login, require_admin
from subscriptions import PLANS, SubscriptionError, SubscriptionRepository, SubscriptionService
from utils import (
    error_response, validate_json_structure, validate_numeric_range, validate_integer_range,
    sanitize_input, log_success,
)

logger = logging.getLogger(__name__)

bp = Blueprint('billing', __name__, url_prefix='/api')


def subscription_service():
    return SubscriptionService(SubscriptionRepository(db.session))


@bp.route('/subscription/plans')
def list_plans():
    return jsonify(list(PLANS.values()))


@bp.route('/subscription/status')
def subscription_status():
    user = require_login()
    if not isinstance(user, models.User):
        return user

    return jsonify(subscription_service().status(user.id))


@bp.route('/subscription', methods=['POST'])
def change_plan():
    """Activate a plan for the current user"""
    user = require_login()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    structure = validate_json_structure(data, ['plan_id'], ['external_reference'])
    if not structure['valid']:
        return error_response('validation', structure['message'])

    try:
        subscription = subscription_service().create_or_update(
            user.id,
            str(data['plan_id']),
            external_reference=sanitize_input(data.get('external_reference') or '', 100) or None,
        )
        db.session.commit()
    except SubscriptionError as e:
        db.session.rollback()
        return error_response('validation', str(e), field='plan_id')

    log_success('subscription_changed', f'Plan {subscription.plan_id} activado', {'plan_id': subscription.plan_id})
    return jsonify(subscription.to_dict())


@bp.route('/subscription/cancel', methods=['POST'])
def cancel_subscription():
    user = require_login()
    if not isinstance(user, models.User):
        return user

    try:
        subscription = subscription_service().cancel(user.id)
        db.session.commit()
    except SubscriptionError as e:
        db.session.rollback()
        return error_response('not_found', str(e), status_code=404)

    return jsonify({
        'success': True,
        'message': 'Suscripción cancelada. Mantendrás acceso hasta el final del período pagado.',
        'subscription': subscription.to_dict()
    })


@bp.route('/admin/subscriptions/<int:user_id>/payments', methods=['POST'])
def record_payment(user_id):
    """Register a confirmed payment and extend the paid period (admin only)"""
    admin = require_admin()
    if not isinstance(admin, models.User):
        return admin

    data = request.get_json(silent=True)
    structure = validate_json_structure(data, ['amount'], ['currency', 'transaction_id', 'days'])
    if not structure['valid']:
        return error_response('validation', structure['message'])

    amount_check = validate_numeric_range(data['amount'], 0.01, 999999999, 'Monto')
    if not amount_check['valid']:
        return error_response('validation', amount_check['message'], field='amount')

    days_check = validate_integer_range(data.get('days') or 30, 1, 366, 'Días')
    if not days_check['valid']:
        return error_response('validation', days_check['message'], field='days')

    service = subscription_service()
    try:
        payment = service.add_payment(
            user_id,
            amount=round(amount_check['value'], 2),
            currency=sanitize_input(data.get('currency') or 'DOP', 3).upper(),
            transaction_id=sanitize_input(data.get('transaction_id') or '', 100) or None,
        )
        subscription = service.extend(user_id, days=days_check['value'])
        db.session.commit()
    except SubscriptionError as e:
        db.session.rollback()
        return error_response('not_found', str(e), status_code=404)
    except IntegrityError:
        db.session.rollback()
        return error_response('conflict', 'La transacción ya fue registrada', status_code=409)

    log_success('subscription_payment', f'Pago registrado para usuario {user_id}', {
        'payment_id': payment.id,
        'amount': payment.amount,
    })
    return jsonify({
        'success': True,
        'payment': {
            'id': payment.id,
            'amount': payment.amount,
            'currency': payment.currency,
            'transaction_id': payment.transaction_id,
            'paid_at': payment.paid_at.isoformat(),
        },
        'subscription': subscription.to_dict()
    }), 201
