"""
Subscription plans and billing state

SubscriptionService holds the business rules; SubscriptionRepository is the
durable store it is given. Build one per request from db.session.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select

from models import Subscription, SubscriptionPayment

logger = logging.getLogger(__name__)

BILLING_PERIOD_DAYS = 30
GRACE_PERIOD_DAYS = 5

# invoices_per_month: -1 = ilimitado
PLANS = {
    'free': {
        'id': 'free',
        'name': 'Free',
        'price_monthly': 0,
        'price_annual': 0,
        'currency': 'DOP',
        'invoices_per_month': 5,
        'available': True,
        'features': ['5 facturas al mes', 'Validación de RNC', 'Gestión de clientes'],
    },
    'pro': {
        'id': 'pro',
        'name': 'Pro',
        'price_monthly': 950,
        'price_annual': 9500,
        'currency': 'DOP',
        'invoices_per_month': -1,
        'available': True,
        'features': ['Facturas ilimitadas', 'Notas de crédito', 'Cotizaciones', 'Registro de gastos 606'],
    },
    'premium': {
        'id': 'premium',
        'name': 'Premium',
        'price_monthly': 2450,
        'price_annual': 24500,
        'currency': 'DOP',
        'invoices_per_month': -1,
        'available': False,
        'features': ['Todo lo de Pro', 'Múltiples usuarios', 'Soporte prioritario'],
    },
}

DEFAULT_PLAN_ID = 'free'


class SubscriptionError(ValueError):
    """Invalid subscription operation"""


class SubscriptionRepository:
    """SQLAlchemy-backed subscription store; never commits"""

    def __init__(self, session):
        self.session = session

    def get(self, owner_id) -> Optional[Subscription]:
        return self.session.execute(
            select(Subscription).where(Subscription.owner_id == owner_id)
        ).scalar_one_or_none()

    def save(self, subscription):
        self.session.add(subscription)
        self.session.flush()
        return subscription

    def add_payment(self, subscription, payment):
        subscription.payments.append(payment)
        self.session.flush()
        return payment


class SubscriptionService:
    def __init__(self, repository, plans=None):
        self.repository = repository
        self.plans = plans or PLANS

    def _require(self, owner_id):
        subscription = self.repository.get(owner_id)
        if subscription is None:
            raise SubscriptionError('Suscripción no encontrada')
        return subscription

    def get_plan(self, owner_id):
        """Plan config for the owner; users without a subscription are on the free plan"""
        subscription = self.repository.get(owner_id)
        if subscription is None:
            return self.plans[DEFAULT_PLAN_ID]
        return self.plans.get(subscription.plan_id, self.plans[DEFAULT_PLAN_ID])

    def calculate_expiration(self, plan_id, start):
        if plan_id == DEFAULT_PLAN_ID:
            return None
        return start + timedelta(days=BILLING_PERIOD_DAYS)

    def create_or_update(self, owner_id, plan_id, status='active', external_reference=None, now=None):
        """
        Activate a plan for the owner, replacing any previous one

        Args:
            owner_id: Tenant
            plan_id: 'free', 'pro' or 'premium'
            status: Initial status (default 'active')
            external_reference: Payment provider subscription reference
            now: Clock override

        Returns:
            The saved Subscription
        """
        plan = self.plans.get(plan_id)
        if plan is None:
            raise SubscriptionError(f'Plan no válido: {plan_id}')
        if not plan.get('available', True):
            raise SubscriptionError(f'El plan {plan["name"]} aún no está disponible')

        now = now or datetime.utcnow()
        subscription = self.repository.get(owner_id)
        if subscription is None:
            subscription = Subscription(owner_id=owner_id)

        subscription.plan_id = plan_id
        subscription.status = status
        subscription.started_at = now
        subscription.expires_at = self.calculate_expiration(plan_id, now)
        if external_reference:
            subscription.external_reference = external_reference

        self.repository.save(subscription)
        logger.info(f"Suscripción owner={owner_id} plan={plan_id} status={status}")
        return subscription

    def extend(self, owner_id, days=BILLING_PERIOD_DAYS, now=None):
        """Push the expiration forward after a payment; free plans are left untouched"""
        subscription = self._require(owner_id)
        if subscription.expires_at is None:
            return subscription

        now = now or datetime.utcnow()
        base = max(subscription.expires_at, now)
        subscription.expires_at = base + timedelta(days=days)
        if subscription.status == 'expired':
            subscription.status = 'active'

        self.repository.save(subscription)
        logger.info(f"Suscripción owner={owner_id} extendida hasta {subscription.expires_at.isoformat()}")
        return subscription

    def add_payment(self, owner_id, amount, currency='DOP', transaction_id=None, status='completed', now=None):
        subscription = self._require(owner_id)
        payment = SubscriptionPayment(
            amount=amount,
            currency=currency,
            transaction_id=transaction_id,
            status=status,
            paid_at=now or datetime.utcnow(),
        )
        return self.repository.add_payment(subscription, payment)

    def cancel(self, owner_id):
        """Cancel; access continues until the paid period ends"""
        subscription = self._require(owner_id)
        subscription.status = 'cancelled'
        self.repository.save(subscription)
        logger.info(f"Suscripción owner={owner_id} cancelada")
        return subscription

    def in_grace_period(self, subscription, now):
        if subscription is None or subscription.expires_at is None:
            return False
        if subscription.status == 'cancelled':
            return False
        return subscription.expires_at <= now < subscription.expires_at + timedelta(days=GRACE_PERIOD_DAYS)

    def is_active(self, owner_id, now=None):
        now = now or datetime.utcnow()
        subscription = self.repository.get(owner_id)

        if subscription is None or subscription.plan_id == DEFAULT_PLAN_ID:
            return True

        if subscription.expires_at is None:
            return subscription.status == 'active'

        if subscription.status == 'cancelled':
            return now < subscription.expires_at

        return now < subscription.expires_at + timedelta(days=GRACE_PERIOD_DAYS)

    def status(self, owner_id, now=None):
        """Summary used by the subscription status endpoint"""
        now = now or datetime.utcnow()
        subscription = self.repository.get(owner_id)
        plan = self.get_plan(owner_id)
        return {
            'plan': plan,
            'subscription': subscription.to_dict() if subscription else None,
            'active': self.is_active(owner_id, now),
            'in_grace_period': self.in_grace_period(subscription, now),
        }

    def check_invoice_quota(self, owner_id, issued_this_month, now=None):
        """
        Decide whether the owner may issue another invoice this month

        Returns:
            Dict with 'allowed' and, when refused, 'code' and 'message'
        """
        if not self.is_active(owner_id, now):
            return {
                'allowed': False,
                'code': 'SUBSCRIPTION_EXPIRED',
                'message': 'Tu membresía ha expirado. Actualiza tu plan en Configuración.',
            }

        plan = self.get_plan(owner_id)
        limit = plan['invoices_per_month']
        if 0 <= limit <= issued_this_month:
            return {
                'allowed': False,
                'code': 'INVOICE_LIMIT_REACHED',
                'message': (f'Límite del plan {plan["name"]} alcanzado ({limit} facturas/mes). '
                            'Actualiza a Pro para facturas ilimitadas.'),
            }

        return {'allowed': True, 'limit': limit, 'used': issued_this_month}
