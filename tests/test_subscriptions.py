"""
Tests del servicio de suscripciones (planes, vencimiento, período de gracia, cuota)
"""
from datetime import datetime, timedelta

import pytest

from models import db, User, UserRole
from subscriptions import (
    PLANS, GRACE_PERIOD_DAYS, SubscriptionError, SubscriptionRepository, SubscriptionService,
)

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def service(app_context):
    return SubscriptionService(SubscriptionRepository(db.session))


@pytest.fixture
def owner(app_context):
    """Usuario sin suscripción registrada"""
    user = User(email='plan@test.do', password_hash="not-used", name="Plan",
                tax_id='101010101', role=UserRole.USER)
    db.session.add(user)
    db.session.commit()
    return user


class TestPlans:

    def test_catalogue(self):
        assert PLANS['free']['invoices_per_month'] == 5
        assert PLANS['pro']['price_monthly'] == 950
        assert PLANS['pro']['price_annual'] == 9500
        assert PLANS['pro']['invoices_per_month'] == -1
        assert PLANS['premium']['available'] is False

    def test_user_without_subscription_is_on_free_plan(self, service, owner):
        assert service.get_plan(owner.id)['id'] == 'free'
        assert service.is_active(owner.id, NOW) is True


class TestCreateOrUpdate:

    def test_free_plan_never_expires(self, service, owner):
        subscription = service.create_or_update(owner.id, 'free', now=NOW)
        assert subscription.expires_at is None

    def test_paid_plan_expires_in_thirty_days(self, service, owner):
        subscription = service.create_or_update(owner.id, 'pro', now=NOW)
        assert subscription.expires_at == NOW + timedelta(days=30)
        assert service.get_plan(owner.id)['id'] == 'pro'

    def test_update_replaces_plan(self, service, owner):
        service.create_or_update(owner.id, 'pro', now=NOW)
        subscription = service.create_or_update(owner.id, 'free', now=NOW)
        assert subscription.plan_id == 'free'
        assert subscription.expires_at is None

    def test_unknown_plan(self, service, owner):
        with pytest.raises(SubscriptionError, match='Plan no válido'):
            service.create_or_update(owner.id, 'enterprise')

    def test_unavailable_plan(self, service, owner):
        with pytest.raises(SubscriptionError, match='no está disponible'):
            service.create_or_update(owner.id, 'premium')


class TestExtendAndPayments:

    def test_extend_from_current_expiration(self, service, owner):
        service.create_or_update(owner.id, 'pro', now=NOW)
        subscription = service.extend(owner.id, days=30, now=NOW + timedelta(days=10))
        assert subscription.expires_at == NOW + timedelta(days=60)

    def test_extend_after_lapse_starts_from_now(self, service, owner):
        service.create_or_update(owner.id, 'pro', now=NOW)
        later = NOW + timedelta(days=45)
        subscription = service.extend(owner.id, days=30, now=later)
        assert subscription.expires_at == later + timedelta(days=30)

    def test_extend_free_plan_is_noop(self, service, owner):
        service.create_or_update(owner.id, 'free', now=NOW)
        assert service.extend(owner.id).expires_at is None

    def test_extend_without_subscription(self, service, owner):
        with pytest.raises(SubscriptionError):
            service.extend(owner.id)

    def test_add_payment(self, service, owner):
        subscription = service.create_or_update(owner.id, 'pro', now=NOW)
        payment = service.add_payment(owner.id, 950, transaction_id='TX-1', now=NOW)
        db.session.commit()

        assert payment.currency == 'DOP'
        assert payment.status == 'completed'
        assert [p.transaction_id for p in subscription.payments] == ['TX-1']


class TestIsActive:

    def test_paid_plan_active_before_expiration(self, service, owner):
        service.create_or_update(owner.id, 'pro', now=NOW)
        assert service.is_active(owner.id, NOW + timedelta(days=29)) is True

    def test_grace_period_after_expiration(self, service, owner):
        service.create_or_update(owner.id, 'pro', now=NOW)
        expiry = NOW + timedelta(days=30)

        assert service.is_active(owner.id, expiry + timedelta(days=GRACE_PERIOD_DAYS - 1)) is True
        assert service.status(owner.id, expiry + timedelta(days=1))['in_grace_period'] is True
        assert service.is_active(owner.id, expiry + timedelta(days=GRACE_PERIOD_DAYS + 1)) is False

    def test_cancelled_keeps_access_until_expiration(self, service, owner):
        service.create_or_update(owner.id, 'pro', now=NOW)
        service.cancel(owner.id)
        expiry = NOW + timedelta(days=30)

        assert service.is_active(owner.id, expiry - timedelta(days=1)) is True
        assert service.is_active(owner.id, expiry + timedelta(days=1)) is False

    def test_cancel_without_subscription(self, service, owner):
        with pytest.raises(SubscriptionError):
            service.cancel(owner.id)


class TestInvoiceQuota:

    def test_free_plan_under_limit(self, service, owner):
        service.create_or_update(owner.id, 'free', now=NOW)
        assert service.check_invoice_quota(owner.id, 4, now=NOW)['allowed'] is True

    def test_free_plan_at_limit(self, service, owner):
        service.create_or_update(owner.id, 'free', now=NOW)
        quota = service.check_invoice_quota(owner.id, 5, now=NOW)
        assert quota['allowed'] is False
        assert quota['code'] == 'INVOICE_LIMIT_REACHED'

    def test_pro_plan_is_unlimited(self, service, owner):
        service.create_or_update(owner.id, 'pro', now=NOW)
        assert service.check_invoice_quota(owner.id, 10000, now=NOW)['allowed'] is True

    def test_expired_subscription_blocks_issuance(self, service, owner):
        service.create_or_update(owner.id, 'pro', now=NOW)
        quota = service.check_invoice_quota(owner.id, 0, now=NOW + timedelta(days=60))
        assert quota['allowed'] is False
        assert quota['code'] == 'SUBSCRIPTION_EXPIRED'
