"""
Fixtures compartidos: app Flask sobre SQLite en memoria, usuarios y lotes NCF
"""
import os
from datetime import date, timedelta

import bcrypt
import pytest

# Configure environment for testing (must happen before importing main)
os.environ['SESSION_SECRET'] = 'test_secret_key_for_testing_only'
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['RATELIMIT_ENABLED'] = 'false'

from main import app
from models import db, User, UserRole, NumberingBatch
from subscriptions import SubscriptionRepository, SubscriptionService

# Rounds bajos: los hashes de prueba no necesitan ser costosos
TEST_PASSWORD = 'password123'
TEST_PASSWORD_HASH = bcrypt.hashpw(TEST_PASSWORD.encode('utf-8'), bcrypt.gensalt(rounds=4)).decode('utf-8')


@pytest.fixture(scope='session')
def test_app():
    """Fixture para configurar la aplicación en modo de testing"""
    app.config['TESTING'] = True
    app.config['WTF_CSRF_ENABLED'] = False
    app.config['DGII_RNC_API_URL'] = None
    return app


@pytest.fixture
def app_context(test_app):
    """Contexto de aplicación con esquema limpio por test"""
    with test_app.app_context():
        db.create_all()
        yield
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(test_app, app_context):
    """Fixture para el cliente de testing"""
    return test_app.test_client()


@pytest.fixture
def make_user(app_context):
    """Factory de usuarios (emisores) con su plan de suscripción"""
    counter = {'n': 0}

    def _make_user(plan_id='free', role=UserRole.USER, tax_id='130851255'):
        counter['n'] += 1
        user = User(
            email=f'usuario{counter["n"]}@test.do',
            password_hash=TEST_PASSWORD_HASH,
            name=f'Emisor {counter["n"]}',
            tax_id=tax_id,
            role=role,
        )
        db.session.add(user)
        db.session.flush()
        SubscriptionService(SubscriptionRepository(db.session)).create_or_update(user.id, plan_id)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def make_batch(app_context):
    """Factory de lotes NCF; el cursor arranca en range_start - 1"""

    def _make_batch(owner, document_type='32', series_prefix='E', range_start=1, range_end=100,
                    expires_at=None, is_active=True):
        batch = NumberingBatch(
            owner_id=owner.id,
            document_type=document_type,
            series_prefix=series_prefix,
            range_start=range_start,
            range_end=range_end,
            cursor=range_start - 1,
            expires_at=expires_at or date.today() + timedelta(days=365),
            is_active=is_active,
        )
        db.session.add(batch)
        db.session.commit()
        return batch

    return _make_batch


@pytest.fixture
def login_as(client):
    """Inicia sesión en el cliente de testing como el usuario dado"""

    def _login_as(user):
        with client.session_transaction() as sess:
            sess['user_id'] = user.id
            sess['email'] = user.email
            sess['role'] = user.role.value
        return user

    return _login_as


@pytest.fixture
def authenticated_user(make_user, login_as):
    """Emisor en plan Pro con sesión iniciada"""
    return login_as(make_user(plan_id='pro'))
