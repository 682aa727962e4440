from flask import Blueprint, request, jsonify, session
import bcrypt
import logging
import models
from models import db
from datetime import datetime
from sqlalchemy.exc import IntegrityError
from subscriptions import SubscriptionRepository, SubscriptionService
from utils import (
    error_response, describe_tax_id, clean_tax_id, validate_email,
    validate_json_structure, sanitize_input, mask_tax_id, log_success,
)

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__, url_prefix='/auth')

MIN_PASSWORD_LENGTH = 8


def require_login():
    """Return the logged-in user, or an error response tuple"""
    if 'user_id' not in session:
        return error_response('permission', 'No autorizado', status_code=401)

    user = db.session.get(models.User, session['user_id'])
    if not user or not user.active:
        session.clear()
        return error_response('permission', 'Usuario no encontrado', status_code=401)

    return user


def require_admin():
    user = require_login()
    if not isinstance(user, models.User):
        return user
    if user.role != models.UserRole.ADMIN:
        return error_response('permission', 'Acceso solo para administradores', status_code=403)
    return user


def _user_payload(user):
    return {
        'id': user.id,
        'email': user.email,
        'name': user.name,
        'tax_id': user.tax_id,
        'role': user.role.value,
    }


def _start_session(user):
    session.clear()
    session['user_id'] = user.id
    session['email'] = user.email
    session['role'] = user.role.value


@bp.route('/register', methods=['POST'])
def register():
    """Create a tenant account on the free plan"""
    data = request.get_json(silent=True)
    structure = validate_json_structure(data, ['email', 'password', 'name', 'tax_id'])
    if not structure['valid']:
        return error_response('validation', structure['message'])

    email_check = validate_email(data['email'])
    if not email_check['valid']:
        return error_response('validation', email_check['message'], field='email')

    password = str(data['password'])
    if len(password) < MIN_PASSWORD_LENGTH:
        return error_response('validation',
                              f'La contraseña debe tener al menos {MIN_PASSWORD_LENGTH} caracteres',
                              field='password')

    tax_check = describe_tax_id(data['tax_id'])
    if not tax_check['valid']:
        return error_response('validation', tax_check['message'], field='tax_id')

    email = email_check['formatted']
    if models.User.query.filter_by(email=email).first():
        return error_response('conflict', 'Ya existe una cuenta con este email', field='email', status_code=409)

    try:
        user = models.User(
            email=email,
            password_hash=bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8'),
            name=sanitize_input(data['name'], 200),
            tax_id=clean_tax_id(data['tax_id']),
            role=models.UserRole.USER,
        )
        db.session.add(user)
        db.session.flush()

        SubscriptionService(SubscriptionRepository(db.session)).create_or_update(user.id, 'free')
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return error_response('conflict', 'Ya existe una cuenta con este email', field='email', status_code=409)

    _start_session(user)
    log_success('user_registered', f'Cuenta creada para {email}', {'tax_id': mask_tax_id(user.tax_id)})

    return jsonify({
        'success': True,
        'message': 'Cuenta creada exitosamente',
        'user': _user_payload(user)
    }), 201


@bp.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True)
    structure = validate_json_structure(data, ['email', 'password'])
    if not structure['valid']:
        return error_response('validation', 'Email y contraseña son requeridos')

    email = str(data['email']).strip().lower()
    user = models.User.query.filter_by(email=email, active=True).first()

    password_valid = False
    if user:
        try:
            password_valid = bcrypt.checkpw(str(data['password']).encode('utf-8'),
                                            user.password_hash.encode('utf-8'))
        except ValueError:
            logger.warning(f"Hash de contraseña inválido para usuario {user.id}")
            password_valid = False

    if not password_valid:
        return error_response('permission', 'Email o contraseña incorrectos', status_code=401)

    user.last_login = datetime.utcnow()
    db.session.commit()

    _start_session(user)
    return jsonify({
        'success': True,
        'message': 'Inicio de sesión exitoso',
        'user': _user_payload(user)
    })


@bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({
        'success': True,
        'message': 'Sesión cerrada exitosamente'
    })


@bp.route('/me')
def me():
    """Get current logged in user info"""
    user = require_login()
    if not isinstance(user, models.User):
        return user

    return jsonify(_user_payload(user))
