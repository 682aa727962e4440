import os
import logging
from logging.handlers import RotatingFileHandler
import sys

from flask import Flask, request, jsonify
from datetime import datetime
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.middleware.proxy_fix import ProxyFix

# Configure logging with rotation
def setup_logging():
    """
    Configura logging centralizado con rotación de archivos

    Niveles de log:
    - DEBUG: Información detallada para debugging
    - INFO: Comprobantes emitidos, lotes configurados, flujo normal
    - WARNING: Validaciones fallidas, secuencias agotadas, errores esperados
    - ERROR: Errores inesperados del servidor
    """
    log_dir = os.environ.get('LOG_DIR', 'logs')
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    log_format = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # 10 MB por archivo, mantener 10 archivos
    file_handler = RotatingFileHandler(
        filename=os.path.join(log_dir, 'facturas.log'),
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
        encoding='utf-8'
    )
    file_handler.setFormatter(log_format)
    file_handler.setLevel(logging.INFO)

    error_handler = RotatingFileHandler(
        filename=os.path.join(log_dir, 'facturas_errors.log'),
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
        encoding='utf-8'
    )
    error_handler.setFormatter(log_format)
    error_handler.setLevel(logging.ERROR)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_format)
    console_handler.setLevel(logging.DEBUG if os.environ.get("ENVIRONMENT") != "production" else logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    root_logger.addHandler(file_handler)
    root_logger.addHandler(error_handler)
    root_logger.addHandler(console_handler)

    # Reducir verbosidad de librerías externas
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    logging.info("Sistema de logging configurado correctamente")

setup_logging()

# create the app
app = Flask(__name__)

# Behind a reverse proxy (Render, nginx)
app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)
# setup a secret key, required by sessions - MUST be set in production
app.secret_key = os.environ.get("SESSION_SECRET")
if not app.secret_key:
    if os.environ.get("ENVIRONMENT") == "production":
        raise RuntimeError("SESSION_SECRET environment variable must be set in production")
    else:
        app.secret_key = "dev-secret-key-change-in-production"

csrf = CSRFProtect(app)
app.config['WTF_CSRF_TIME_LIMIT'] = 3600  # 1 hour token lifetime

limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    default_limits=["100 per hour"],
    storage_uri="memory://",
    enabled=os.environ.get("RATELIMIT_ENABLED", "true").lower() != "false",
)

app.config['SESSION_COOKIE_SECURE'] = os.environ.get("ENVIRONMENT") == "production"
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

# Optional external RNC registry (GET <url>?rnc=XXXXXXXXX)
app.config['DGII_RNC_API_URL'] = os.environ.get("DGII_RNC_API_URL")

app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL")
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
    "pool_recycle": 300,
    "pool_pre_ping": True,
}

import models  # noqa: F401
from models import db

# initialize the app with the extension, flask-sqlalchemy >= 3.0.x
db.init_app(app)

# Import routes after app initialization
from routes import auth, api, ncf, expenses, billing

# Login and registration are brute-force targets
limiter.limit("20 per minute")(auth.bp)

app.register_blueprint(auth.bp)
app.register_blueprint(api.bp)
app.register_blueprint(ncf.bp)
app.register_blueprint(expenses.bp)
app.register_blueprint(billing.bp)


@app.route('/health')
@limiter.exempt
def health():
    """Liveness/readiness probe for uptime monitors"""
    try:
        db.session.execute(text('SELECT 1'))
        database = 'connected'
        status_code = 200
    except SQLAlchemyError as e:
        logging.getLogger(__name__).error(f"Health check: base de datos no disponible: {e}")
        db.session.rollback()
        database = 'unavailable'
        status_code = 503

    return jsonify({
        'status': 'ok' if status_code == 200 else 'degraded',
        'database': database,
        'timestamp': datetime.utcnow().isoformat()
    }), status_code


@app.route('/api/csrf')
def get_csrf_token():
    """CSRF token for API clients (send it back as X-CSRFToken)"""
    from flask_wtf.csrf import generate_csrf
    return jsonify({'csrf_token': generate_csrf()})


@app.after_request
def add_security_headers(response):
    """Add security headers for production"""
    if os.environ.get("ENVIRONMENT") == "production":
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

    # Fiscal data must never be cached
    if request.path.startswith('/api/') or request.path.startswith('/auth/'):
        response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate'
        response.headers['Pragma'] = 'no-cache'
    return response


# Run the application in development mode
if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000, debug=True)
