from flask import Flask, g, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_bcrypt import Bcrypt
from flask_cors import CORS
from flask_limiter import Limiter
from cryptography.fernet import Fernet
import logging
import os

from .config import Config
from .rate_limiter import rate_limit_key

# Initialize extensions
db = SQLAlchemy()
login_manager = LoginManager()
bcrypt = Bcrypt()
limiter = Limiter(key_func=rate_limit_key)
cors = CORS()

# Server-side encryption key (Fernet)
fernet = None


@login_manager.request_loader
def load_user_from_request(request):
    """Resolve the Bearer access token into a user."""
    from .tokens import user_from_authorization
    return user_from_authorization(request.headers.get('Authorization'))


@login_manager.unauthorized_handler
def unauthorized():
    message = g.get('auth_error') or 'Access token required'
    return jsonify({'success': False, 'message': message}), 401


def _load_fernet(app):
    fernet_key_path = os.path.join(app.config['KEYS_FOLDER'], 'server.key')

    if app.config['FERNET_KEY']:
        return Fernet(app.config['FERNET_KEY'].encode())
    if os.path.exists(fernet_key_path):
        with open(fernet_key_path, 'rb') as f:
            return Fernet(f.read())

    # Generate new key for first run
    key = Fernet.generate_key()
    Config.init_app(app)  # Ensure directories exist
    with open(fernet_key_path, 'wb') as f:
        f.write(key)
    return Fernet(key)


def _configure_logging(app):
    level = getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO)
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    app.logger.setLevel(level)
    logging.getLogger('servoley').setLevel(level)


def create_app(config_class=Config):
    """Application factory pattern."""
    app = Flask(__name__)
    app.config.from_object(config_class)
    app.json.sort_keys = False

    _configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)
    bcrypt.init_app(app)
    limiter.init_app(app)
    cors.init_app(app, resources={r'/api/*': {'origins': app.config['CORS_ORIGINS']}},
                  supports_credentials=True)

    global fernet
    fernet = _load_fernet(app)

    # Initialize app-specific configs
    config_class.init_app(app)

    from .sanitizer import init_sanitizer
    from .errors import register_error_handlers
    from .commands import register_commands
    init_sanitizer(app)
    register_error_handlers(app)
    register_commands(app)

    # Register blueprints
    from .routes.main import main_bp
    from .routes.auth import auth_bp
    from .routes.users import users_bp
    from .routes.provider import provider_bp
    from .routes.services import services_bp
    from .routes.orders import orders_bp
    from .routes.notifications import notifications_bp
    from .routes.wallet import wallet_bp
    from .routes.escrow import escrow_bp
    from .routes.reviews import reviews_bp
    from .routes.support import support_bp
    from .routes.admin import admin_bp
    from .routes.payments import payments_bp
    from .routes.dashboard import dashboard_bp

    app.register_blueprint(main_bp, url_prefix='/api')
    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(users_bp, url_prefix='/api/users')
    app.register_blueprint(provider_bp, url_prefix='/api/provider')
    app.register_blueprint(services_bp, url_prefix='/api/services')
    app.register_blueprint(orders_bp, url_prefix='/api/orders')
    app.register_blueprint(notifications_bp, url_prefix='/api/notifications')
    app.register_blueprint(wallet_bp, url_prefix='/api/wallet')
    app.register_blueprint(escrow_bp, url_prefix='/api/escrow')
    app.register_blueprint(reviews_bp, url_prefix='/api/reviews')
    app.register_blueprint(support_bp, url_prefix='/api/support')
    app.register_blueprint(admin_bp, url_prefix='/api/admin')
    app.register_blueprint(payments_bp, url_prefix='/api/payments')
    app.register_blueprint(dashboard_bp, url_prefix='/api/dashboard')

    # Create database tables
    with app.app_context():
        db.create_all()

    app.logger.info('ServoLeY API ready (%s)', config_class.__name__)
    return app
