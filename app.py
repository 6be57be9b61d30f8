import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_session import Session
from werkzeug.exceptions import HTTPException

from api import DISCOUNTS_KEY, NOTIFIER_KEY, api
from auth import EXTENSION_KEY, IdentityIssuer
from config import AuthConfig, DevelopmentConfig, engine_options
from discounts import DiscountPolicy
from errors import BookstoreError
from models import db
from notifications import BillNotifier, LoggingMailer

logger = logging.getLogger(__name__)


def _start_scheduler():
    scheduler = BackgroundScheduler()
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))
    logger.debug("Notification scheduler started")
    return scheduler


def create_app(config_object=DevelopmentConfig):
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Configure logging
    logging.basicConfig(level=app.config['LOG_LEVEL'], format='%(asctime)s - %(levelname)s - %(message)s')

    CORS(app, supports_credentials=True, origins=app.config['CORS_ORIGINS'], expose_headers=['X-Total-Count'])

    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = engine_options(app.config)
    try:
        db.init_app(app)
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

    if app.config.get('SESSION_TYPE'):
        app.config.setdefault('SESSION_SQLALCHEMY', db)
        Session(app)

    app.extensions[EXTENSION_KEY] = IdentityIssuer(AuthConfig.from_mapping(app.config))
    app.extensions[DISCOUNTS_KEY] = DiscountPolicy.from_mapping(app.config)
    scheduler = _start_scheduler() if app.config['NOTIFY_ASYNC'] else None
    app.extensions[NOTIFIER_KEY] = BillNotifier(LoggingMailer(), scheduler)

    @app.before_request
    def log_request():
        body = request.get_json(silent=True)
        if isinstance(body, dict) and 'password' in body:
            body = {**body, 'password': '***'}
        logger.debug(f"Incoming request: {request.method} {request.path} {body}")

    @app.errorhandler(BookstoreError)
    def handle_bookstore_error(error):
        if error.status_code >= 500:
            logger.error(f"{error.code}: {error.message}")
        else:
            logger.debug(f"{error.code}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        code = (error.name or 'error').lower().replace(' ', '_')
        return jsonify({'error': error.description, 'code': code}), error.code

    @app.errorhandler(Exception)
    def handle_error(error):
        db.session.rollback()
        logger.error(f"Unhandled error: {str(error)}")
        return jsonify({'error': 'An unexpected error occurred', 'code': 'server_error'}), 500

    app.register_blueprint(api)

    @app.route('/')
    def home():
        return jsonify({"message": "Bookstore Backend"})

    with app.app_context():
        db.create_all()
        logger.debug(f"Database connected: {app.config['SQLALCHEMY_DATABASE_URI']}")

    return app


if __name__ == '__main__':
    create_app().run(debug=True)
