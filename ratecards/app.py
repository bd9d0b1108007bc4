import os
import logging
from logging.handlers import RotatingFileHandler

from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_cors import CORS

from .database import init_database
from .errors import setup_error_handlers
from .routes import bp as rate_cards_bp
from .settings import get_config
from .token_store import MarketplaceTokenStore, RedisKeyValueStore

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def create_app(config_object=None):
    app = Flask(__name__)

    # Configuration
    config_object = config_object or get_config()
    app.config.from_object(config_object)

    validation = config_object.validate()
    for warning in validation['warnings']:
        logger.warning(f"Configuration: {warning}")
    if not validation['is_valid']:
        raise RuntimeError(f"Invalid configuration: {'; '.join(validation['errors'])}")

    # Initialize extensions
    CORS(app, origins=app.config['ALLOWED_ORIGINS'])
    init_database(app)
    app.extensions['marketplace_tokens'] = MarketplaceTokenStore(
        RedisKeyValueStore(redis_url=app.config['REDIS_URL']),
        default_ttl_seconds=app.config['MARKETPLACE_TOKEN_TTL_SECONDS'],
    )

    # Register blueprints
    app.register_blueprint(rate_cards_bp, url_prefix='/api')

    # Register error handlers
    setup_error_handlers(app)

    # Health check endpoint
    @app.route('/health')
    def health_check():
        return jsonify({'status': 'healthy', 'service': 'rate-cards'}), 200

    # Setup logging
    if not app.debug and not app.testing:
        log_dir = app.config['LOG_DIR']
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)
        file_handler = RotatingFileHandler(os.path.join(log_dir, 'ratecards.log'),
                                           maxBytes=10240000, backupCount=10)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(app.config['LOG_LEVEL'])
        app.logger.addHandler(file_handler)
        logging.getLogger('ratecards').addHandler(file_handler)
        app.logger.setLevel(app.config['LOG_LEVEL'])
        app.logger.info('Rate card service startup')

    return app


def main():
    create_app().run(host='0.0.0.0', port=int(os.getenv('PORT', 5002)))


if __name__ == '__main__':
    main()
