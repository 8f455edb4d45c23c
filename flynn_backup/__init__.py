import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler (stderr: stdout may be carrying an archive)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'flynn-backup.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure package logger (also the Flask app logger, which shares its name)
    package_logger = logging.getLogger(__name__)
    package_logger.setLevel(log_level)
    for handler in package_logger.handlers:
        handler.close()
    package_logger.handlers = [console_handler, file_handler]
    package_logger.propagate = False

    # urllib3 logs every request at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    app.logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, overrides=None):
    """
    Flask application factory

    Args:
        config_name: Key into flynn_backup.config.config (default: FLASK_ENV or production)
        overrides: Optional dict applied on top of the selected configuration
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from flynn_backup.config import config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(db_uri.replace('sqlite:///', '')), exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    from flynn_backup.controller import ControllerClient
    app.extensions['controller'] = ControllerClient.from_config(app.config)

    # Register blueprints
    from flynn_backup.routes import backup_routes, history_routes
    app.register_blueprint(backup_routes.bp)
    app.register_blueprint(history_routes.bp)

    # Register CLI commands
    from flynn_backup.cli import backup_command
    app.cli.add_command(backup_command)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    from flynn_backup import models
    with app.app_context():
        db.create_all()

    return app
