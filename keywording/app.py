"""
Flask application for the image keywording service
"""
import logging
import os

from flask import Flask

from .analysis_api import analysis_api
from .config import config

logger = logging.getLogger(__name__)


def configure_logging():
    """Log to the console and to a file under LOG_DIR"""
    config.create_directories()
    logging.basicConfig(
        level=logging.DEBUG if config.enable_debug_logging else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(config.log_dir, 'keywording.log')),
            logging.StreamHandler()
        ]
    )


def create_app() -> Flask:
    """Create and configure the Flask application"""
    app = Flask(__name__)
    app.config.update({
        'MAX_CONTENT_LENGTH': config.max_upload_size,
        'JSON_SORT_KEYS': False,
    })

    app.register_blueprint(analysis_api)

    for warning in config.validate_configuration():
        logger.warning(f"Configuration warning: {warning}")

    logger.info(
        f"Keywording app created (backend={config.api_backend}, chunk_size={config.chunk_size})")
    return app
