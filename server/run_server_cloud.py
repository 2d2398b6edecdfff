#!/usr/bin/env python3
"""
Container-friendly server launcher for the keywording service.

Use this in Docker/Cloud Run. It serves the app with Gunicorn on 0.0.0.0
and reads PORT from the environment (default 8080).

Keep run_server.py for local development.
"""
import logging
import os
import sys

from gunicorn.app.base import BaseApplication

# Ensure project root is on sys.path
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
PARENT_DIR = os.path.dirname(BASE_DIR)  # Go up to project root
if PARENT_DIR not in sys.path:
    sys.path.insert(0, PARENT_DIR)

from keywording.app import configure_logging, create_app  # noqa: E402
from keywording.config import config  # noqa: E402

logger = logging.getLogger(__name__)


class StandaloneApplication(BaseApplication):
    def __init__(self, app, options=None):
        self.options = options or {}
        self.application = app
        super().__init__()

    def load_config(self):
        settings = {key: value for key, value in self.options.items()
                    if key in self.cfg.settings and value is not None}
        for key, value in settings.items():
            self.cfg.set(key.lower(), value)

    def load(self):
        return self.application


def main():
    configure_logging()
    port = int(os.environ.get('PORT', '8080'))

    options = {
        'bind': f'0.0.0.0:{port}',
        'workers': 1,
        'worker_class': 'sync',
        # A request runs a whole batch; allow for retries and fallback
        'timeout': max(300, config.request_timeout * 4),
        'keepalive': 30,
        'max_requests': 1000,
        'max_requests_jitter': 100,
        'capture_output': True,
    }

    logger.info(f"Starting Gunicorn WSGI server on port {port}")
    StandaloneApplication(create_app(), options).run()


if __name__ == '__main__':
    main()
