"""
Main entry point for the Site Compare Service.

Starts the JSON API and the background scheduler that executes comparison runs.
"""

import atexit

from flask import Flask

from sitecompare.compare.models import utcnow
from sitecompare.config import get_config
from sitecompare.db.database import init_db, close_db
from sitecompare.scheduler import scheduler, shutdown_scheduler
from sitecompare.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_app() -> Flask:
    """
    Create and configure the Flask application.

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)

    # Register blueprints
    from sitecompare.web.routes.api import api_bp

    app.register_blueprint(api_bp)

    # Health check
    @app.route('/health')
    def health():
        return {'status': 'ok', 'timestamp': utcnow().isoformat()}

    return app


def main():
    """Main entry point."""
    config = get_config()

    # Setup logging
    setup_logging(config.log_level)

    # Initialize database
    init_db(config.database_url)

    logger.info(
        "Starting Site Compare Service",
        version="0.1.0",
        port=config.port,
        parallel_fetch=config.parallel_fetch,
        persist_scan_cache=config.persist_scan_cache
    )

    # Create Flask app
    app = create_app()

    # Start scheduler; comparison runs are added as one-off jobs
    scheduler.start()

    # Register shutdown handler
    atexit.register(shutdown_scheduler)
    atexit.register(close_db)

    # Run Flask app with waitress
    from waitress import serve
    serve(app, host="0.0.0.0", port=config.port)


if __name__ == "__main__":
    main()
