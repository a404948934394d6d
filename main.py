#!/usr/bin/env python3
"""
Marketplace Import Service
==========================

Single-command run:  python main.py

Without REDIS_URL, import jobs run inline in the web process.  With it,
start a worker as well:  celery -A worker worker --loglevel=info

See config.py for all environment-variable tunables.
"""

import logging

from flask import Flask, jsonify

import config
from db import init_db, get_session
from api import api_bp
from services.import_service import ImportService

logger = logging.getLogger(__name__)


def create_app(db_url: str | None = None, recover: bool = True) -> Flask:
    """Flask application factory."""

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.secret_key = config.SECRET
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES

    # ── Initialise database ─────────────────────────────────────────
    init_db(db_url or config.DB_URL)
    logger.info(f"Database: {db_url or config.DB_URL}")

    # ── Register blueprints ─────────────────────────────────────────
    app.register_blueprint(api_bp)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    # ── Pick up runs interrupted by a restart ───────────────────────
    if recover:
        _recover_jobs()

    return app


def _recover_jobs():
    session = get_session()
    try:
        recovered = ImportService.recover_interrupted_jobs(session)
    finally:
        session.close()
    if recovered:
        logger.info(f"Recovered {len(recovered)} interrupted import job(s): {recovered}")


def main():
    app = create_app()
    logger.info(f"Listening on http://{config.HOST}:{config.PORT}")
    app.run(host=config.HOST, port=config.PORT, debug=config.DEBUG)


if __name__ == "__main__":
    main()
