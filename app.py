from __future__ import annotations

import os
import logging

from flask import Flask

from farm.api import create_app
from farm.cli import build_loop
from farm.config import load_config

logger = logging.getLogger(__name__)


def build_app() -> Flask:
	"""Build the Flask app around a scheduler loop; the loop is started by the server hook."""
	cfg = load_config(os.getenv("FARM_CONFIG"))
	scheduler, loop = build_loop(cfg)
	logger.info(f"Built {cfg.backend} scheduler (tick every {cfg.tick_interval_ms} ms)")
	return create_app(scheduler, loop=loop)


# Build app at module level (for gunicorn)
app = build_app()


if __name__ == "__main__":
	app.config['loop'].start()
	try:
		app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
	finally:
		app.config['loop'].stop()
