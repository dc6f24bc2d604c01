#!/usr/bin/env python3
"""
Celery worker script for the payments service.
Runs the worker with an embedded beat scheduler for the stale-payment sweep.
"""

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    from core.celery import celery_app
    from core.logging import configure_logging

    configure_logging()

    # Start Celery worker
    celery_app.start([
        "worker",
        "--beat",
        "--loglevel=info",
        "--concurrency=2",
        "--without-gossip",
        "--without-mingle",
        "--without-heartbeat",
    ])
