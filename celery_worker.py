#!/usr/bin/env python3
"""
Celery worker script for the storefront order service.
Runs the worker together with the beat scheduler that drives the
stale-payment reconciliation sweep.
"""

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    from core.celery import celery_app
    from core.logging import configure_logging

    configure_logging()

    celery_app.start([
        "worker",
        "--beat",
        "--loglevel=info",
        "--concurrency=2",
        "--without-gossip",
        "--without-mingle",
    ])
