"""
Pytest bootstrap.
Forces the testing configuration before any application module reads it,
so the app binds to in-memory SQLite and Celery runs tasks eagerly.
"""
import os

os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("KHALTI_SECRET_KEY", "test-khalti-key")
