"""
CLI client configuration.
"""
import os

# Database service (db_server) base URL
CREATE_DB_SERVICE_URL = os.environ.get("CREATE_DB_SERVICE_URL", "http://127.0.0.1:8787").rstrip("/")

DEFAULT_REGION = os.environ.get("CREATE_DB_REGION", "us-east-1")

REQUEST_TIMEOUT_SECONDS = float(os.environ.get("CREATE_DB_TIMEOUT_SECONDS", "30"))
