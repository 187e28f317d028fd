"""
Database service configuration.
No secrets in this file; credentials come from env.
"""
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# SQLite for development; point at Postgres in production
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./db_server.db")

# Provisioning API (projects, regions, transfer)
PROVISIONING_API_URL = os.environ.get("PROVISIONING_API_URL", "https://api.prisma.io/v1").rstrip("/")
INTEGRATION_TOKEN = os.environ.get("INTEGRATION_TOKEN", "")
PROVISIONING_TIMEOUT_SECONDS = float(os.environ.get("PROVISIONING_TIMEOUT_SECONDS", "10"))

# Identity provider used for the claim handshake
IDP_URL = os.environ.get("IDP_URL", "https://auth.prisma.io").rstrip("/")
IDP_TIMEOUT_SECONDS = float(os.environ.get("IDP_TIMEOUT_SECONDS", "10"))
CLAIM_CLIENT_ID = os.environ.get("CLAIM_CLIENT_ID", "")
CLAIM_CLIENT_SECRET = os.environ.get("CLAIM_CLIENT_SECRET", "")
CLAIM_SCOPE = os.environ.get("CLAIM_SCOPE", "workspace:admin offline_access")

# Public base URL of this service; claim links and the OAuth redirect_uri are built from it
CLAIM_BASE_URL = os.environ.get("CLAIM_BASE_URL", "http://127.0.0.1:8787").rstrip("/")

# Signing secret for the OAuth state parameter. Empty means a random per-process secret.
CLAIM_STATE_SECRET = os.environ.get("CLAIM_STATE_SECRET", "")
CLAIM_STATE_TTL_SECONDS = int(os.environ.get("CLAIM_STATE_TTL_SECONDS", "600"))

# Confirm the resource still exists before transferring it
CLAIM_VALIDATE_RESOURCE = _env_bool("CLAIM_VALIDATE_RESOURCE", True)
# A claim lock older than this is treated as abandoned and deletion may proceed
CLAIM_LOCK_TIMEOUT_SECONDS = int(os.environ.get("CLAIM_LOCK_TIMEOUT_SECONDS", "300"))

# Rate limiting: fixed window. 0 disables a limiter.
RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMIT_CREATE_GLOBAL_PER_WINDOW = int(os.environ.get("RATE_LIMIT_CREATE_GLOBAL_PER_WINDOW", "100"))
RATE_LIMIT_ROUTE_PER_WINDOW = int(os.environ.get("RATE_LIMIT_ROUTE_PER_WINDOW", "5"))
# Shared counter store; unset means in-process memory (single instance only)
RATE_LIMIT_REDIS_URL = os.environ.get("RATE_LIMIT_REDIS_URL", "").strip() or None
# Read the client IP from cf-connecting-ip / x-forwarded-for / x-real-ip.
# Only enable behind a proxy that overwrites these headers; otherwise callers pick their own key.
RATE_LIMIT_TRUST_PROXY_HEADERS = _env_bool("RATE_LIMIT_TRUST_PROXY_HEADERS", False)

# Durable workflow engine
WORKFLOW_POLL_INTERVAL_SECONDS = float(os.environ.get("WORKFLOW_POLL_INTERVAL_SECONDS", "5"))
WORKFLOW_LEASE_SECONDS = int(os.environ.get("WORKFLOW_LEASE_SECONDS", "300"))
WORKFLOW_STEP_RETRIES = int(os.environ.get("WORKFLOW_STEP_RETRIES", "5"))
WORKFLOW_RETRY_DELAY_SECONDS = int(os.environ.get("WORKFLOW_RETRY_DELAY_SECONDS", "10"))
WORKFLOW_BATCH_SIZE = int(os.environ.get("WORKFLOW_BATCH_SIZE", "50"))
# Run due workflows inside the web process (single-instance deployments)
WORKFLOW_RUNNER_EMBEDDED = _env_bool("WORKFLOW_RUNNER_EMBEDDED", False)

# Stale sweep: safety net for lost deletion timers
SWEEP_INTERVAL_SECONDS = int(os.environ.get("SWEEP_INTERVAL_SECONDS", "3600"))
SWEEP_PAGE_SIZE = int(os.environ.get("SWEEP_PAGE_SIZE", "100"))
SWEEP_MAX_PAGES = int(os.environ.get("SWEEP_MAX_PAGES", "50"))

# Analytics (PostHog capture API). Unset host or key disables capture.
POSTHOG_API_HOST = os.environ.get("POSTHOG_API_HOST", "").rstrip("/")
POSTHOG_API_KEY = os.environ.get("POSTHOG_API_KEY", "")
ANALYTICS_TIMEOUT_SECONDS = float(os.environ.get("ANALYTICS_TIMEOUT_SECONDS", "5"))
ANALYTICS_FLUSH_TIMEOUT_SECONDS = float(os.environ.get("ANALYTICS_FLUSH_TIMEOUT_SECONDS", "5"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
