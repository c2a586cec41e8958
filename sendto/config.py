import os


def _flag(name, default):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    # Flask-Limiter
    RATELIMIT_DEFAULT = os.getenv("RATELIMIT_DEFAULT", "10 per second")
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    RATELIMIT_ENABLED = _flag("RATELIMIT_ENABLED", "true")
    REGISTER_RATE_LIMIT = os.getenv("REGISTER_RATE_LIMIT", "5 per minute")
    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "5000"))
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(100 * 1024 * 1024)))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    # Signup is closed unless explicitly opened
    SIGNUP_DISABLED = _flag("SIGNUP_DISABLED", "true")
    # Storage
    DATA_DIR = os.getenv("DATA_DIR", os.path.join(os.getcwd(), "data"))
    DATABASE_PATH = os.getenv("DATABASE_PATH", "")  # defaults to DATA_DIR/sendto.db
    BLOB_DIR = os.getenv("BLOB_DIR", "")            # defaults to DATA_DIR/blobs
    SERVER_ENC_KEY = os.getenv("SERVER_ENC_KEY", "")
    SERVER_ENC_KEY_PATH = os.getenv("SERVER_ENC_KEY_PATH", "")  # defaults to DATA_DIR/server_secret.key
    # reMarkable cloud
    DISCOVERY_URL = os.getenv(
        "DISCOVERY_URL", "https://internal.cloud.remarkable.com/discovery/v1/endpoints"
    )
    DOCUMENT_API_URL = os.getenv(
        "DOCUMENT_API_URL", "https://eu.tectonic.remarkable.com/doc/v2/files"
    )
    HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "30"))
    TOKEN_EXPIRY_LEEWAY = int(os.getenv("TOKEN_EXPIRY_LEEWAY", "0"))
    # Account managers kept in memory; idle ones beyond this are dropped
    ACCOUNT_CACHE_SIZE = int(os.getenv("ACCOUNT_CACHE_SIZE", "1024"))
    # Jobs
    JOB_CLEANUP_DELAY = int(os.getenv("JOB_CLEANUP_DELAY", str(24 * 60 * 60)))
    JOB_STEP_RETRIES = int(os.getenv("JOB_STEP_RETRIES", "3"))
    JOB_STEP_RETRY_DELAY = float(os.getenv("JOB_STEP_RETRY_DELAY", "10"))
    JOB_POLL_INTERVAL = float(os.getenv("JOB_POLL_INTERVAL", "5"))
    JOBS_WORKER_ENABLED = _flag("JOBS_WORKER_ENABLED", "true")
    # Inbound email
    EMAIL_DOMAIN = os.getenv("EMAIL_DOMAIN", "")
