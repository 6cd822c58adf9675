import os

# Local default. Point DATABASE_URL at the real project database in deployment.
DEFAULT_DB_URL = "sqlite:///./anomalisa.db"

DATABASE_URL = os.getenv("DATABASE_URL", DEFAULT_DB_URL)

REDIS_URL = os.getenv("REDIS_URL") or os.getenv("ANOMALISA_REDIS_URL") or "redis://localhost:6379/0"

# "redis" in production, "memory" for local runs without a Redis server
STORE_BACKEND = os.getenv("STORE_BACKEND", "redis").lower()
STORE_NAMESPACE = os.getenv("STORE_NAMESPACE", "anomalisa")
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "2"))

COUNT_TTL_SECONDS = int(os.getenv("COUNT_TTL_SECONDS", str(7 * 24 * 3600)))
ANOMALY_TTL_SECONDS = int(os.getenv("ANOMALY_TTL_SECONDS", str(30 * 24 * 3600)))

SERIALIZE_STATS_UPDATES = os.getenv("SERIALIZE_STATS_UPDATES", "1").lower() in ("1", "true", "yes")

FORWARD_EMAIL_API_KEY = os.getenv("FORWARD_EMAIL_API_KEY", "")
EMAIL_DOMAIN = os.getenv("EMAIL_DOMAIN", "")
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

INGEST_CHANNEL = os.getenv("INGEST_CHANNEL", "events:ingest")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
