import os
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables from .env file into process env.
# This allows local development without exporting variables manually.
load_dotenv()


@dataclass(frozen=True)
class Settings:
    """
    Immutable configuration container for the intake engine.

    Every component takes a Settings instance, so tests can swap the
    database path or thresholds with dataclasses.replace(SETTINGS, ...).
    """

    openai_api_key: str = os.environ.get(
        "OPENAI_API_KEY", ""
    )  # OpenAI API key used by the classifier gateway.
    openai_model: str = os.environ.get(
        "OPENAI_MODEL", "gpt-4.1-mini"
    )  # Vision-capable model that reads the uploaded document.
    db_path: str = os.environ.get(
        "TRIAGE_DB_PATH", os.path.join("data", "intake.db")
    )  # SQLite DB path for queue, doctors and alerts.

    classifier_timeout_seconds: float = float(
        os.environ.get("CLASSIFIER_TIMEOUT_SECONDS", "30")
    )  # Upper bound for a single classification round trip.
    max_document_bytes: int = int(
        os.environ.get("MAX_DOCUMENT_BYTES", str(10 * 1024 * 1024))
    )  # Uploads above this size are rejected before any external call.

    doctor_load_threshold: int = int(
        os.environ.get("DOCTOR_LOAD_THRESHOLD", "5")
    )  # Queued patients at which a doctor stops receiving new assignments.
    queue_cache_ttl_seconds: float = float(
        os.environ.get("QUEUE_CACHE_TTL_SECONDS", "30")
    )  # Max age of a cached current_queue answer.

    storage_retry_attempts: int = int(
        os.environ.get("STORAGE_RETRY_ATTEMPTS", "2")
    )  # Total attempts for a storage transaction (2 = one retry).
    storage_retry_delay_seconds: float = float(
        os.environ.get("STORAGE_RETRY_DELAY_SECONDS", "0.1")
    )

    history_snapshot_size: int = int(
        os.environ.get("HISTORY_SNAPSHOT_SIZE", "5")
    )  # Records copied into each emergency alert.

    log_level: str = os.environ.get("LOG_LEVEL", "INFO")
    log_format: str = os.environ.get(
        "LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


# Global, read-only settings instance.
# Safe to import anywhere without side effects.
SETTINGS = Settings()
