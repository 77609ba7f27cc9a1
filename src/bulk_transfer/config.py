import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_MIB = 1_048_576


def _positive_int(name: str, default: str) -> int:
    value = int(os.getenv(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer.")
    return value


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Required Variables ---
    export_bucket: str
    service_name: str
    environment: str

    # --- Optional Variables with Defaults ---
    log_level: str
    page_size: int
    part_upload_min_mb: int
    object_rollover_mb: int
    object_rollover_resources: int
    max_workers: int
    import_batch_size: int

    # --- Time Budgets ---
    fetch_timeout_seconds: int
    s3_operation_timeout_seconds: int
    timeout_guard_threshold_seconds: int

    # --- Step Retry Policy ---
    retry_max_attempts: int
    retry_backoff_base_seconds: float
    retry_backoff_max_seconds: float

    # --- Object Store ---
    kms_key_id: str | None
    s3_endpoint_url: str | None
    export_base_url: str

    # --- Derived Properties ---
    @property
    def part_upload_min_bytes(self) -> int:
        return self.part_upload_min_mb * _MIB

    @property
    def object_rollover_bytes(self) -> int:
        return self.object_rollover_mb * _MIB

    @property
    def timeout_guard_threshold_ms(self) -> int:
        return self.timeout_guard_threshold_seconds * 1000

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            export_bucket = os.environ["EXPORT_BUCKET_NAME"]
            service_name = os.environ["SERVICE_NAME"]
            environment = os.environ["ENVIRONMENT"]

            # --- Handle optional and numeric variables with validation ---
            page_size = _positive_int("PAGE_SIZE", "1000")
            part_upload_min_mb = _positive_int("PART_UPLOAD_MIN_MB", "10")
            if part_upload_min_mb < 5:
                raise ValueError("PART_UPLOAD_MIN_MB must be at least 5 (S3 minimum part size).")
            object_rollover_mb = _positive_int("OBJECT_ROLLOVER_MB", "200")
            if object_rollover_mb < part_upload_min_mb:
                raise ValueError(
                    "OBJECT_ROLLOVER_MB must not be smaller than PART_UPLOAD_MIN_MB."
                )
            object_rollover_resources = _positive_int(
                "OBJECT_ROLLOVER_RESOURCES", "200000"
            )
            max_workers = _positive_int("MAX_WORKERS", "4")
            import_batch_size = _positive_int("IMPORT_BATCH_SIZE", "500")

            fetch_timeout_seconds = _positive_int("FETCH_TIMEOUT_SECONDS", "60")
            s3_operation_timeout_seconds = _positive_int(
                "S3_OPERATION_TIMEOUT_SECONDS", "30"
            )
            timeout_guard_threshold_seconds = _positive_int(
                "TIMEOUT_GUARD_THRESHOLD_SECONDS", "30"
            )

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

            # --- Handle retry policy configuration ---
            retry_max_attempts = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
            if retry_max_attempts < 1:
                raise ValueError("RETRY_MAX_ATTEMPTS must be at least 1.")

            retry_backoff_base_seconds = float(
                os.getenv("RETRY_BACKOFF_BASE_SECONDS", "1.0")
            )
            retry_backoff_max_seconds = float(
                os.getenv("RETRY_BACKOFF_MAX_SECONDS", "30.0")
            )
            if not 0.0 <= retry_backoff_base_seconds <= retry_backoff_max_seconds:
                raise ValueError(
                    "RETRY_BACKOFF_BASE_SECONDS must be between 0 and RETRY_BACKOFF_MAX_SECONDS."
                )

            kms_key_id = os.getenv("KMS_KEY_ID") or None
            s3_endpoint_url = os.getenv("S3_ENDPOINT_URL") or None
            export_base_url = os.getenv(
                "EXPORT_BASE_URL", "https://s3.amazonaws.com"
            ).rstrip("/")

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            export_bucket=export_bucket,
            service_name=service_name,
            environment=environment,
            log_level=log_level,
            page_size=page_size,
            part_upload_min_mb=part_upload_min_mb,
            object_rollover_mb=object_rollover_mb,
            object_rollover_resources=object_rollover_resources,
            max_workers=max_workers,
            import_batch_size=import_batch_size,
            fetch_timeout_seconds=fetch_timeout_seconds,
            s3_operation_timeout_seconds=s3_operation_timeout_seconds,
            timeout_guard_threshold_seconds=timeout_guard_threshold_seconds,
            retry_max_attempts=retry_max_attempts,
            retry_backoff_base_seconds=retry_backoff_base_seconds,
            retry_backoff_max_seconds=retry_backoff_max_seconds,
            kms_key_id=kms_key_id,
            s3_endpoint_url=s3_endpoint_url,
            export_base_url=export_base_url,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
