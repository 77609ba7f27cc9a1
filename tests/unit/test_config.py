# tests/unit/test_config.py

import pytest

from bulk_transfer.config import ConfigurationError, get_config

_OPTIONAL = [
    "LOG_LEVEL",
    "PAGE_SIZE",
    "PART_UPLOAD_MIN_MB",
    "OBJECT_ROLLOVER_MB",
    "OBJECT_ROLLOVER_RESOURCES",
    "MAX_WORKERS",
    "IMPORT_BATCH_SIZE",
    "FETCH_TIMEOUT_SECONDS",
    "S3_OPERATION_TIMEOUT_SECONDS",
    "TIMEOUT_GUARD_THRESHOLD_SECONDS",
    "RETRY_MAX_ATTEMPTS",
    "RETRY_BACKOFF_BASE_SECONDS",
    "RETRY_BACKOFF_MAX_SECONDS",
    "KMS_KEY_ID",
    "S3_ENDPOINT_URL",
    "EXPORT_BASE_URL",
]


@pytest.fixture(autouse=True)
def clear_config_cache():
    """
    Clears the lru_cache for get_config before each test so every test sees
    a configuration built from its own monkeypatched environment.
    """
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def required_env(monkeypatch):
    monkeypatch.setenv("EXPORT_BUCKET_NAME", "test-export-bucket")
    monkeypatch.setenv("SERVICE_NAME", "test-service")
    monkeypatch.setenv("ENVIRONMENT", "test")
    for name in _OPTIONAL:
        monkeypatch.delenv(name, raising=False)


def test_get_config_happy_path(required_env, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("PAGE_SIZE", "250")
    monkeypatch.setenv("PART_UPLOAD_MIN_MB", "16")
    monkeypatch.setenv("OBJECT_ROLLOVER_MB", "64")
    monkeypatch.setenv("OBJECT_ROLLOVER_RESOURCES", "5000")
    monkeypatch.setenv("MAX_WORKERS", "8")
    monkeypatch.setenv("TIMEOUT_GUARD_THRESHOLD_SECONDS", "5")
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("KMS_KEY_ID", "alias/export")
    monkeypatch.setenv("EXPORT_BASE_URL", "https://downloads.example.com/")

    config = get_config()

    assert config.export_bucket == "test-export-bucket"
    assert config.service_name == "test-service"
    assert config.environment == "test"
    assert config.log_level == "DEBUG"
    assert config.page_size == 250
    assert config.max_workers == 8
    assert config.object_rollover_resources == 5000
    assert config.retry_max_attempts == 5
    assert config.kms_key_id == "alias/export"
    assert config.export_base_url == "https://downloads.example.com"
    # Derived properties
    assert config.part_upload_min_bytes == 16 * 1024 * 1024
    assert config.object_rollover_bytes == 64 * 1024 * 1024
    assert config.timeout_guard_threshold_ms == 5 * 1000


def test_get_config_uses_defaults(required_env):
    config = get_config()

    assert config.log_level == "INFO"
    assert config.page_size == 1000
    assert config.part_upload_min_mb == 10
    assert config.object_rollover_mb == 200
    assert config.object_rollover_resources == 200_000
    assert config.max_workers == 4
    assert config.import_batch_size == 500
    assert config.fetch_timeout_seconds == 60
    assert config.s3_operation_timeout_seconds == 30
    assert config.timeout_guard_threshold_seconds == 30
    assert config.retry_max_attempts == 3
    assert config.retry_backoff_base_seconds == 1.0
    assert config.retry_backoff_max_seconds == 30.0
    assert config.kms_key_id is None
    assert config.s3_endpoint_url is None
    assert config.export_base_url == "https://s3.amazonaws.com"


def test_get_config_missing_required_env_var(monkeypatch):
    monkeypatch.delenv("EXPORT_BUCKET_NAME", raising=False)
    monkeypatch.setenv("SERVICE_NAME", "test-service")
    monkeypatch.setenv("ENVIRONMENT", "test")

    with pytest.raises(ConfigurationError, match="EXPORT_BUCKET_NAME"):
        get_config()


@pytest.mark.parametrize(
    "name, value",
    [
        ("PAGE_SIZE", "not-a-number"),
        ("PAGE_SIZE", "0"),
        ("MAX_WORKERS", "-1"),
        ("PART_UPLOAD_MIN_MB", "4"),
        ("OBJECT_ROLLOVER_MB", "5"),
        ("LOG_LEVEL", "CHATTY"),
        ("RETRY_MAX_ATTEMPTS", "0"),
        ("RETRY_BACKOFF_BASE_SECONDS", "60"),
    ],
)
def test_get_config_rejects_invalid_values(required_env, monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError) as exc_info:
        get_config()

    assert exc_info.value.error_code == "CONFIGURATION_ERROR"


def test_get_config_caching(required_env):
    config1 = get_config()
    config2 = get_config()

    assert config1 is config2
