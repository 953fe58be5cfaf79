import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    app_url: str
    csrf_enabled: bool

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_use_tls: bool
    email_from: str
    contact_email: str

    twilio_account_sid: str
    twilio_auth_token: str
    twilio_phone_number: str
    sms_dev_mode: bool

    geomap_api_key: str

    zoho_client_id: str
    zoho_client_secret: str
    zoho_refresh_token: str
    zoho_redirect_uri: str
    zoho_accounts_url: str
    zoho_api_url: str
    zoho_webhook_secret: str
    zoho_webhook_signature_secret: str

    sync_api_secret: str
    cron_secret: str

    sanity_project_id: str
    sanity_dataset: str
    sanity_api_version: str
    sanity_token: str

    n8n_webhook_url: str
    registration_batch_size: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getflag(name: str, default: str = "0") -> bool:
    return _getenv(name, default).lower() in ("1", "true", "yes", "on")


def _getint(name: str, default: int) -> int:
    raw = _getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///remonta.db"),
        app_url=_getenv("APP_URL", "http://localhost:5000").rstrip("/"),
        csrf_enabled=_getflag("CSRF_ENABLED", "1"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "syd1"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        smtp_host=_getenv("SMTP_HOST", ""),
        smtp_port=_getint("SMTP_PORT", 587),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        smtp_use_tls=_getflag("SMTP_USE_TLS", "1"),
        email_from=_getenv("EMAIL_FROM", "no-reply@remonta.com.au"),
        contact_email=_getenv("CONTACT_EMAIL", "hello@remonta.com.au"),
        twilio_account_sid=_getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=_getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=_getenv("TWILIO_PHONE_NUMBER", ""),
        sms_dev_mode=_getflag("SMS_DEV_MODE", "0"),
        geomap_api_key=_getenv("GEOMAP_API", ""),
        zoho_client_id=_getenv("ZOHO_CLIENT_ID", ""),
        zoho_client_secret=_getenv("ZOHO_CLIENT_SECRET", ""),
        zoho_refresh_token=_getenv("ZOHO_REFRESH_TOKEN", ""),
        zoho_redirect_uri=_getenv("ZOHO_REDIRECT_URI", ""),
        zoho_accounts_url=_getenv("ZOHO_ACCOUNTS_URL", "https://accounts.zoho.com.au"),
        zoho_api_url=_getenv("ZOHO_CRM_API_URL", "https://www.zohoapis.com.au/crm/v2"),
        zoho_webhook_secret=_getenv("ZOHO_WEBHOOK_SECRET", ""),
        zoho_webhook_signature_secret=_getenv("ZOHO_WEBHOOK_SIGNATURE_SECRET", ""),
        sync_api_secret=_getenv("SYNC_API_SECRET", ""),
        cron_secret=_getenv("CRON_SECRET", ""),
        sanity_project_id=_getenv("SANITY_PROJECT_ID", ""),
        sanity_dataset=_getenv("SANITY_DATASET", "production"),
        sanity_api_version=_getenv("SANITY_API_VERSION", "2024-01-01"),
        sanity_token=_getenv("SANITY_TOKEN", ""),
        n8n_webhook_url=_getenv("N8N_WEBHOOK_URL", ""),
        registration_batch_size=_getint("REGISTRATION_BATCH_SIZE", 10),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_URL": s.app_url,
        "CSRF_ENABLED": s.csrf_enabled,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "SMTP_HOST": s.smtp_host,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "EMAIL_FROM": s.email_from,
        "CONTACT_EMAIL": s.contact_email,
        "TWILIO_ACCOUNT_SID": s.twilio_account_sid,
        "TWILIO_AUTH_TOKEN": s.twilio_auth_token,
        "TWILIO_PHONE_NUMBER": s.twilio_phone_number,
        # dev mode returns SMS codes in the response instead of sending them
        "SMS_DEV_MODE": s.sms_dev_mode or (not is_production and not s.twilio_account_sid),
        "GEOMAP_API": s.geomap_api_key,
        "ZOHO_CLIENT_ID": s.zoho_client_id,
        "ZOHO_CLIENT_SECRET": s.zoho_client_secret,
        "ZOHO_REFRESH_TOKEN": s.zoho_refresh_token,
        "ZOHO_REDIRECT_URI": s.zoho_redirect_uri,
        "ZOHO_ACCOUNTS_URL": s.zoho_accounts_url,
        "ZOHO_CRM_API_URL": s.zoho_api_url,
        "ZOHO_WEBHOOK_SECRET": s.zoho_webhook_secret,
        "ZOHO_WEBHOOK_SIGNATURE_SECRET": s.zoho_webhook_signature_secret,
        "SYNC_API_SECRET": s.sync_api_secret,
        "CRON_SECRET": s.cron_secret,
        "SANITY_PROJECT_ID": s.sanity_project_id,
        "SANITY_DATASET": s.sanity_dataset,
        "SANITY_API_VERSION": s.sanity_api_version,
        "SANITY_TOKEN": s.sanity_token,
        "N8N_WEBHOOK_URL": s.n8n_webhook_url,
        "REGISTRATION_BATCH_SIZE": s.registration_batch_size,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # compliance documents may be large scans (50MB)
        "MAX_CONTENT_LENGTH": 50 * 1024 * 1024,
    }
