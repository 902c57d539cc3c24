"""
Settings from environment variables.

All config is loaded via Pydantic Settings with the COURTVIEW_ prefix.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_schema: str = "public"
    supabase_timeout_seconds: int = 20

    # Upstream court view page
    schedule_url: str = (
        "https://courtview2.allahabadhighcourt.in/courtview/CourtViewLucknow.do"
    )
    schedule_request_timeout_seconds: int = 30
    schedule_fetch_attempts: int = 3
    schedule_backoff_base_seconds: float = 1.0

    # Polling
    polling_enabled: bool = True
    poll_interval_seconds: int = 30
    dedup_bucket_seconds: int = 60
    dedup_window_seconds: int = 60

    # Email notifications
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = ""
    smtp_use_tls: bool = True
    notification_email_enabled: bool = False
    notification_email_recipients: str = ""

    # Document retrieval (eLegalix judgments)
    document_base_url: str = "https://elegalix.allahabadhighcourt.in/elegalix"
    document_max_attempts: int = 3
    document_backoff_seconds: float = 1.0
    document_request_timeout_seconds: int = 30
    captcha_session_ttl_seconds: int = 300

    # Browser-rendered retrieval
    browser_fallback_enabled: bool = False
    browser_headless: bool = True
    browser_navigation_timeout_ms: int = 30000

    # Captcha solver
    captcha_expected_length: int = 6
    captcha_thresholds: str = "140,160,180"
    captcha_psm_modes: str = "8,7,13"
    captcha_upscale_factor: int = 3
    captcha_use_easyocr: bool = False
    captcha_ocr_timeout_seconds: float = 20.0
    captcha_debug_dir: str = ""
    tesseract_cmd: str = "tesseract"

    # HTTP API (served in-process next to the scheduler)
    api_enabled: bool = False
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # App
    timezone: str = "Asia/Kolkata"

    model_config = {
        "env_file": ".env",
        "env_prefix": "COURTVIEW_",
    }


def parse_int_list(raw: str) -> tuple[int, ...]:
    """Parse a comma-separated setting like "140,160,180"."""
    return tuple(int(part.strip()) for part in raw.split(",") if part.strip())


settings = Settings()
