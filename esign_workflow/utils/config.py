"""Configuration management using pydantic-settings"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    log_level: str = Field(default="INFO", description="Logging level")

    # Database mode: 'supabase' or 'sqlite'
    db_mode: str = Field(default="sqlite", description="Database backend: 'supabase' or 'sqlite'")
    database_path: str = Field(default="./data/esign.db", description="Path to SQLite database")

    # Supabase settings
    supabase_url: Optional[str] = Field(default=None, description="Supabase project URL")
    supabase_key: Optional[str] = Field(default=None, description="Supabase anon key")
    supabase_service_key: Optional[str] = Field(default=None, description="Supabase service role key")
    supabase_bucket: str = Field(default="signed-contracts", description="Storage bucket for final documents")

    # Local document storage (sqlite mode)
    documents_dir: str = Field(default="./data/documents", description="Directory for rendered documents")

    # SMTP settings; unset host means emails are logged instead of sent
    smtp_host: Optional[str] = Field(default=None, description="SMTP server host")
    smtp_port: int = Field(default=587, description="SMTP server port")
    smtp_user: Optional[str] = Field(default=None, description="SMTP username")
    smtp_password: Optional[str] = Field(default=None, description="SMTP password")
    smtp_use_tls: bool = Field(default=True, description="Use STARTTLS")
    email_sender: str = Field(default="contracts@example.com", description="From address")
    email_sender_name: str = Field(default="Contract Signing", description="From display name")
    company_name: str = Field(default="Your Company", description="Company shown in emails and documents")

    # Public URL used to build signing links
    public_base_url: str = Field(default="http://localhost:8000", description="Base URL for signing links")

    # Verification tokens
    token_ttl_hours: int = Field(default=24, description="Verification token lifetime in hours")

    # Reminders
    reminder_offsets_hours: List[int] = Field(
        default=[24, 72, 168], description="Reminder offsets from external signature request",
    )
    reminder_sweep_minutes: int = Field(default=60, description="Reminder sweep interval in minutes")
    reminder_max_attempts: int = Field(default=5, description="Send attempts before a reminder is left alone")

    # Document jobs
    job_poll_seconds: int = Field(default=30, description="Document job poll interval")
    job_batch_size: int = Field(default=5, description="Jobs processed per poll")
    job_max_attempts: int = Field(default=3, description="Attempts before a job is marked as error")
    job_retry_delay_seconds: int = Field(default=10, description="Minimum delay before a failed job is retried")
    job_lease_seconds: int = Field(default=300, description="Lease held on a claimed job")

    # Technical evidence collection
    ip_lookup_url: Optional[str] = Field(
        default="https://api.ipify.org?format=json", description="Public IP lookup endpoint",
    )
    geolocation_enabled: bool = Field(default=False, description="Collect best-effort geolocation")
    geolocation_url: str = Field(default="https://ipapi.co/{ip}/json/", description="Geolocation lookup endpoint")
    geolocation_timeout: float = Field(default=5.0, description="Geolocation lookup timeout in seconds")
    service_user_agent: str = Field(default="esign-workflow/0.1", description="User agent for server-side events")
    timezone: str = Field(default="UTC", description="IANA timezone recorded with evidence")
    trusted_proxies: List[str] = Field(
        default=[], description="Peer addresses whose X-Forwarded-For header is believed",
    )

    # Legal conformance
    recognized_certificate_issuers: List[str] = Field(
        default=["ICP-Brasil"], description="Issuers accepted as qualified certificate authorities",
    )

    # Background worker
    worker_enabled: bool = Field(default=True, description="Start the background worker with the API")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def get_settings() -> Settings:
    """Get application settings"""
    return Settings()
