from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import Dict, List
import json


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./kitdesk.db",
        alias="DATABASE_URL"
    )

    # Facility-local timezone for opening hours and slots
    timezone: str = Field(default="Europe/Jersey", alias="APP_TIMEZONE")

    # ==============================================
    # Snipe-IT (custody system of record)
    # ==============================================
    snipeit_base_url: str = Field(
        default="https://snipeit.example.com/api/v1",
        alias="SNIPEIT_BASE_URL"
    )
    snipeit_api_token: str = Field(default="", alias="SNIPEIT_API_TOKEN")
    snipeit_timeout_seconds: int = Field(default=20, alias="SNIPEIT_TIMEOUT_SECONDS")
    snipeit_verify_ssl: bool = Field(default=True, alias="SNIPEIT_VERIFY_SSL")

    # Timezone Snipe-IT reports/accepts wall-clock datetimes in (empty = APP_TIMEZONE)
    snipeit_timezone: str = Field(default="", alias="SNIPEIT_TIMEZONE")

    # DB column name of the custom field holding expected checkin date+time,
    # e.g. "_snipeit_expected_checkin_datetime_7"
    snipeit_expected_checkin_field: str = Field(default="", alias="SNIPEIT_EXPECTED_CHECKIN_FIELD")

    # GET response cache (seconds, 0 disables)
    api_cache_ttl_seconds: int = Field(default=60, alias="API_CACHE_TTL_SECONDS")

    # ==============================================
    # Slots
    # ==============================================
    slot_interval_minutes: int = Field(default=15, alias="SLOT_INTERVAL_MINUTES")
    slot_capacity: int = Field(default=0, alias="SLOT_CAPACITY")  # 0 = unlimited
    cooldown_slots: int = Field(default=0, alias="COOLDOWN_SLOTS")
    next_open_scan_days: int = Field(default=14, alias="NEXT_OPEN_SCAN_DAYS")

    # ==============================================
    # Reservations
    # ==============================================
    missed_cutoff_minutes: int = Field(default=60, alias="MISSED_CUTOFF_MINUTES")
    deletable_statuses: str = Field(
        default="pending,confirmed,cancelled,missed",
        alias="DELETABLE_STATUSES"
    )

    # ==============================================
    # Checkout rules (0 = unlimited)
    # ==============================================
    checkout_limits_enabled: bool = Field(default=False, alias="CHECKOUT_LIMITS_ENABLED")
    max_checkout_hours: int = Field(default=0, alias="MAX_CHECKOUT_HOURS")
    max_renewal_hours: int = Field(default=0, alias="MAX_RENEWAL_HOURS")
    max_total_hours: int = Field(default=0, alias="MAX_TOTAL_HOURS")

    # JSON: {"<group_id>": {"max_checkout_hours": 72, "max_renewal_hours": 0, "max_total_hours": 0}}
    checkout_group_overrides: str = Field(default="{}", alias="CHECKOUT_GROUP_OVERRIDES")

    single_active_checkout: bool = Field(default=False, alias="SINGLE_ACTIVE_CHECKOUT")
    max_advance_hours: int = Field(default=0, alias="MAX_ADVANCE_HOURS")
    access_group_prefix: str = Field(default="Access - ", alias="ACCESS_GROUP_PREFIX")

    # ==============================================
    # Background jobs
    # ==============================================
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    sync_interval_minutes: int = Field(default=10, alias="SYNC_INTERVAL_MINUTES")
    missed_sweep_interval_minutes: int = Field(default=5, alias="MISSED_SWEEP_INTERVAL_MINUTES")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    @field_validator('slot_interval_minutes', 'sync_interval_minutes', 'missed_sweep_interval_minutes')
    @classmethod
    def validate_positive_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("interval must be at least 1 minute")
        return v

    @field_validator('missed_cutoff_minutes')
    @classmethod
    def validate_missed_cutoff(cls, v: int) -> int:
        """Cutoff below one minute would mark bookings missed the moment they start"""
        return max(1, v)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def deletable_status_list(self) -> List[str]:
        return [s.strip().lower() for s in self.deletable_statuses.split(",") if s.strip()]

    @property
    def checkout_group_override_map(self) -> Dict[int, Dict[str, int]]:
        """
        Parse group overrides into {group_id: {facet: hours}}.
        Malformed JSON yields no overrides.
        """
        try:
            raw = json.loads(self.checkout_group_overrides or "{}")
        except ValueError:
            return {}
        if not isinstance(raw, dict):
            return {}

        overrides = {}
        for group_id, facets in raw.items():
            try:
                gid = int(group_id)
            except (TypeError, ValueError):
                continue
            if not isinstance(facets, dict):
                continue
            overrides[gid] = {
                key: int(facets.get(key, 0) or 0)
                for key in ("max_checkout_hours", "max_renewal_hours", "max_total_hours")
            }
        return overrides

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
