"""
Configuration management for the fleet controller
Centralized configuration with validation and environment variable support
"""

from pathlib import Path
from typing import Optional, Dict, Any, List
from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml


class Settings(BaseSettings):
    """Application settings with validation"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="VPNFLEET_",
        case_sensitive=False,
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    debug: bool = Field(default=False)

    # Data Storage
    database_url: str = Field(default="sqlite+aiosqlite:///./vpnfleet.db")
    database_echo: bool = Field(default=False)

    # Security / Auth
    secret_key: Optional[str] = Field(default=None)
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60)
    admin_username: str = Field(default="admin")
    admin_password: Optional[str] = Field(default=None)
    admin_password_hash: Optional[str] = Field(default=None)

    # API Configuration
    api_version: str = Field(default="v1")
    cors_origins: List[str] = Field(default=["*"])
    allowed_hosts: List[str] = Field(default_factory=list)

    # Health monitoring
    node_heartbeat_timeout: int = Field(default=90, ge=1)  # seconds
    frontend_heartbeat_timeout: int = Field(default=90, ge=1)  # seconds
    health_check_interval: int = Field(default=30, ge=1)  # seconds
    background_tasks_enabled: bool = Field(default=True)

    # Censorship auto-heal
    autoheal_enabled: bool = Field(default=True)
    autoheal_min_connections: int = Field(default=50, ge=0)
    autoheal_max_traffic_bytes: int = Field(default=1024, ge=0)

    # Inbound rotation
    rotation_check_interval: int = Field(default=600, ge=1)  # seconds
    port_allocation_attempts: int = Field(default=100, ge=1)

    # Relay auth
    relay_legacy_guard_hours: int = Field(default=24, ge=0)
    relay_default_method: str = Field(default="chacha20-ietf-poly1305")

    # SNI pool
    sni_default_tier: int = Field(default=1, ge=0)
    sni_default_score: int = Field(default=100, ge=0, le=100)
    sni_max_per_report: int = Field(default=256, ge=1)
    sni_rediscovery_bonus: int = Field(default=1, ge=0)
    sni_probe_success_delta: int = Field(default=5)
    sni_probe_failure_delta: int = Field(default=-20)
    sni_active_threshold: int = Field(default=30, ge=0, le=100)

    # Capacity estimation
    capacity_per_user_mbps: float = Field(default=8.0, gt=0)
    capacity_min_users: int = Field(default=2, ge=1)
    capacity_max_users: int = Field(default=10000, ge=1)
    capacity_soft_threshold: float = Field(default=60.0, ge=0, le=100)
    capacity_min_fraction: float = Field(default=0.35, gt=0, le=1)
    capacity_smoothing: float = Field(default=0.3, gt=0, le=1)
    capacity_floor_users: int = Field(default=1, ge=1)

    # Remote execution
    ssh_timeout: int = Field(default=15, ge=1)
    agent_service_name: str = Field(default="vpnfleet-agent")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[Path] = Field(default=None)

    @field_validator("secret_key", mode="before")
    @classmethod
    def generate_secret_key(cls, v):
        """Generate a secret key if not provided"""
        if not v:
            import secrets
            return secrets.token_urlsafe(32)
        return v

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string or list"""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def parse_allowed_hosts(cls, v):
        """Parse allowed hosts from string or list"""
        if isinstance(v, str):
            return [h.strip() for h in v.split(",") if h.strip()]
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v

    # --- Compatibility properties (uppercase aliases) ---
    @property
    def HOST(self) -> str:
        return self.host

    @property
    def PORT(self) -> int:
        return self.port

    @property
    def DEBUG(self) -> bool:
        return self.debug

    @property
    def LOG_LEVEL(self) -> str:
        return self.log_level

    @property
    def CORS_ORIGINS(self) -> List[str]:
        return self.cors_origins

    @property
    def ALLOWED_HOSTS(self) -> List[str]:
        return self.allowed_hosts

    @property
    def SECRET_KEY(self) -> str:
        return self.secret_key or ""

    @property
    def ALGORITHM(self) -> str:
        return self.jwt_algorithm

    @property
    def ACCESS_TOKEN_EXPIRE_MINUTES(self) -> int:
        return self.access_token_expire_minutes


class ConfigManager:
    """Manages application configuration"""

    _instance: Optional['ConfigManager'] = None
    _settings: Optional[Settings] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def settings(self) -> Settings:
        """Get application settings"""
        if self._settings is None:
            self._settings = Settings()
        return self._settings

    def reload(self):
        """Reload configuration from environment"""
        self._settings = Settings()

    def load_from_file(self, config_file: Path):
        """Load additional configuration from YAML file"""
        if config_file.exists():
            with open(config_file, 'r') as f:
                config_data = yaml.safe_load(f)
                if config_data:
                    for key, value in config_data.items():
                        if hasattr(self.settings, key):
                            setattr(self.settings, key, value)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key"""
        return getattr(self.settings, key, default)

    def set(self, key: str, value: Any):
        """Set configuration value"""
        if hasattr(self.settings, key):
            setattr(self.settings, key, value)

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return self.settings.model_dump()


# Global configuration instance
config = ConfigManager()

settings = config.settings
