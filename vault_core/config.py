"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class VaultConfig(BaseSettings):
    """Vault core configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///vault.db"  # memory://, sqlite:///path, postgresql://...
    
    # Deployment
    environment: str = "development"  # development, staging, production
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: List[str] = ["*"]
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    auto_complete_delay_minutes: int = 30
    joint_deposit_percentage: str = "0.01"
    max_write_retries: int = 5
    otp_ttl_minutes: int = 10
    
    # Verification policy
    require_email_verification: bool = False  # QR verification subsumes email when False
    verification_bypass_emails: List[str] = []  # Ignored when environment is production
    
    # Outbound integrations (empty = log only)
    notification_webhook_url: str = ""
    notification_timeout: float = 5.0
    email_api_url: str = ""
    email_api_key: str = ""
    email_sender: str = "VaultBank <noreply@vaultbank.example>"
    document_root: str = ""  # Empty = keep uploads in memory
    
    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"
    
    class Config:
        env_prefix = "VAULT_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = VaultConfig()


def get_config() -> VaultConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> VaultConfig:
    """Reload configuration from environment"""
    global config
    config = VaultConfig()
    return config
