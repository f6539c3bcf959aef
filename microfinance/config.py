"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class MicrofinanceConfig(BaseSettings):
    """Microfinance back-office configuration"""
    
    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "microfinance.db"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    local_currency: str = "LRD"
    max_schedule_steps: int = 500  # Runaway guard for due-date stepping
    ledger_retry_attempts: int = 3  # Compare-and-swap retries on loan writes
    
    # Metrics configuration
    metrics_batch_size: int = 50
    
    # Role configuration
    restricted_roles: List[str] = ["loan officer", "field agent"]
    approver_roles: List[str] = ["admin", "branch head"]
    expense_forbidden_roles: List[str] = ["loan officer"]
    
    class Config:
        env_prefix = "MICROFIN_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MicrofinanceConfig()


def get_config() -> MicrofinanceConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrofinanceConfig:
    """Reload configuration from environment"""
    global config
    config = MicrofinanceConfig()
    return config
