"""
SwingDesk Application Settings
Configuration management using Pydantic Settings
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "SwingDesk"
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Database
    database_url: str = Field(default="sqlite:///./swingdesk.db")

    # Trading Configuration
    paper_trading: bool = Field(default=True)

    # Default swing risk limits for new portfolios
    risk_per_trade_pct: float = Field(default=1.0, gt=0, le=100)
    max_position_exposure_pct: float = Field(default=15.0, gt=0, le=100)
    max_open_positions: int = Field(default=5, gt=0)
    max_daily_risk_pct: float = Field(default=2.0, gt=0, le=100)
    max_portfolio_drawdown_pct: float = Field(default=10.0, gt=0, le=100)

    # Capital bucket phase thresholds
    early_stage_threshold: float = Field(default=300000.0, ge=0)
    growth_stage_threshold: float = Field(default=500000.0, ge=0)

    # Circuit breaker
    circuit_breaker_window_minutes: int = Field(default=60, gt=0)
    circuit_breaker_min_orders: int = Field(default=5, gt=0)
    circuit_breaker_failure_threshold_pct: float = Field(default=50.0, ge=0, le=100)

    # Exit policy
    tp1_exit_pct: float = Field(default=50.0, gt=0, le=100)
    breakeven_on_tp1: bool = Field(default=True)
    default_max_holding_days: int = Field(default=30, gt=0)

    # Optimistic concurrency
    optimistic_retry_limit: int = Field(default=3, gt=0)

    def risk_overrides(self) -> dict:
        """RiskConfig fields for newly created portfolios"""
        return {
            'risk_per_trade_pct': self.risk_per_trade_pct,
            'max_position_exposure_pct': self.max_position_exposure_pct,
            'max_open_positions': self.max_open_positions,
            'max_daily_risk_pct': self.max_daily_risk_pct,
            'max_portfolio_drawdown_pct': self.max_portfolio_drawdown_pct,
        }


# Global settings instance
settings = Settings()
