"""Configuration management for the trend-trader system."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import yaml


@dataclass
class ProductConfig:
    """Traded product configuration."""
    product_id: str = "BTC-USD"
    base_currency: str = "BTC"
    quote_currency: str = "USD"
    min_base_size: float = 0.00001


@dataclass
class SignalConfig:
    """Momentum signal configuration."""
    threshold: int = 20
    tick_seconds: float = 1.0
    stop_loss_pct: float = 0.01


@dataclass
class OrdersConfig:
    """Order placement configuration."""
    take_profit_pct: float = 0.005
    poll_interval_seconds: float = 2.0
    price_decimals: int = 2
    size_decimals: int = 8
    exit_time_in_force: str = "GTT"
    exit_cancel_after: str = "min"


@dataclass
class RetryConfig:
    """Retry and supervision configuration."""
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    max_attempts: int = 10
    max_restarts: int = 3


@dataclass
class ScheduleConfig:
    """Periodic task cadences."""
    price_refresh_seconds: float = 5.0
    feed_throttle_seconds: float = 1.0
    status_log_seconds: float = 2.0
    orders_log_seconds: float = 60.0


@dataclass
class GatewayConfig:
    """Exchange gateway configuration."""
    api_url: str = "https://api.exchange.coinbase.com"
    sandbox_api_url: str = "https://api-public.sandbox.exchange.coinbase.com"
    request_timeout_seconds: Optional[float] = None
    paper_quote_balance: float = 10000.0


@dataclass
class FeedConfig:
    """Reference-average stream configuration."""
    ws_url: str = "ws://localhost:8765/book-price-avg"
    reconnect_delay_seconds: float = 1.0
    max_reconnect_delay_seconds: float = 60.0
    product_field: str = "PRODUCT_ID"
    price_field: str = "TICKER_SYMBOL_AVG"


@dataclass
class DatabaseConfig:
    """Database configuration."""
    data_dir: str = "./data"
    execution_db: str = "execution.db"


@dataclass
class Config:
    """Main configuration for the trading system."""
    product: ProductConfig = field(default_factory=ProductConfig)
    signal: SignalConfig = field(default_factory=SignalConfig)
    orders: OrdersConfig = field(default_factory=OrdersConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    def _sections(self) -> dict:
        return {
            "product": self.product,
            "signal": self.signal,
            "orders": self.orders,
            "retry": self.retry,
            "schedule": self.schedule,
            "gateway": self.gateway,
            "feed": self.feed,
            "database": self.database,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Create config from dictionary."""
        config = cls()
        for section_name, section_obj in config._sections().items():
            if section_name in data:
                for key, value in (data[section_name] or {}).items():
                    if hasattr(section_obj, key):
                        setattr(section_obj, key, value)
        return config

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return {
            name: section.__dict__.copy()
            for name, section in self._sections().items()
        }


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, looks for:
            1. TREND_TRADER_CONFIG env var
            2. ./config/default.yaml
            3. Uses default config

    Returns:
        Config object
    """
    if config_path is None:
        config_path = os.environ.get("TREND_TRADER_CONFIG")

    if config_path is None:
        default_path = Path("./config/default.yaml")
        if default_path.exists():
            config_path = str(default_path)

    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path, "r") as f:
                data = yaml.safe_load(f)
                return Config.from_dict(data or {})

    return Config()


def save_config(config: Config, config_path: str) -> None:
    """Save configuration to YAML file."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
