"""
Config loading and validation for aster-futures-trader

Validates config/app.yaml against Pydantic schemas and loads exchange
credentials from the environment. Ensures configuration is correct before
the bot or the console scripts touch the exchange.

Usage:
    from tools.config_validator import load_config, load_credentials

    config = load_config("config/app.yaml")
    credentials = load_credentials(config.exchange.auth_mode)
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

from core import exceptions
from core.signing import ApiKeyCredentials, Credentials, WalletCredentials

logger = logging.getLogger(__name__)

MAINNET_URL = "https://fapi.asterdex.com"
TESTNET_URL = "https://testnet-fapi.asterdex.com"

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

TRUE_STRINGS = {"1", "true", "yes", "on"}
FALSE_STRINGS = {"0", "false", "no", "off", ""}


# ===== App Schema =====
class ExchangeConfig(BaseModel):
    """AsterDex connectivity and request pacing"""
    testnet: bool = Field(default=False, description="Use the testnet base URL")
    base_url: Optional[str] = Field(default=None, description="Explicit base URL (overrides testnet)")
    auth_mode: str = Field(default="hmac", pattern="^(hmac|eip712)$", description="Signing scheme")
    position_mode: str = Field(default="ONE_WAY", pattern="^(ONE_WAY|HEDGE)$", description="Account position mode")
    api_prefix: str = Field(default="/fapi/v1", pattern="^/", description="Default endpoint version prefix")
    prefix_overrides: Dict[str, str] = Field(
        default_factory=lambda: {"balance": "/fapi/v2", "position_risk": "/fapi/v2"},
        description="Per-endpoint version prefix",
    )
    recv_window_ms: int = Field(default=5000, gt=0, le=60000, description="HMAC recvWindow")
    request_timeout_seconds: float = Field(default=20.0, gt=0, description="HTTP timeout")
    min_request_interval_ms: int = Field(default=100, ge=0, description="Minimum spacing between signed requests")
    clock_sync_enabled: bool = Field(default=True, description="Use exchange-corrected time for nonces")
    resync_interval_seconds: float = Field(default=60.0, gt=0, description="Clock offset max age")
    drift_warn_ms: int = Field(default=1000, gt=0, description="Warn above this clock offset")
    rate_limit_cooldown_seconds: float = Field(default=1.0, ge=0, description="Sleep after a rate-limit response")
    weight_budget: int = Field(default=2400, gt=0, description="Request weight per minute")
    weight_warn_ratio: float = Field(default=0.83, gt=0, le=1, description="Warn above this share of weight_budget")

    @field_validator("position_mode", mode="before")
    @classmethod
    def normalize_position_mode(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("auth_mode", mode="before")
    @classmethod
    def normalize_auth_mode(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("prefix_overrides")
    @classmethod
    def validate_prefixes(cls, v: Dict[str, str]) -> Dict[str, str]:
        for name, prefix in v.items():
            if not prefix.startswith("/"):
                raise ValueError(f"Prefix for {name} must start with '/', got {prefix!r}")
        return v

    @property
    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return TESTNET_URL if self.testnet else MAINNET_URL


class RiskConfig(BaseModel):
    """Position sizing parameters"""
    percentage: float = Field(default=2.5, gt=0, le=100, description="Balance % risked per trade")
    leverage: int = Field(default=20, ge=1, le=100, description="Leverage applied per symbol")
    take_profit_percent: float = Field(default=0.5, gt=0, lt=100, description="Take profit distance %")
    stop_loss_percent: float = Field(default=0.3, gt=0, lt=100, description="Stop loss distance %")


class TradingConfig(BaseModel):
    """Signal guards"""
    allowed_symbols: List[str] = Field(default_factory=lambda: ["ADAUSDT", "TAOUSDT", "UNIUSDT"], min_length=1)
    max_daily_trades: int = Field(default=20, gt=0)
    max_open_positions: int = Field(default=3, gt=0)
    dry_run: bool = Field(default=False, description="Compute and log, never send orders")

    @field_validator("allowed_symbols")
    @classmethod
    def normalize_symbols(cls, v: List[str]) -> List[str]:
        symbols = [s.strip().upper() for s in v if s and s.strip()]
        if not symbols:
            raise ValueError("allowed_symbols must not be empty")
        return symbols


class TradingHoursConfig(BaseModel):
    """UTC trading window"""
    enabled: bool = False
    start_hour: int = Field(default=6, ge=0, le=23)
    end_hour: int = Field(default=22, ge=0, le=23)


class MonitoringConfig(BaseModel):
    poll_interval_seconds: float = Field(default=30.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = "logs/aster-futures-trader.log"

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v


class AlertsConfig(BaseModel):
    """Webhook notifications"""
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    chat_id: Optional[str] = None
    min_severity: str = Field(default="info", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)

    @field_validator("chat_id", mode="before")
    @classmethod
    def stringify_chat_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class AppConfig(BaseModel):
    """Complete app.yaml schema"""
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    trading_hours: TradingHoursConfig = Field(default_factory=TradingHoursConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


# ===== Loading =====
def _describe_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Point at the offending line with two lines of context either side."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"{file_path}: {error}"

    where = f"{file_path}:{mark.line + 1}:{mark.column + 1}"
    reason = getattr(error, "problem", None) or str(error)
    try:
        lines = file_path.read_text().splitlines()
    except OSError:
        return f"{where}: {reason}"

    first, last = max(mark.line - 2, 0), min(mark.line + 3, len(lines))
    excerpt = "\n".join(
        f"{'>' if n == mark.line else ' '} {n + 1:4d} | {lines[n]}" for n in range(first, last)
    )
    return f"{where}: {reason}\n{excerpt}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Parse a YAML file; an empty file yields {}.

    Raises:
        FileNotFoundError: missing file
        yaml.YAMLError: parse failure, message carries line/column context
    """
    if not file_path.is_file():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    text = file_path.read_text()
    try:
        return yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise yaml.YAMLError(_describe_yaml_error(file_path, e)) from e


def _parse_bool(name: str, raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in TRUE_STRINGS:
        return True
    if normalized in FALSE_STRINGS:
        return False
    raise exceptions.ValidationError(f"{name} must be true or false, got {raw!r}")


def apply_env_overrides(raw: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Overlay ASTERDEX_TESTNET, ASTERDEX_POSITION_MODE and DRY_RUN onto raw config.

    Returns a new dict; raw is left untouched.
    """
    environ = os.environ if environ is None else environ
    merged = {key: dict(value) if isinstance(value, dict) else value for key, value in (raw or {}).items()}
    exchange = merged["exchange"] = merged.get("exchange") or {}
    trading = merged["trading"] = merged.get("trading") or {}

    if environ.get("ASTERDEX_TESTNET") is not None:
        exchange["testnet"] = _parse_bool("ASTERDEX_TESTNET", environ["ASTERDEX_TESTNET"])
    if environ.get("ASTERDEX_POSITION_MODE"):
        exchange["position_mode"] = environ["ASTERDEX_POSITION_MODE"]
    if environ.get("DRY_RUN") is not None:
        trading["dry_run"] = _parse_bool("DRY_RUN", environ["DRY_RUN"])

    return merged


def _schema_errors(label: str, error: ValidationError) -> List[str]:
    return [
        f"{label}: {' -> '.join(str(loc) for loc in item['loc'])}: {item['msg']}"
        for item in error.errors()
    ]


def validate_sanity_checks(config: AppConfig) -> List[str]:
    """
    Logical consistency checks the schema cannot express.

    Detects:
    - stop loss beyond the liquidation distance implied by leverage
    - take profit / stop loss that round to the same level
    - empty trading window
    - duplicate allowed symbols
    """
    errors: List[str] = []

    liquidation_distance = 100.0 / config.risk.leverage
    if config.risk.stop_loss_percent >= liquidation_distance:
        errors.append(
            f"risk.stop_loss_percent ({config.risk.stop_loss_percent}%) is at or beyond the "
            f"liquidation distance for {config.risk.leverage}x leverage (~{liquidation_distance:.2f}%)"
        )

    hours = config.trading_hours
    if hours.enabled and hours.start_hour == hours.end_hour:
        errors.append("trading_hours: start_hour equals end_hour (empty trading window)")

    symbols = config.trading.allowed_symbols
    if len(set(symbols)) != len(symbols):
        errors.append("trading.allowed_symbols contains duplicates")

    if config.trading.max_open_positions > config.trading.max_daily_trades:
        errors.append(
            f"trading.max_open_positions ({config.trading.max_open_positions}) exceeds "
            f"max_daily_trades ({config.trading.max_daily_trades})"
        )

    return errors


def validate_app_config(config_path: Path, environ: Optional[Mapping[str, str]] = None) -> List[str]:
    """
    Validate app.yaml (schema + sanity checks).

    Returns:
        List of error messages (empty if valid)
    """
    label = config_path.name
    try:
        raw = apply_env_overrides(load_yaml_file(config_path), environ)
        config = AppConfig(**raw)
    except FileNotFoundError as e:
        return [f"{label}: {e}"]
    except yaml.YAMLError as e:
        return [f"{label}: Invalid YAML - {e}"]
    except exceptions.ValidationError as e:
        return [f"{label}: {e}"]
    except ValidationError as e:
        return _schema_errors(label, e)
    except TypeError as e:
        return [f"{label}: top-level YAML must be a mapping ({e})"]

    errors = [f"{label}: {msg}" for msg in validate_sanity_checks(config)]
    if not errors:
        logger.info(f"✅ {label} validation passed")
    return errors


def validate_all_configs(config_dir: str = "config", environ: Optional[Mapping[str, str]] = None) -> List[str]:
    """
    Validate app.yaml inside config_dir.

    Returns:
        List of error messages (empty if valid)
    """
    all_errors = validate_app_config(Path(config_dir) / "app.yaml", environ)

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


def load_config(path: str = "config/app.yaml", environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Load and validate app config, environment overrides applied.

    Raises:
        core.exceptions.ValidationError: listing every problem found
    """
    config_path = Path(path)
    errors = validate_app_config(config_path, environ)
    if errors:
        raise exceptions.ValidationError("Invalid configuration:\n  " + "\n  ".join(errors))
    return AppConfig(**apply_env_overrides(load_yaml_file(config_path), environ))


def load_credentials(auth_mode: str = "hmac", environ: Optional[Mapping[str, str]] = None) -> Credentials:
    """
    Read exchange credentials from the environment.

    hmac:   ASTERDEX_API_KEY, ASTERDEX_API_SECRET
    eip712: ASTERDEX_USER_ADDRESS, ASTERDEX_SIGNER_ADDRESS, ASTERDEX_PRIVATE_KEY

    Raises:
        core.exceptions.ValidationError: missing or malformed values
    """
    environ = os.environ if environ is None else environ

    def require(name: str) -> str:
        value = (environ.get(name) or "").strip()
        if not value:
            raise exceptions.ValidationError(f"Missing required environment variable: {name}")
        return value

    mode = (auth_mode or "hmac").strip().lower()
    if mode == "hmac":
        return ApiKeyCredentials(
            api_key=require("ASTERDEX_API_KEY"),
            api_secret=require("ASTERDEX_API_SECRET"),
        )

    if mode == "eip712":
        user_address = require("ASTERDEX_USER_ADDRESS")
        signer_address = require("ASTERDEX_SIGNER_ADDRESS")
        private_key = require("ASTERDEX_PRIVATE_KEY")

        if not ADDRESS_RE.match(user_address):
            raise exceptions.ValidationError("ASTERDEX_USER_ADDRESS must be a valid Ethereum address (0x...)")
        if not ADDRESS_RE.match(signer_address):
            raise exceptions.ValidationError("ASTERDEX_SIGNER_ADDRESS must be a valid Ethereum address (0x...)")
        if not PRIVATE_KEY_RE.match(private_key):
            # Never echo the value
            raise exceptions.ValidationError(
                "ASTERDEX_PRIVATE_KEY must be a valid Ethereum private key (0x... 64 hex chars)"
            )
        return WalletCredentials(
            user_address=user_address,
            signer_address=signer_address,
            private_key=private_key,
        )

    raise exceptions.ValidationError(f"Unsupported auth_mode: {auth_mode!r}")


def main(argv: Optional[List[str]] = None) -> int:
    """Validate a config directory from the command line; exit status 1 on errors."""
    import argparse

    parser = argparse.ArgumentParser(description="Validate aster-futures-trader configuration")
    parser.add_argument("config_dir", nargs="?", default="config", help="Directory holding app.yaml")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    errors = validate_all_configs(args.config_dir)
    if not errors:
        print(f"✅ {args.config_dir}/app.yaml is valid")
        return 0

    print(f"❌ {len(errors)} problem(s) in {args.config_dir}/app.yaml:")
    for error in errors:
        print(f"  - {error}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
