"""
Core: Exchange Connector (AsterDex USDT-M Futures)

Signed REST access to the AsterDex futures API (Binance-compatible surface).

Request pipeline for signed calls:
1. Refresh the exchange clock offset when stale (ClockSync)
2. Rate gate: keep >= min_request_interval between dispatches
3. Nonce + signature (NonceGenerator, Signer)
4. Send the signed string as query (GET/DELETE) or form body (POST/PUT)
5. Record used-weight headers (RateBudget)
Every failure goes through ErrorClassifier before reaching the caller.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import requests

from core.error_classifier import ErrorClassifier
from core.exceptions import ExchangeError, NetworkError, ValidationError
from core.nonce import NonceGenerator
from core.rate_limiter import RateBudget, RequestGate, USED_WEIGHT_HEADER
from core.signing import HmacSigner, Signer
from infra.clock_sync import ClockSync

logger = logging.getLogger(__name__)

MAINNET_BASE = "https://fapi.asterdex.com"
TESTNET_BASE = "https://testnet-fapi.asterdex.com"

DEFAULT_API_PREFIX = "/fapi/v1"
DEFAULT_PREFIX_OVERRIDES = {
    "balance": "/fapi/v2",
    "position_risk": "/fapi/v2",
}

ENDPOINTS = {
    "ping": "/ping",
    "time": "/time",
    "exchange_info": "/exchangeInfo",
    "ticker_price": "/ticker/price",
    "balance": "/balance",
    "leverage": "/leverage",
    "order": "/order",
    "position_risk": "/positionRisk",
    "user_trades": "/userTrades",
}

BODY_METHODS = {"POST", "PUT"}


@dataclass
class SymbolInfo:
    """Exchange trading constraints for a symbol"""
    symbol: str
    status: str = "TRADING"
    base_asset: str = ""
    quote_asset: str = "USDT"
    price_precision: int = 4
    quantity_precision: int = 4
    tick_size: float = 0.01
    step_size: float = 0.001
    min_qty: float = 0.0
    max_qty: float = 999999999.0
    min_notional: float = 0.0


@dataclass
class ExchangePosition:
    """Non-zero position as reported by positionRisk"""
    symbol: str
    position_side: str
    position_amt: float
    entry_price: float
    mark_price: float
    unrealized_profit: float
    liquidation_price: float
    leverage: float

    @property
    def side(self) -> str:
        return "LONG" if self.position_amt > 0 else "SHORT"

    @property
    def size(self) -> float:
        return abs(self.position_amt)


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class AsterExchange:
    """
    AsterDex futures connector with signed-request dispatch.

    Owns the clock, nonce, rate-gate and error-classification pieces of the
    request path. One instance is constructed per process and shared by
    reference (order placement and the reconciler use the same instance so
    nonce issuance and pacing are serialized through one dispatch lock).
    """

    def __init__(
        self,
        signer: Optional[Signer] = None,
        base_url: str = MAINNET_BASE,
        api_prefix: str = DEFAULT_API_PREFIX,
        prefix_overrides: Optional[Mapping[str, str]] = None,
        clock_sync_enabled: bool = True,
        resync_interval_seconds: float = ClockSync.RESYNC_INTERVAL_SECONDS,
        drift_warn_ms: int = ClockSync.DRIFT_WARN_MS,
        min_request_interval: float = 0.1,
        request_timeout: float = 20.0,
        rate_limit_cooldown: float = 1.0,
        weight_budget: int = 2400,
        weight_warn_ratio: float = 0.83,
        metrics=None,
        sleep=time.sleep,
    ):
        self.signer = signer
        self.base_url = base_url.rstrip("/")
        self.api_prefix = api_prefix
        self.prefix_overrides = dict(DEFAULT_PREFIX_OVERRIDES if prefix_overrides is None else prefix_overrides)
        self.clock_sync_enabled = clock_sync_enabled
        self.request_timeout = request_timeout
        self._metrics = metrics

        self.clock = ClockSync(
            fetch_server_time=self.get_server_time,
            resync_interval_seconds=resync_interval_seconds,
            drift_warn_ms=drift_warn_ms,
            metrics=metrics,
        )
        self.nonces = NonceGenerator(
            self.clock,
            use_server_time=clock_sync_enabled,
            distinct_ms=getattr(signer, "mode", None) == HmacSigner.mode,
        )
        self.gate = RequestGate(min_interval=min_request_interval, sleep=sleep)
        self.rate_budget = RateBudget(weight_budget=weight_budget, warn_ratio=weight_warn_ratio)
        self.classifier = ErrorClassifier(
            clock_sync=self.clock,
            rate_limit_cooldown=rate_limit_cooldown,
            sleep=sleep,
            metrics=metrics,
        )

        # Serializes gate -> nonce -> sign -> send across threads
        self._dispatch_lock = threading.Lock()

        self._exchange_info_cache: Optional[dict] = None
        self._exchange_info_time: Optional[float] = None
        self._exchange_info_ttl = 300.0

        self.is_connected = False

        mode = signer.mode if signer is not None else "public"
        logger.info(
            f"Initialized AsterExchange (base_url={self.base_url}, auth={mode}, "
            f"clock_sync={clock_sync_enabled}, min_interval={min_request_interval * 1000:.0f}ms)"
        )

    @classmethod
    def from_config(cls, exchange_config, signer: Optional[Signer] = None, metrics=None) -> "AsterExchange":
        """Build from an ExchangeConfig (tools.config_validator)."""
        return cls(
            signer=signer,
            base_url=exchange_config.resolved_base_url,
            api_prefix=exchange_config.api_prefix,
            prefix_overrides=exchange_config.prefix_overrides,
            clock_sync_enabled=exchange_config.clock_sync_enabled,
            resync_interval_seconds=exchange_config.resync_interval_seconds,
            drift_warn_ms=exchange_config.drift_warn_ms,
            min_request_interval=exchange_config.min_request_interval_ms / 1000.0,
            request_timeout=exchange_config.request_timeout_seconds,
            rate_limit_cooldown=exchange_config.rate_limit_cooldown_seconds,
            weight_budget=exchange_config.weight_budget,
            weight_warn_ratio=exchange_config.weight_warn_ratio,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Request dispatch
    # ------------------------------------------------------------------

    def path(self, name: str) -> str:
        """Versioned path for a named endpoint, e.g. path("order") -> /fapi/v1/order"""
        prefix = self.prefix_overrides.get(name, self.api_prefix)
        return f"{prefix}{ENDPOINTS[name]}"

    def _record_call(self, endpoint: str, started: float, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_api_call(endpoint, time.monotonic() - started, outcome)

    def _decode(self, response, endpoint: str, started: float) -> Any:
        try:
            data = response.json()
        except ValueError as exc:
            self._record_call(endpoint, started, "error")
            raise NetworkError(f"Invalid JSON from {endpoint}: {exc}", original=exc,
                               status=getattr(response, "status_code", None)) from exc
        self._record_call(endpoint, started, "ok")
        return data

    def public_call(self, method: str, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Unauthenticated request; returns the decoded JSON body."""
        url = self.base_url + endpoint
        started = time.monotonic()
        try:
            response = requests.request(
                method.upper(),
                url,
                params=dict(params) if params else None,
                timeout=self.request_timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            self._record_call(endpoint, started, "error")
            raise self.classifier.classify(exc, endpoint) from exc

        return self._decode(response, endpoint, started)

    def signed_call(self, method: str, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """
        Authenticated request.

        Raises:
            ValidationError: no signer configured
            ResyncRequired / RateLimited: retryable, side effects already applied
            InsufficientMargin / OrderRejected / ExchangeError / NetworkError
        """
        if self.signer is None:
            raise ValidationError("Credentials required for authenticated requests")

        if self.clock_sync_enabled:
            self.clock.ensure_fresh()

        method = method.upper()
        failure: Optional[requests.RequestException] = None

        with self._dispatch_lock:
            self.gate.wait()
            nonce = self.nonces.next()
            signed = self.signer.sign(method, endpoint, params, nonce)

            headers = dict(self.signer.headers())
            url = self.base_url + endpoint
            data = None
            if method in BODY_METHODS:
                headers["Content-Type"] = "application/x-www-form-urlencoded"
                data = signed.query_string
            else:
                url = f"{url}?{signed.query_string}"

            self.gate.mark()
            started = time.monotonic()
            try:
                response = requests.request(
                    method,
                    url,
                    data=data,
                    headers=headers,
                    timeout=self.request_timeout,
                )
                response.raise_for_status()
            except requests.RequestException as exc:
                failure = exc

        if failure is not None:
            self._record_call(endpoint, started, "error")
            raise self.classifier.classify(failure, endpoint) from failure

        snapshot = self.rate_budget.observe(getattr(response, "headers", None))
        if self._metrics is not None:
            self._metrics.record_used_weight(snapshot.used_weight)

        return self._decode(response, endpoint, started)

    # ------------------------------------------------------------------
    # Market data / connectivity
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        self.public_call("GET", self.path("ping"))
        return True

    def get_server_time(self) -> int:
        data = self.public_call("GET", self.path("time"))
        try:
            return int(data["serverTime"])
        except (KeyError, TypeError, ValueError):
            raise ExchangeError(None, f"Invalid time response: {data!r}") from None

    def connect(self) -> bool:
        """
        Verify connectivity, clock and credentials.

        ping -> clock sync -> balance (when a signer is configured)
        """
        logger.info(f"Connecting to AsterDex API at {self.base_url}...")
        try:
            self.ping()

            offset = self.clock.sync()
            if abs(offset) > 5000:
                logger.warning(f"Time difference with server: {abs(offset)}ms")

            if self.signer is not None:
                self.get_usdt_balance()
        except Exception as e:
            logger.error(f"Connection failed: {e}")
            self.is_connected = False
            raise

        self.is_connected = True
        logger.info(f"✅ Connected to AsterDex ({self.base_url})")
        return True

    def get_exchange_info(self, force: bool = False) -> dict:
        now = time.monotonic()
        if (
            not force
            and self._exchange_info_cache is not None
            and self._exchange_info_time is not None
            and now - self._exchange_info_time < self._exchange_info_ttl
        ):
            return self._exchange_info_cache

        info = self.public_call("GET", self.path("exchange_info"))
        self._exchange_info_cache = info
        self._exchange_info_time = now
        return info

    def get_symbol_info(self, symbol: str) -> SymbolInfo:
        info = self.get_exchange_info()
        symbol_data = next(
            (s for s in info.get("symbols") or [] if s.get("symbol") == symbol),
            None,
        )
        if symbol_data is None:
            raise ValidationError(f"Symbol {symbol} not found")

        filters = {f.get("filterType"): f for f in symbol_data.get("filters") or []}
        price_filter = filters.get("PRICE_FILTER", {})
        lot_size = filters.get("LOT_SIZE", {})
        min_notional = filters.get("MIN_NOTIONAL", {})

        return SymbolInfo(
            symbol=symbol_data["symbol"],
            status=symbol_data.get("status", "TRADING"),
            base_asset=symbol_data.get("baseAsset", ""),
            quote_asset=symbol_data.get("quoteAsset", "USDT"),
            price_precision=int(symbol_data.get("pricePrecision") or 4),
            quantity_precision=int(symbol_data.get("quantityPrecision") or 4),
            tick_size=_to_float(price_filter.get("tickSize"), 0.01),
            step_size=_to_float(lot_size.get("stepSize"), 0.001),
            min_qty=_to_float(lot_size.get("minQty"), 0.0),
            max_qty=_to_float(lot_size.get("maxQty"), 999999999.0),
            min_notional=_to_float(min_notional.get("notional") or min_notional.get("minNotional"), 0.0),
        )

    def get_current_price(self, symbol: str) -> float:
        data = self.public_call("GET", self.path("ticker_price"), {"symbol": symbol})
        price = _to_float(data.get("price") if isinstance(data, dict) else None, 0.0)
        if price <= 0:
            raise ExchangeError(None, f"Invalid price for {symbol}: {data!r}")
        logger.info(f"Current price for {symbol}: {price}")
        return price

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def get_usdt_balance(self) -> float:
        response = self.signed_call("GET", self.path("balance"))
        if not isinstance(response, list):
            raise ExchangeError(None, "Invalid balance response format")

        usdt = next((item for item in response if item.get("asset") == "USDT"), None)
        if usdt is None:
            logger.warning("USDT not found in wallet")
            return 0.0

        available = _to_float(usdt.get("availableBalance") or usdt.get("balance"), 0.0)
        logger.info(f"USDT Balance: {available} USDT")
        return available

    def get_open_positions(self, symbol: Optional[str] = None) -> List[ExchangePosition]:
        """Non-zero positions, optionally filtered server-side by symbol."""
        params = {"symbol": symbol} if symbol else {}
        response = self.signed_call("GET", self.path("position_risk"), params)
        if not isinstance(response, list):
            raise ExchangeError(None, "Invalid position response format")

        positions = []
        for raw in response:
            if not isinstance(raw, dict):
                raise ExchangeError(None, f"Invalid position entry: {raw!r}")
            amount = _to_float(raw.get("positionAmt"), 0.0)
            if amount == 0:
                continue
            positions.append(ExchangePosition(
                symbol=raw.get("symbol", ""),
                position_side=raw.get("positionSide", "BOTH"),
                position_amt=amount,
                entry_price=_to_float(raw.get("entryPrice")),
                mark_price=_to_float(raw.get("markPrice")),
                unrealized_profit=_to_float(raw.get("unRealizedProfit")),
                liquidation_price=_to_float(raw.get("liquidationPrice")),
                leverage=_to_float(raw.get("leverage"), 1.0),
            ))
        return positions

    def has_open_position(self, symbol: str, side: Optional[str] = None) -> bool:
        """Non-zero position on symbol, restricted to LONG/SHORT side when given."""
        return any(
            p.symbol == symbol and (side is None or p.side == side)
            for p in self.get_open_positions(symbol)
        )

    def get_trade_history(self, symbol: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit}
        if symbol:
            params["symbol"] = symbol
        response = self.signed_call("GET", self.path("user_trades"), params)
        return response if isinstance(response, list) else []

    @property
    def used_weight(self) -> Optional[int]:
        return self.rate_budget.snapshot().used_weight


__all__ = [
    "AsterExchange",
    "ExchangePosition",
    "SymbolInfo",
    "MAINNET_BASE",
    "TESTNET_BASE",
    "USED_WEIGHT_HEADER",
]
