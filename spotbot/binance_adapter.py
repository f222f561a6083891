import hashlib
import hmac
import time
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cache import TTLCache
from .exchange import (
    BinanceAPIError,
    ClockSkewError,
    ExchangeAdapter,
    IPBannedError,
    RateLimitError,
    VenueUnavailableError,
    quantize_down,
)
from .logging_setup import logger, order_logger
from .models import Bar, MarketFill, OperationalState, OrderSide
from .rate_limit_policy import RateBudget, WeightQuota
from .secrets import BinanceCredentials

TESTNET_URL = "https://testnet.binance.vision"
DEFAULT_TAKER_FEE = Decimal("0.001")
DEFAULT_STEP_SIZE = Decimal("0.000001")
DEFAULT_TICK_SIZE = Decimal("0.00000001")

CODE_RATE_LIMIT = -1003
CODE_CLOCK_SKEW = -1021
CODE_NO_OPEN_ORDERS = -2011
CODE_UNKNOWN_ORDER = -2013


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _fmt(value: Decimal, places: int) -> str:
    """Fixed-point string rounded down, as the venue expects for sizes."""
    return str(Decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN))


class BinanceAdapter(ExchangeAdapter):
    """Exchange gateway for the Binance spot REST API.

    Features:
    - HMAC-SHA256 query-string signing with a server-synchronized timestamp.
    - Used-weight governance: voluntary throttle below the venue limit, counter
      overwritten from the ``x-mbx-used-weight-1m`` response header.
    - Fault classification with at most one retry per call: clock skew resyncs
      and retries, rate limits sleep for Retry-After and retry, bans trip the
      OFFLINE circuit breaker and never retry.
    - TTL caches for prices, candles, account snapshot and symbol filters.

    Notes:
    - urllib3 ``Retry`` is mounted for idempotent GETs on 5xx only; order
      placement is never retried at the transport level.
    - While the persisted operational state is OFFLINE every signed call raises
      ``VenueUnavailableError`` without touching the network.
    """

    def __init__(
        self,
        api_key: str,
        secret: str,
        settings_store,
        *,
        notifier=None,
        base_url: str = "https://api.binance.com",
        testnet: bool = False,
        quote_asset: str = "USDT",
        timeout: int = 10,
        recv_window: int = 60000,
        max_retries: int = 3,
        default_retry_after: float = 60.0,
        budget: Optional[RateBudget] = None,
        market_cache: Optional[TTLCache] = None,
        account_cache: Optional[TTLCache] = None,
        info_cache: Optional[TTLCache] = None,
    ):
        self.api_key = api_key
        self.secret = secret
        self.settings_store = settings_store
        self.notifier = notifier
        self.testnet = testnet
        self.base_url = (TESTNET_URL if testnet else base_url).rstrip("/")
        self.quote_asset = quote_asset
        self.timeout = timeout
        self.recv_window = recv_window
        self.default_retry_after = default_retry_after
        self.budget = budget or RateBudget()
        self.market_cache = market_cache or TTLCache(10.0)
        self.account_cache = account_cache or TTLCache(30.0)
        self.info_cache = info_cache or TTLCache(3600.0)

        self.session = requests.Session()
        retries = Retry(total=max_retries, backoff_factor=0.5, status_forcelist=(500, 502, 503, 504), allowed_methods=frozenset(["GET"]), raise_on_status=False)
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

    @classmethod
    def from_config(cls, config, credentials: BinanceCredentials, settings_store, notifier=None) -> "BinanceAdapter":
        """Create an adapter from ``BotConfig`` and credentials loaded via the secrets module."""
        ex = config.exchange
        return cls(
            api_key=credentials.api_key,
            secret=credentials.api_secret,
            settings_store=settings_store,
            notifier=notifier,
            base_url=ex.base_url,
            testnet=ex.testnet,
            quote_asset=ex.quote_asset,
            timeout=ex.timeout,
            recv_window=ex.recv_window,
            max_retries=ex.max_retries,
            default_retry_after=ex.default_retry_after,
            budget=RateBudget(WeightQuota(limit=ex.weight_limit, safety_threshold=ex.weight_safety_threshold)),
            market_cache=TTLCache(ex.market_cache_ttl),
            account_cache=TTLCache(ex.account_cache_ttl),
        )

    # --- transport ---
    def _sign(self, query_string: str) -> str:
        return hmac.new(self.secret.encode("utf-8"), query_string.encode("utf-8"), hashlib.sha256).hexdigest()

    def _is_online(self) -> bool:
        return self.settings_store.get_settings().is_online

    def _classify(self, resp) -> BinanceAPIError:
        status = resp.status_code
        code = None
        msg = resp.text
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code")
            msg = body.get("msg", msg)
        text = f"{status}: {msg}"

        if status == 418 or (code == CODE_RATE_LIMIT and "banned" in str(msg).lower()):
            return IPBannedError(text, status=status, code=code)
        if status == 429 or code == CODE_RATE_LIMIT:
            retry_after = None
            raw = _header(resp.headers, "Retry-After")
            if raw is not None:
                try:
                    retry_after = float(raw)
                except ValueError:
                    retry_after = None
            return RateLimitError(text, status=status, code=code, retry_after=retry_after)
        if code == CODE_CLOCK_SKEW:
            return ClockSkewError(text, status=status, code=code)
        return BinanceAPIError(text, status=status, code=code)

    def _trip_breaker(self, fault: IPBannedError) -> None:
        settings = self.settings_store.get_settings()
        if settings.operational_state is not OperationalState.OFFLINE:
            settings.operational_state = OperationalState.OFFLINE
            self.settings_store.save_settings(settings)
        logger.critical(f"Venue ban detected, bot switched OFFLINE: {fault}")
        if self.notifier is not None:
            self.notifier.send(f"Bot switched OFFLINE: venue ban detected ({fault})")

    def _request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None, *, signed: bool = False, retried: bool = False):
        self.budget.wait_if_needed()

        query = dict(params or {})
        headers = {}
        if signed:
            query["timestamp"] = self.budget.timestamp_ms()
            query["recvWindow"] = self.recv_window
            query_string = urlencode(query)
            query_string = f"{query_string}&signature={self._sign(query_string)}"
            headers["X-MBX-APIKEY"] = self.api_key
        else:
            query_string = urlencode(query)

        url = f"{self.base_url}{endpoint}"
        if query_string:
            url = f"{url}?{query_string}"

        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise BinanceAPIError(f"Request failed: {e}")

        self.budget.update_from_headers(resp.headers)

        if resp.ok:
            return resp.json() if resp.text else None

        fault = self._classify(resp)
        if isinstance(fault, IPBannedError):
            self._trip_breaker(fault)
            raise fault
        if retried:
            raise fault
        if isinstance(fault, ClockSkewError):
            logger.warning(f"Timestamp rejected on {endpoint}, resyncing clock")
            self.sync_time()
            return self._request(method, endpoint, params, signed=signed, retried=True)
        if isinstance(fault, RateLimitError):
            delay = fault.retry_after if fault.retry_after is not None else self.default_retry_after
            logger.warning(f"Rate limited on {endpoint}, sleeping {delay}s")
            time.sleep(delay)
            return self._request(method, endpoint, params, signed=signed, retried=True)
        logger.warning(f"Request to {endpoint} failed: {fault}")
        raise fault

    def signed_call(self, endpoint: str, method: str = "GET", params: Optional[Dict[str, Any]] = None):
        """Authenticated venue call.

        Raises:
            VenueUnavailableError: While the bot is OFFLINE (no network call made)
            BinanceAPIError: On any failure left after the single retry cycle
        """
        if not self._is_online():
            logger.info(f"Request {method} {endpoint} skipped: bot is OFFLINE")
            raise VenueUnavailableError("bot is OFFLINE")
        return self._request(method, endpoint, params, signed=True)

    def public_call(self, endpoint: str, params: Optional[Dict[str, Any]] = None):
        return self._request("GET", endpoint, params)

    def sync_time(self) -> Optional[int]:
        """Resynchronize the local-to-server clock offset. Failures are logged."""
        try:
            resp = self.session.request("GET", f"{self.base_url}/api/v3/time", timeout=self.timeout)
            if not resp.ok:
                raise BinanceAPIError(f"{resp.status_code}: {resp.text}", status=resp.status_code)
            offset = self.budget.set_server_time(int(resp.json()["serverTime"]))
        except (requests.exceptions.RequestException, BinanceAPIError, KeyError, ValueError) as e:
            logger.error(f"Clock sync failed: {e}")
            return None
        logger.debug(f"Clock offset {offset}ms")
        return offset

    # --- market data ---
    def get_all_prices(self) -> Dict[str, Decimal]:
        def load():
            data = self.public_call("/api/v3/ticker/price")
            return {row["symbol"]: Decimal(str(row["price"])) for row in data or []}

        return dict(self.market_cache.get_or_load("prices", load))

    def get_price(self, symbol: str) -> Optional[Decimal]:
        return self.get_all_prices().get(symbol)

    def get_24h_volume(self, symbol: str) -> Decimal:
        """Quote-asset volume over the last 24 hours."""
        def load():
            data = self.public_call("/api/v3/ticker/24hr", {"symbol": symbol})
            return Decimal(str(data["quoteVolume"]))

        return self.market_cache.get_or_load(f"24h_{symbol}", load)

    def get_klines(self, symbol: str, interval: str, limit: int) -> List[Bar]:
        def load():
            data = self.public_call("/api/v3/klines", {"symbol": symbol, "interval": interval, "limit": limit})
            return [
                Bar(
                    open=float(row[1]),
                    high=float(row[2]),
                    low=float(row[3]),
                    close=float(row[4]),
                    volume=float(row[5]),
                )
                for row in data or []
            ]

        return list(self.market_cache.get_or_load(f"{symbol}_{interval}_{limit}", load))

    def _symbol_filters(self, symbol: str) -> Dict[str, Dict[str, Any]]:
        def load():
            data = self.public_call("/api/v3/exchangeInfo", {"symbol": symbol})
            filters = data["symbols"][0]["filters"]
            return {f["filterType"]: f for f in filters}

        try:
            return self.info_cache.get_or_load(f"filters_{symbol}", load)
        except IPBannedError:
            raise
        except (BinanceAPIError, KeyError, IndexError) as e:
            logger.warning(f"exchangeInfo unavailable for {symbol}: {e}")
            return {}

    def get_step_size(self, symbol: str) -> Decimal:
        lot = self._symbol_filters(symbol).get("LOT_SIZE")
        return Decimal(str(lot["stepSize"])) if lot else DEFAULT_STEP_SIZE

    def get_tick_size(self, symbol: str) -> Decimal:
        price_filter = self._symbol_filters(symbol).get("PRICE_FILTER")
        return Decimal(str(price_filter["tickSize"])) if price_filter else DEFAULT_TICK_SIZE

    def round_quantity(self, symbol: str, quantity: Decimal) -> Decimal:
        return quantize_down(quantity, self.get_step_size(symbol))

    def round_price(self, symbol: str, price: Decimal) -> Decimal:
        return quantize_down(price, self.get_tick_size(symbol))

    # --- account ---
    def _account(self) -> Dict[str, Any]:
        return self.account_cache.get_or_load("account", lambda: self.signed_call("/api/v3/account"))

    def _balance(self, asset: str) -> Optional[Dict[str, Any]]:
        for row in self._account().get("balances", []):
            if row.get("asset") == asset:
                return row
        return None

    def get_free_balance(self) -> Decimal:
        row = self._balance(self.quote_asset)
        return Decimal(str(row["free"])) if row else Decimal("0")

    def get_asset_balance(self, asset: str) -> Decimal:
        row = self._balance(asset)
        if row is None:
            return Decimal("0")
        return Decimal(str(row["free"])) + Decimal(str(row.get("locked", "0")))

    def get_taker_fee(self, symbol: str) -> Decimal:
        """Taker commission from the fee endpoint; 0.1% on testnet or when unavailable."""
        if self.testnet:
            return DEFAULT_TAKER_FEE

        def load():
            data = self.signed_call("/sapi/v1/asset/tradeFee", params={"symbol": symbol})
            if not data:
                return None
            return Decimal(str(data[0]["takerCommission"]))

        try:
            fee = self.account_cache.get_or_load(f"fee_{symbol}", load)
        except IPBannedError:
            raise
        except (BinanceAPIError, KeyError) as e:
            logger.warning(f"Trade fee unavailable for {symbol}, using fallback: {e}")
            return DEFAULT_TAKER_FEE
        return fee if fee is not None else DEFAULT_TAKER_FEE

    # --- orders ---
    @staticmethod
    def _parse_fill(resp: Optional[Dict[str, Any]]) -> MarketFill:
        if not resp or "orderId" not in resp:
            raise BinanceAPIError(f"Unexpected order response: {resp}")
        price = None
        fills = resp.get("fills") or []
        fill_qty = sum((Decimal(str(f["qty"])) for f in fills), Decimal("0"))
        if fill_qty > 0:
            price = sum((Decimal(str(f["price"])) * Decimal(str(f["qty"])) for f in fills), Decimal("0")) / fill_qty
        return MarketFill(
            order_id=str(resp["orderId"]),
            filled_qty=Decimal(str(resp.get("executedQty", "0"))),
            filled_quote=Decimal(str(resp.get("cummulativeQuoteQty", "0"))),
            price=price,
        )

    def _place_order(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.signed_call("/api/v3/order", "POST", params)
        finally:
            self.account_cache.invalidate("account")

    def place_market_buy(self, symbol: str, quote_amount: Optional[Decimal] = None, quantity: Optional[Decimal] = None) -> MarketFill:
        if (quote_amount is None) == (quantity is None):
            raise ValueError("Provide exactly one of quote_amount or quantity")
        params = {"symbol": symbol, "side": OrderSide.BUY.value, "type": "MARKET"}
        if quote_amount is not None:
            params["quoteOrderQty"] = _fmt(quote_amount, 2)
        else:
            params["quantity"] = _fmt(quantity, 8)
        fill = self._parse_fill(self._place_order(params))
        order_logger.info(f"Market BUY {symbol}: qty={fill.filled_qty} quote={fill.filled_quote}")
        return fill

    def place_market_sell(self, symbol: str, quantity: Decimal) -> MarketFill:
        params = {"symbol": symbol, "side": OrderSide.SELL.value, "type": "MARKET", "quantity": _fmt(quantity, 8)}
        fill = self._parse_fill(self._place_order(params))
        order_logger.info(f"Market SELL {symbol}: qty={fill.filled_qty} quote={fill.filled_quote}")
        return fill

    def place_protective_stop(self, symbol: str, quantity: Decimal, trigger_price: Decimal, limit_price: Decimal, side: OrderSide) -> str:
        params = {
            "symbol": symbol,
            "side": OrderSide(side).value,
            "type": "STOP_LOSS_LIMIT",
            "timeInForce": "GTC",
            "quantity": _fmt(self.round_quantity(symbol, quantity), 8),
            "stopPrice": _fmt(self.round_price(symbol, trigger_price), 8),
            "price": _fmt(self.round_price(symbol, limit_price), 8),
        }
        resp = self._place_order(params)
        if not resp or "orderId" not in resp:
            raise BinanceAPIError(f"Unexpected order response: {resp}")
        order_logger.info(f"Stop {params['side']} {symbol} trigger={params['stopPrice']} limit={params['price']}")
        return str(resp["orderId"])

    def cancel_all_open_orders(self, symbol: str) -> None:
        try:
            self.signed_call("/api/v3/openOrders", "DELETE", {"symbol": symbol})
            order_logger.info(f"Cancelled open orders for {symbol}")
        except BinanceAPIError as e:
            if e.code == CODE_NO_OPEN_ORDERS:
                logger.debug(f"No open orders for {symbol}")
                return
            raise
        finally:
            self.account_cache.invalidate("account")

    def get_order(self, symbol: str, order_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.signed_call("/api/v3/order", params={"symbol": symbol, "orderId": order_id})
        except BinanceAPIError as e:
            if e.code == CODE_UNKNOWN_ORDER:
                return None
            raise

    def get_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        return self.signed_call("/api/v3/openOrders", params={"symbol": symbol}) or []
