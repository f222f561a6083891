"""
Exchange contract used by the strategy and the position lifecycle.

Defines the fault taxonomy raised by gateways, the abstract adapter every
venue implementation satisfies, and an in-memory venue that tests drive:
it fills market orders at the current price, keeps balances, triggers
protective stops when the price crosses them and can be told to fail.
"""

from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Tuple

from .models import Bar, MarketFill, OrderSide


class BinanceAPIError(Exception):
    """Transient-terminal venue failure: surfaced, not retried."""

    def __init__(self, message: str, *, status: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class ClockSkewError(BinanceAPIError):
    """Venue rejected the request timestamp."""


class RateLimitError(BinanceAPIError):
    """Venue rate limit exceeded."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class IPBannedError(BinanceAPIError):
    """Venue ban / lockout. Trips the circuit breaker."""


class VenueUnavailableError(BinanceAPIError):
    """Raised without a network call while the bot is OFFLINE."""


def quantize_down(value: Decimal, step: Decimal) -> Decimal:
    """Round ``value`` down to a multiple of ``step``."""
    if step <= 0:
        return value
    units = (value / step).to_integral_value(rounding=ROUND_DOWN)
    return (units * step).normalize()


class ExchangeAdapter(ABC):
    """Abstract venue adapter.

    All price/qty values use Decimal. Methods raise ``BinanceAPIError`` (or a
    subclass) on failure; they never return error sentinels.
    """

    quote_asset: str = "USDT"

    def base_asset(self, symbol: str) -> str:
        """Base asset of a quote-denominated symbol ("BTCUSDT" -> "BTC")."""
        if symbol.endswith(self.quote_asset):
            return symbol[: -len(self.quote_asset)]
        return symbol

    def sync_time(self) -> Optional[int]:
        """Align the request clock with the venue. Venues without signing skip it."""
        return None

    @abstractmethod
    def get_free_balance(self) -> Decimal:
        """Free quote-asset balance."""

    @abstractmethod
    def get_asset_balance(self, asset: str) -> Decimal:
        """Total (free + locked) holdings of ``asset``."""

    @abstractmethod
    def get_price(self, symbol: str) -> Optional[Decimal]:
        """Last price, or None if the venue does not list the symbol."""

    @abstractmethod
    def get_all_prices(self) -> Dict[str, Decimal]:
        pass

    @abstractmethod
    def get_24h_volume(self, symbol: str) -> Decimal:
        """Quote-asset volume over the last 24 hours."""

    @abstractmethod
    def get_klines(self, symbol: str, interval: str, limit: int) -> List[Bar]:
        """Oldest-first candles."""

    @abstractmethod
    def get_taker_fee(self, symbol: str) -> Decimal:
        """Current taker fee as a fraction (0.001 = 0.1%)."""

    @abstractmethod
    def round_quantity(self, symbol: str, quantity: Decimal) -> Decimal:
        pass

    @abstractmethod
    def round_price(self, symbol: str, price: Decimal) -> Decimal:
        pass

    @abstractmethod
    def place_market_buy(
        self,
        symbol: str,
        quote_amount: Optional[Decimal] = None,
        quantity: Optional[Decimal] = None,
    ) -> MarketFill:
        """Market buy sized by quote amount or by base quantity (exactly one)."""

    @abstractmethod
    def place_market_sell(self, symbol: str, quantity: Decimal) -> MarketFill:
        pass

    @abstractmethod
    def place_protective_stop(
        self,
        symbol: str,
        quantity: Decimal,
        trigger_price: Decimal,
        limit_price: Decimal,
        side: OrderSide,
    ) -> str:
        """Place a stop-limit order and return its exchange order ID."""

    @abstractmethod
    def cancel_all_open_orders(self, symbol: str) -> None:
        """Cancel every open order for ``symbol``. No orders is success."""

    @abstractmethod
    def get_order(self, symbol: str, order_id: str) -> Optional[Dict[str, Any]]:
        """Order details (``status`` key in venue terms) or None if unknown."""

    @abstractmethod
    def get_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        pass


class InMemoryExchange(ExchangeAdapter):
    """A simulated venue for tests that records calls and lets tests drive prices."""

    def __init__(
        self,
        *,
        quote_asset: str = "USDT",
        taker_fee: Decimal = Decimal("0.001"),
        step_size: Decimal = Decimal("0.00000001"),
        tick_size: Decimal = Decimal("0.00000001"),
        default_volume: Decimal = Decimal("100000000"),
    ):
        self.quote_asset = quote_asset
        self.taker_fee = taker_fee
        self.step_size = step_size
        self.tick_size = tick_size
        self.default_volume = default_volume
        self.balances: Dict[str, Decimal] = {}
        self.prices: Dict[str, Decimal] = {}
        self.volumes: Dict[str, Decimal] = {}
        self.klines: Dict[Tuple[str, str], List[Bar]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.market_orders: List[Dict[str, Any]] = []
        self.cancel_calls: List[str] = []
        self.queued_fills: List[Tuple[Decimal, Decimal, Optional[Decimal]]] = []
        self.fail_stop_placements = 0
        self.fail_market_orders = 0
        self.fail_balance_queries = False
        self.next_id = 1

    # --- test controls ---
    def _gen_id(self) -> str:
        oid = f"m{self.next_id}"
        self.next_id += 1
        return oid

    def queue_fill(self, qty: Decimal, quote: Decimal, price: Optional[Decimal] = None) -> None:
        """Force the next market order to report this execution."""
        self.queued_fills.append((Decimal(qty), Decimal(quote), Decimal(price) if price is not None else None))

    def set_klines(self, symbol: str, interval: str, bars: List[Bar]) -> None:
        self.klines[(symbol, interval)] = list(bars)

    def set_price(self, symbol: str, price: Decimal) -> None:
        """Move the market and execute any protective stop it crosses."""
        price = Decimal(price)
        self.prices[symbol] = price
        for order in self.orders.values():
            if order["symbol"] != symbol or order["status"] != "NEW":
                continue
            stop = order["stopPrice"]
            crossed = price <= stop if order["side"] == OrderSide.SELL.value else price >= stop
            if crossed:
                self._execute(symbol, OrderSide(order["side"]), order["quantity"], order["price"])
                order["status"] = "FILLED"

    def open_stops(self, symbol: str) -> List[Dict[str, Any]]:
        return [o for o in self.orders.values() if o["symbol"] == symbol and o["status"] == "NEW"]

    def _execute(self, symbol: str, side: OrderSide, qty: Decimal, price: Decimal) -> Tuple[Decimal, Decimal]:
        base = self.base_asset(symbol)
        quote = qty * price
        sign = 1 if side is OrderSide.BUY else -1
        self.balances[base] = self.balances.get(base, Decimal("0")) + sign * qty
        self.balances[self.quote_asset] = self.balances.get(self.quote_asset, Decimal("0")) - sign * quote
        return qty, quote

    def _market(self, symbol: str, side: OrderSide, qty: Optional[Decimal], quote_amount: Optional[Decimal]) -> MarketFill:
        if self.fail_market_orders > 0:
            self.fail_market_orders -= 1
            raise BinanceAPIError("market order rejected", status=400, code=-2010)
        price = self.prices[symbol]
        reported = None
        if self.queued_fills:
            qty, quote, reported = self.queued_fills.pop(0)
            if qty > 0:
                self._execute(symbol, side, qty, quote / qty)
        else:
            if qty is None:
                qty = quantize_down(quote_amount / price, self.step_size)
            qty, quote = self._execute(symbol, side, qty, price)
        fill = MarketFill(order_id=self._gen_id(), filled_qty=qty, filled_quote=quote, price=reported)
        self.market_orders.append({"symbol": symbol, "side": side.value, "qty": qty, "quote": quote})
        return fill

    # --- ExchangeAdapter ---
    def get_free_balance(self) -> Decimal:
        if self.fail_balance_queries:
            raise BinanceAPIError("account unavailable", status=503)
        return self.balances.get(self.quote_asset, Decimal("0"))

    def get_asset_balance(self, asset: str) -> Decimal:
        if self.fail_balance_queries:
            raise BinanceAPIError("account unavailable", status=503)
        return self.balances.get(asset, Decimal("0"))

    def get_price(self, symbol: str) -> Optional[Decimal]:
        return self.prices.get(symbol)

    def get_all_prices(self) -> Dict[str, Decimal]:
        return dict(self.prices)

    def get_24h_volume(self, symbol: str) -> Decimal:
        return self.volumes.get(symbol, self.default_volume)

    def get_klines(self, symbol: str, interval: str, limit: int) -> List[Bar]:
        return self.klines.get((symbol, interval), [])[-limit:]

    def get_taker_fee(self, symbol: str) -> Decimal:
        return self.taker_fee

    def round_quantity(self, symbol: str, quantity: Decimal) -> Decimal:
        return quantize_down(quantity, self.step_size)

    def round_price(self, symbol: str, price: Decimal) -> Decimal:
        return quantize_down(price, self.tick_size)

    def place_market_buy(self, symbol, quote_amount=None, quantity=None) -> MarketFill:
        return self._market(symbol, OrderSide.BUY, quantity, quote_amount)

    def place_market_sell(self, symbol: str, quantity: Decimal) -> MarketFill:
        return self._market(symbol, OrderSide.SELL, quantity, None)

    def place_protective_stop(self, symbol, quantity, trigger_price, limit_price, side) -> str:
        if self.fail_stop_placements > 0:
            self.fail_stop_placements -= 1
            raise BinanceAPIError("stop order rejected", status=400, code=-2010)
        oid = self._gen_id()
        self.orders[oid] = {
            "orderId": oid,
            "symbol": symbol,
            "type": "STOP_LOSS_LIMIT",
            "side": OrderSide(side).value,
            "quantity": Decimal(quantity),
            "stopPrice": Decimal(trigger_price),
            "price": Decimal(limit_price),
            "status": "NEW",
        }
        return oid

    def cancel_all_open_orders(self, symbol: str) -> None:
        self.cancel_calls.append(symbol)
        for order in self.open_stops(symbol):
            order["status"] = "CANCELED"

    def get_order(self, symbol: str, order_id: str) -> Optional[Dict[str, Any]]:
        return self.orders.get(order_id)

    def get_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        return self.open_stops(symbol)
