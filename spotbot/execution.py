"""
Position lifecycle manager.

Opens, protects, trails, closes and reconciles positions against the venue.
Every mutation of an asset's position runs under that asset's lock, and the
asset's lifecycle phase is tracked in ``PositionStateMachine``.

The core rule: a trade never stays OPEN without an exchange-side protective
stop. If the stop cannot be placed after a few attempts the entry is flattened
with an offsetting market order; if even that fails the trade is marked ERROR
and a maximum-severity alert asks for manual intervention.
"""

import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from .config import RiskConfig, StrategyConfig
from .cooldown import CooldownTable
from .exchange import BinanceAPIError, ExchangeAdapter
from .indicators import rsi
from .logging_setup import logger
from .models import BalanceSnapshot, BotSettings, Direction, MarketFill, OrderSide, TradeStatus
from .notifications import Notifier
from .order_state import PositionPhase, PositionStateMachine, SymbolLocks
from .pnl import net_result_percent, realized_profit
from .position import Trade, initial_stop_price, stop_limit_price

FALLBACK_TAKER_FEE = Decimal("0.001")
BUSY_PHASES = (PositionPhase.OPENING, PositionPhase.OPEN, PositionPhase.CLOSING, PositionPhase.ERROR)


class PositionManager:
    def __init__(
        self,
        exchange: ExchangeAdapter,
        persistence,
        notifier: Notifier,
        *,
        risk: Optional[RiskConfig] = None,
        strategy: Optional[StrategyConfig] = None,
        cooldowns: Optional[CooldownTable] = None,
        phases: Optional[PositionStateMachine] = None,
        locks: Optional[SymbolLocks] = None,
    ):
        self.exchange = exchange
        self.persistence = persistence
        self.notifier = notifier
        self.risk = risk or RiskConfig()
        self.strategy = strategy or StrategyConfig()
        self.cooldowns = cooldowns or CooldownTable()
        self.phases = phases or PositionStateMachine()
        self.locks = locks or SymbolLocks()

    # --- helpers ---
    def _taker_fee(self, symbol: str) -> Decimal:
        try:
            return self.exchange.get_taker_fee(symbol)
        except BinanceAPIError as e:
            logger.warning(f"Taker fee unavailable for {symbol}, using {FALLBACK_TAKER_FEE}: {e}")
            return FALLBACK_TAKER_FEE

    def net_percent(self, trade: Trade, price: Decimal) -> Decimal:
        return net_result_percent(trade.entry_price, price, trade.direction, self._taker_fee(trade.asset))

    def _offset(self, trade: Trade, quantity: Decimal) -> MarketFill:
        """Market order in the exit direction of ``trade``."""
        if trade.direction is Direction.LONG:
            return self.exchange.place_market_sell(trade.asset, quantity)
        return self.exchange.place_market_buy(trade.asset, quantity=quantity)

    def _position_quantity(self, trade: Trade) -> Decimal:
        """Quantity the account can sell or buy back for ``trade``.

        A LONG is capped by base holdings: a market BUY that pays its fee in the
        base asset leaves less than the filled quantity on the account. Used for
        the protective stop, the rollback and the exit order.
        """
        quantity = trade.quantity
        if trade.direction is Direction.LONG:
            held = self.exchange.get_asset_balance(self.exchange.base_asset(trade.asset))
            if Decimal("0") < held < quantity:
                quantity = held
        return self.exchange.round_quantity(trade.asset, quantity)

    def _place_stop(self, trade: Trade, stop_price: Decimal) -> str:
        limit = stop_limit_price(stop_price, trade.direction, self.risk.stop_limit_buffer_pct)
        return self.exchange.place_protective_stop(
            trade.asset,
            self._position_quantity(trade),
            stop_price,
            limit,
            trade.direction.exit_side,
        )

    def _round_stop(self, symbol: str, stop_price: Decimal) -> Decimal:
        """Stop price on the symbol's tick grid, as the venue will hold it."""
        try:
            return self.exchange.round_price(symbol, stop_price)
        except BinanceAPIError as e:
            logger.warning(f"Tick size unavailable for {symbol}, keeping stop {stop_price}: {e}")
            return stop_price

    def _protect(self, trade: Trade) -> Optional[str]:
        """Place the initial stop with bounded retries and doubling backoff."""
        attempts = self.risk.protect_attempts
        for attempt in range(attempts):
            try:
                return self._place_stop(trade, trade.stop_loss_price)
            except BinanceAPIError as e:
                logger.warning(f"Stop placement for {trade.asset} failed ({attempt + 1}/{attempts}): {e}")
                if attempt + 1 < attempts:
                    time.sleep(self.risk.protect_backoff_seconds * (2 ** attempt))
        return None

    def _snapshot_balance(self) -> None:
        try:
            balance = self.exchange.get_free_balance()
        except BinanceAPIError as e:
            logger.warning(f"Balance snapshot skipped: {e}")
            return
        self.persistence.save_snapshot(BalanceSnapshot.now(balance))

    def _finalize(self, trade: Trade, exit_price: Decimal) -> Tuple[Decimal, Decimal]:
        """Mark ``trade`` CLOSED at ``exit_price`` using the current fee schedule."""
        net = self.net_percent(trade, exit_price)
        profit = realized_profit(trade.notional_usdt, net)
        trade.exit_price = exit_price
        trade.exit_timestamp = datetime.now(timezone.utc)
        trade.realized_profit_usdt = profit
        trade.status = TradeStatus.CLOSED
        self.persistence.save_trade(trade)
        self._snapshot_balance()
        self.cooldowns.set(trade.asset, self.risk.cooldown_minutes * 60)
        return net, profit

    def _mark_error(self, trade: Trade, message: str) -> None:
        trade.status = TradeStatus.ERROR
        self.persistence.save_trade(trade)
        if self.phases.phase(trade.asset) is not PositionPhase.ERROR:
            self.phases.restore(trade.asset, PositionPhase.ERROR)
        self.notifier.alert(message)

    def _begin_close(self, symbol: str) -> None:
        # The persisted OPEN status is authoritative for a restarted process.
        if self.phases.phase(symbol) is not PositionPhase.OPEN:
            self.phases.restore(symbol, PositionPhase.OPEN)
        self.phases.transition(symbol, PositionPhase.CLOSING)

    def _reload(self, trade: Trade) -> Optional[Trade]:
        current = self.persistence.get_trade(trade.id) if trade.id is not None else None
        if current is None or not current.is_open:
            return None
        return current

    def open_trades(self) -> List[Trade]:
        return self.persistence.find_trades(lambda t: t.status is TradeStatus.OPEN)

    # --- open ---
    def open_position(self, symbol: str, price: Decimal, direction: Direction, settings: BotSettings) -> Optional[Trade]:
        """Open, persist and protect a position.

        Returns:
            The Trade (OPEN, CLOSED after rollback, or ERROR), or None when the
            entry was skipped or aborted before any fill
        """
        with self.locks.lock_for(symbol):
            if not settings.is_online:
                return None
            if self.phases.phase(symbol) in BUSY_PHASES:
                logger.debug(f"{symbol} busy in phase {self.phases.phase(symbol).value}, entry skipped")
                return None

            try:
                free = self.exchange.get_free_balance()
            except BinanceAPIError as e:
                logger.warning(f"Entry {symbol} skipped, balance unavailable: {e}")
                return None
            notional = min(free * settings.risk_percent / Decimal("100"), free)
            if notional < self.risk.min_notional:
                logger.info(f"Entry {symbol} skipped: size {notional:.2f} below minimum {self.risk.min_notional}")
                return None

            quantity = None
            if direction is Direction.SHORT:
                try:
                    quantity = self.exchange.round_quantity(symbol, notional / price)
                    held = self.exchange.get_asset_balance(self.exchange.base_asset(symbol))
                except BinanceAPIError as e:
                    logger.warning(f"SHORT {symbol} skipped: {e}")
                    return None
                if quantity <= 0 or held < quantity:
                    logger.info(f"SHORT {symbol} skipped: holds {held}, needs {quantity}")
                    return None

            self.phases.transition(symbol, PositionPhase.OPENING)
            try:
                self.exchange.cancel_all_open_orders(symbol)
                if direction.entry_side is OrderSide.BUY:
                    fill = self.exchange.place_market_buy(symbol, quote_amount=notional)
                else:
                    fill = self.exchange.place_market_sell(symbol, quantity)
            except BinanceAPIError as e:
                logger.error(f"Entry {direction.value} {symbol} failed: {e}")
                self.phases.transition(symbol, PositionPhase.NONE)
                return None

            if fill.filled_qty <= 0:
                logger.warning(f"Entry {direction.value} {symbol} filled nothing, aborted")
                self.phases.transition(symbol, PositionPhase.NONE)
                return None

            entry = fill.avg_price
            trade = Trade(
                asset=symbol,
                direction=direction,
                entry_price=entry,
                quantity=fill.filled_qty,
                notional_usdt=fill.filled_quote,
                best_price=entry,
                stop_loss_price=self._round_stop(
                    symbol, initial_stop_price(entry, direction, self.risk.initial_stop_pct)
                ),
            )
            self.persistence.save_trade(trade)
            logger.info(f"Filled {direction.value} {symbol}: qty={trade.quantity} entry={entry} volume={trade.notional_usdt}")

            order_id = self._protect(trade)
            if order_id is None:
                return self._rollback(trade)

            trade.stop_order_id = order_id
            self.persistence.save_trade(trade)
            self.phases.transition(symbol, PositionPhase.OPEN)
            self.notifier.send(
                f"Opened {direction.value} {symbol}\n"
                f"Volume: {trade.notional_usdt:.2f} USDT\n"
                f"Quantity: {trade.quantity}\n"
                f"Entry: {entry}\n"
                f"Stop: {trade.stop_loss_price:.8f}"
            )
            return trade

    def _rollback(self, trade: Trade) -> Trade:
        logger.error(f"No protective stop for {trade.asset}, flattening position")
        try:
            fill = self._offset(trade, self._position_quantity(trade))
        except BinanceAPIError as e:
            self._mark_error(
                trade,
                f"MANUAL INTERVENTION REQUIRED: {trade.direction.value} {trade.asset} "
                f"qty={trade.quantity} is open without a stop and rollback failed: {e}",
            )
            return trade
        if fill.filled_qty <= 0:
            self._mark_error(
                trade,
                f"MANUAL INTERVENTION REQUIRED: rollback of {trade.direction.value} {trade.asset} "
                f"filled nothing, position open without a stop",
            )
            return trade

        net, profit = self._finalize(trade, fill.avg_price)
        self.phases.transition(trade.asset, PositionPhase.CLOSED)
        self.notifier.alert(
            f"ROLLBACK {trade.direction.value} {trade.asset}: protective stop could not be placed, "
            f"position flattened at {fill.avg_price}. Result: {profit:+.2f} USDT ({net:.2f}%)"
        )
        return trade

    # --- exits ---
    def _exit_reason(self, trade: Trade, net: Decimal) -> Optional[str]:
        try:
            bars = self.exchange.get_klines(trade.asset, self.strategy.exit_interval, self.strategy.exit_candle_limit)
        except BinanceAPIError as e:
            logger.warning(f"Exit candles unavailable for {trade.asset}: {e}")
            bars = []
        momentum = rsi(bars, self.strategy.rsi_period)
        if net >= self.risk.rsi_exit_min_profit_pct:
            if trade.direction is Direction.LONG and momentum > self.risk.rsi_exit_long:
                return f"RSI overbought exit ({momentum:.1f})"
            if trade.direction is Direction.SHORT and momentum < self.risk.rsi_exit_short:
                return f"RSI oversold exit ({momentum:.1f})"
        if net >= self.risk.take_profit_pct:
            return f"Take profit {net:.2f}%"
        return None

    def _trail(self, trade: Trade, net: Decimal) -> None:
        risk = self.risk
        candidate = trade.propose_stop(
            net,
            risk.breakeven_trigger_pct,
            risk.breakeven_offset_pct,
            risk.trail_trigger_pct,
            risk.trail_offset_pct,
            risk.min_stop_delta_pct,
        )
        if candidate is None:
            return
        candidate = self._round_stop(trade.asset, candidate)
        if not trade.is_better(candidate, trade.stop_loss_price):
            return

        old_stop = trade.stop_loss_price
        try:
            self.exchange.cancel_all_open_orders(trade.asset)
        except BinanceAPIError as e:
            logger.warning(f"Stop update for {trade.asset} skipped, cancel failed: {e}")
            return
        try:
            order_id = self._place_stop(trade, candidate)
        except BinanceAPIError as e:
            logger.error(f"Stop replacement for {trade.asset} failed, restoring {old_stop}: {e}")
            self._restore_stop(trade)
            return

        trade.stop_loss_price = candidate
        trade.stop_order_id = order_id
        self.persistence.save_trade(trade)
        logger.info(f"Stop {trade.asset} moved {old_stop:.8f} -> {candidate:.8f} (net {net:.2f}%)")

    def _restore_stop(self, trade: Trade) -> None:
        try:
            trade.stop_order_id = self._place_stop(trade, trade.stop_loss_price)
        except BinanceAPIError as e:
            trade.stop_order_id = None
            self.persistence.save_trade(trade)
            self.notifier.alert(f"{trade.asset} has no protective stop on the venue: {e}")
            return
        self.persistence.save_trade(trade)

    def evaluate_exit(self, trade: Trade, price: Decimal) -> bool:
        """Run exit rules for one OPEN trade at ``price``. Returns True if it closed.

        Rules in priority order: momentum exhaustion, hard take-profit, then
        trailing-stop management. Independently of the venue stop, a price at
        or beyond the local stop closes the position.
        """
        with self.locks.lock_for(trade.asset):
            trade = self._reload(trade)
            if trade is None:
                return False

            net = self.net_percent(trade, price)
            reason = self._exit_reason(trade, net)
            if reason is not None:
                return self._close_locked(trade, price, reason)

            if trade.update_best_price(price):
                self.persistence.save_trade(trade)
            self._trail(trade, net)

            if trade.stop_crossed(price):
                return self._close_locked(trade, price, f"Stop crossed at {price}")
            return False

    # --- close ---
    def _venue_already_flat(self, trade: Trade) -> bool:
        """True when the venue closed the position on its own (stop triggered)."""
        if trade.direction is Direction.LONG:
            held = self.exchange.get_asset_balance(self.exchange.base_asset(trade.asset))
            return held < trade.quantity * self.risk.dust_ratio
        if not trade.stop_order_id:
            return False
        order = self.exchange.get_order(trade.asset, trade.stop_order_id)
        return bool(order) and order.get("status") == "FILLED"

    def _abort_close(self, trade: Trade, error: Exception) -> None:
        logger.error(f"Close {trade.direction.value} {trade.asset} failed: {error}")
        try:
            protected = bool(self.exchange.get_open_orders(trade.asset))
        except BinanceAPIError:
            protected = False
        if not protected:
            self._restore_stop(trade)
        self.phases.transition(trade.asset, PositionPhase.OPEN)

    def close_position(self, trade: Trade, price: Decimal, reason: str) -> bool:
        """Close an OPEN trade with an offsetting market order.

        A trade that is no longer OPEN is left alone, so racing closers cannot
        send a second exit order. Returns True if the trade was closed.
        """
        with self.locks.lock_for(trade.asset):
            trade = self._reload(trade)
            if trade is None:
                return False
            return self._close_locked(trade, price, reason)

    def _close_locked(self, trade: Trade, price: Decimal, reason: str) -> bool:
        self._begin_close(trade.asset)
        try:
            self.exchange.cancel_all_open_orders(trade.asset)
            flat = self._venue_already_flat(trade)
        except BinanceAPIError as e:
            self._abort_close(trade, e)
            return False

        if flat:
            self._close_in_db_locked(trade, price, f"{reason}; already closed by venue")
            return True

        try:
            fill = self._offset(trade, self._position_quantity(trade))
        except BinanceAPIError as e:
            self._abort_close(trade, e)
            return False
        if fill.filled_qty <= 0:
            self._mark_error(trade, f"Exit order for {trade.asset} filled nothing, position state unknown")
            return False

        net, profit = self._finalize(trade, fill.avg_price)
        self.phases.transition(trade.asset, PositionPhase.CLOSED)
        logger.info(f"Closed {trade.direction.value} {trade.asset} at {fill.avg_price}: {profit:+.2f} USDT ({net:.2f}%)")
        self.notifier.send(
            f"{reason}\n"
            f"Closed {trade.direction.value} {trade.asset}\n"
            f"Result: {profit:+.2f} USDT ({net:.2f}%)"
        )
        return True

    def _close_in_db_locked(self, trade: Trade, exit_price: Decimal, reason: str) -> None:
        if self.phases.phase(trade.asset) is not PositionPhase.CLOSING:
            self._begin_close(trade.asset)
        net, profit = self._finalize(trade, exit_price)
        self.phases.transition(trade.asset, PositionPhase.CLOSED)
        logger.info(f"Sync-closed {trade.direction.value} {trade.asset} at {exit_price}: {reason}")
        self.notifier.send(
            f"Sync: {trade.asset} {trade.direction.value} closed by venue ({reason})\n"
            f"Result: {profit:+.2f} USDT ({net:.2f}%)"
        )

    def close_position_in_db(self, trade: Trade, exit_price: Decimal, reason: str) -> bool:
        """Record a venue-initiated close without sending any order."""
        with self.locks.lock_for(trade.asset):
            trade = self._reload(trade)
            if trade is None:
                return False
            try:
                self.exchange.cancel_all_open_orders(trade.asset)
            except BinanceAPIError as e:
                logger.warning(f"Cancel of leftover orders for {trade.asset} failed: {e}")
            self._close_in_db_locked(trade, exit_price, reason)
            return True

    def close_symbol(self, symbol: str, reason: str = "Manual close") -> bool:
        for trade in self.open_trades():
            if trade.asset == symbol:
                price = self.exchange.get_price(symbol)
                if price is None:
                    logger.error(f"Manual close of {symbol} failed: no price")
                    return False
                return self.close_position(trade, price, reason)
        return False

    def close_all_positions(self, reason: str = "Manual close all") -> int:
        closed = 0
        for trade in self.open_trades():
            try:
                if self.close_symbol(trade.asset, reason):
                    closed += 1
            except BinanceAPIError as e:
                logger.error(f"Close of {trade.asset} failed: {e}")
        return closed

    def resolve_error(self, symbol: str, exit_price: Optional[Decimal] = None) -> int:
        """Close ERROR trades of ``symbol`` once the operator has settled them on the venue.

        No order is sent. The asset becomes tradable again. Returns the number
        of trades resolved.
        """
        with self.locks.lock_for(symbol):
            stuck = self.persistence.find_trades(lambda t: t.asset == symbol and t.status is TradeStatus.ERROR)
            for trade in stuck:
                price = exit_price or self.exchange.get_price(symbol) or trade.entry_price
                net, profit = self._finalize(trade, price)
                logger.warning(f"Resolved ERROR trade {trade.id} {trade.asset} at {price}: {profit:+.2f} USDT")
                self.notifier.send(f"Resolved {trade.direction.value} {trade.asset} manually\nResult: {profit:+.2f} USDT ({net:.2f}%)")
            if self.phases.phase(symbol) is PositionPhase.ERROR:
                self.phases.transition(symbol, PositionPhase.NONE)
            return len(stuck)

    # --- reconciliation ---
    def reconcile(self) -> int:
        """Compare every OPEN trade with the venue. Returns how many were closed or flagged."""
        changed = 0
        for trade in self.open_trades():
            try:
                if self.reconcile_trade(trade):
                    changed += 1
            except BinanceAPIError as e:
                logger.warning(f"Reconcile {trade.asset} skipped: {e}")
        return changed

    def reconcile_trade(self, trade: Trade) -> bool:
        with self.locks.lock_for(trade.asset):
            trade = self._reload(trade)
            if trade is None:
                return False

            if trade.direction is Direction.LONG:
                held = self.exchange.get_asset_balance(self.exchange.base_asset(trade.asset))
                if held < trade.quantity * self.risk.dust_ratio:
                    self._sync_close(trade, "holdings below dust threshold")
                    return True
                if held < trade.quantity * self.risk.unexplained_ratio:
                    self._mark_error(
                        trade,
                        f"Reconcile {trade.asset}: venue holds {held} of recorded {trade.quantity}, "
                        f"trade marked ERROR",
                    )
                    return True
            else:
                order = self.exchange.get_order(trade.asset, trade.stop_order_id) if trade.stop_order_id else None
                if order and order.get("status") == "FILLED":
                    self._sync_close(trade, "protective stop filled")
                    return True

            if not self.exchange.get_open_orders(trade.asset):
                logger.warning(f"Reconcile {trade.asset}: no protective order on venue, re-placing")
                self._restore_stop(trade)
            return False

    def _sync_close(self, trade: Trade, reason: str) -> None:
        price = self.exchange.get_price(trade.asset) or trade.stop_loss_price
        try:
            self.exchange.cancel_all_open_orders(trade.asset)
        except BinanceAPIError as e:
            logger.warning(f"Cancel of leftover orders for {trade.asset} failed: {e}")
        self._close_in_db_locked(trade, price, reason)

    def restore_phases(self) -> None:
        """Rebuild lifecycle phases from persisted OPEN and ERROR trades."""
        for trade in self.persistence.find_all_trades():
            if trade.status is TradeStatus.OPEN:
                self.phases.restore(trade.asset, PositionPhase.OPEN)
            elif trade.status is TradeStatus.ERROR:
                self.phases.restore(trade.asset, PositionPhase.ERROR)
