"""Market scanner: finds credit spread and iron condor candidates.

Each scan walks the watchlist, builds put credit spreads, call credit spreads
and iron condors from the 30-45 DTE option chains, scores them with simple
proxies and then narrows the pool in three passes:

  1. Hard filters (probability of profit, risk/reward, max loss vs NAV, risk gate)
  2. Ranked greedy selection with a per-sector cap and a per-cycle cap
  3. A portfolio Greeks check on the final selection

Without a broker session the scanner returns a fixed demo set instead.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

import numpy as np

from tradecore.config import ScannerConfig
from tradecore.errors import BrokerError, ScanAlreadyRunning
from tradecore.models import (
    CALL_CREDIT_SPREAD,
    IRON_CONDOR,
    PUT_CREDIT_SPREAD,
    TradeCandidate,
)
from tradecore.number_utils import clamp, optional_float, safe_float

logger = logging.getLogger(__name__)

SECTOR_MAP = {
    "SPY": "Index", "QQQ": "Index", "IWM": "Index", "DIA": "Index",
    "AAPL": "Technology", "MSFT": "Technology", "GOOGL": "Technology",
    "META": "Technology", "NVDA": "Technology",
    "AMZN": "Consumer", "TSLA": "Consumer",
    "JPM": "Financial", "BAC": "Financial", "XLF": "Financial",
    "XLE": "Energy",
    "GLD": "Commodity", "SLV": "Commodity",
    "VXX": "Volatility",
    "TLT": "Bonds",
}

# strategy -> (delta, vega) contribution per trade
STRATEGY_GREEKS = {
    PUT_CREDIT_SPREAD: (0.15, -0.02),
    CALL_CREDIT_SPREAD: (-0.15, -0.02),
    IRON_CONDOR: (0.0, -0.04),
}

DELTA_LIMIT_PER_100K = 0.30
VEGA_LIMIT_PER_100K = -0.05

# (days out, candidate fields) for scans without a broker session.
DEMO_TRADES = [
    (35, {
        "symbol": "SPY", "strategy": PUT_CREDIT_SPREAD, "legs": "575/570",
        "credit": 1.25, "max_loss": 375.0, "risk_reward": 0.33, "pop": 0.72,
        "model_score": 0.85, "momentum_z": 0.5, "flow_z": 0.3,
        "thesis": "SPY showing bullish momentum with support at 570, IV rank 45%",
        "current_price": 580.25, "iv_rank": 45, "delta": -0.28, "theta": 0.12, "vega": -0.08,
    }),
    (30, {
        "symbol": "AAPL", "strategy": CALL_CREDIT_SPREAD, "legs": "235/240",
        "credit": 1.10, "max_loss": 390.0, "risk_reward": 0.28, "pop": 0.68,
        "model_score": 0.78, "momentum_z": -0.3, "flow_z": 0.2,
        "thesis": "AAPL at resistance level, overbought RSI, elevated IV rank 52%",
        "current_price": 228.50, "iv_rank": 52, "delta": 0.32, "theta": 0.10, "vega": -0.06,
    }),
    (40, {
        "symbol": "QQQ", "strategy": IRON_CONDOR, "legs": "485/480/520/525",
        "credit": 2.20, "max_loss": 280.0, "risk_reward": 0.79, "pop": 0.75,
        "model_score": 0.92, "momentum_z": 0.1, "flow_z": -0.1,
        "thesis": "QQQ range-bound between support/resistance, high IV rank 58%",
        "current_price": 502.75, "iv_rank": 58, "delta": -0.02, "theta": 0.18, "vega": -0.12,
    }),
    (28, {
        "symbol": "NVDA", "strategy": PUT_CREDIT_SPREAD, "legs": "125/120",
        "credit": 0.95, "max_loss": 405.0, "risk_reward": 0.23, "pop": 0.66,
        "model_score": 0.71, "momentum_z": 0.8, "flow_z": 0.6,
        "thesis": "NVDA strong uptrend with AI sector momentum, IV rank 38%",
        "current_price": 132.40, "iv_rank": 38, "delta": -0.34, "theta": 0.08, "vega": -0.05,
    }),
    (32, {
        "symbol": "TSLA", "strategy": PUT_CREDIT_SPREAD, "legs": "250/245",
        "credit": 1.35, "max_loss": 365.0, "risk_reward": 0.37, "pop": 0.70,
        "model_score": 0.82, "momentum_z": 0.4, "flow_z": 0.5,
        "thesis": "TSLA bouncing off support, bullish flow detected, IV rank 62%",
        "current_price": 258.90, "iv_rank": 62, "delta": -0.30, "theta": 0.14, "vega": -0.09,
    }),
]


def get_sector(symbol: str) -> str:
    return SECTOR_MAP.get(str(symbol).upper(), "Other")


@dataclass
class ScanResult:
    candidates: list[TradeCandidate] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "metadata": self.metadata,
        }


@dataclass
class _Spread:
    short: dict
    long: dict
    short_strike: float
    long_strike: float
    credit: float
    max_loss: float
    pop: float
    flow_z: float


class MarketScanner:
    """Scan the watchlist for premium-selling opportunities."""

    def __init__(
        self,
        broker,
        config: ScannerConfig,
        risk_manager=None,
        account_id: str = "",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.broker = broker
        self.config = config
        self.risk_manager = risk_manager
        self.account_id = account_id or (risk_manager.account_id if risk_manager else "")
        self._clock = clock
        self._active_users: set[str] = set()
        self._active_lock = threading.Lock()

    # ── Entry point ────────────────────────────────────────────────

    def scan(self, user_id: str, cancel_event: Optional[threading.Event] = None) -> ScanResult:
        """Run one scan for ``user_id``. Raises ``ScanAlreadyRunning`` on overlap."""
        with self._active_lock:
            if user_id in self._active_users:
                raise ScanAlreadyRunning(user_id)
            self._active_users.add(user_id)
        try:
            return self._scan(user_id, cancel_event)
        finally:
            with self._active_lock:
                self._active_users.discard(user_id)

    def _scan(self, user_id: str, cancel_event: Optional[threading.Event]) -> ScanResult:
        logger.info("Starting market scan for user %s", user_id)
        started = self._clock()
        started_perf = time.perf_counter()
        metadata = {
            "scan_start": started.isoformat(),
            "scan_mode": None,
            "symbols_requested": [],
            "symbols_scanned": 0,
            "symbols_with_opportunities": 0,
            "total_opportunities_found": 0,
            "opportunities_after_filters": 0,
            "filters_applied": [],
            "scan_criteria": {
                "min_pop": self.config.min_pop,
                "min_risk_reward": self.config.min_risk_reward,
                "max_loss_percentage": self.config.max_loss_pct_of_nav,
                "max_trades_per_cycle": self.config.max_trades_per_cycle,
                "max_per_sector": self.config.max_per_sector,
            },
            "greeks": {},
            "cancelled": False,
        }

        if not self.broker.is_authenticated():
            logger.info("No broker session for user %s, returning demo trades", user_id)
            candidates = self.demo_candidates()
            symbols = [c.symbol for c in candidates]
            metadata.update({
                "scan_mode": "demo",
                "symbols_requested": symbols,
                "symbols_scanned": len(symbols),
                "symbols_with_opportunities": len(candidates),
                "total_opportunities_found": len(candidates),
                "opportunities_after_filters": len(candidates),
                "greeks": self._greeks_report(candidates, self.config.default_nav),
            })
            self._finish(metadata, started_perf)
            return ScanResult(candidates, metadata)

        metadata["scan_mode"] = "live"
        symbols = list(self.config.watchlist)
        metadata["symbols_requested"] = symbols

        candidates: list[TradeCandidate] = []
        for symbol in symbols:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Market scan for user %s cancelled before %s", user_id, symbol)
                metadata["cancelled"] = True
                break
            try:
                opportunities = self.scan_symbol(symbol)
            except Exception as exc:
                logger.error("Error scanning %s: %s", symbol, exc)
                continue
            if opportunities:
                candidates.extend(opportunities)
                metadata["symbols_with_opportunities"] += 1
            metadata["symbols_scanned"] += 1

        metadata["total_opportunities_found"] = len(candidates)

        nav = self.account_nav()
        metadata["filters_applied"] = [
            f"POP >= {self.config.min_pop}",
            f"Risk/Reward >= {self.config.min_risk_reward}",
            f"Max Loss <= {self.config.max_loss_pct_of_nav}% NAV",
        ]
        filtered = self.apply_hard_filters(candidates, nav)
        metadata["opportunities_after_filters"] = len(filtered)

        selected, greeks = self.select_top_trades(filtered, nav)
        metadata["greeks"] = greeks
        self._finish(metadata, started_perf)

        logger.info(
            "Scan complete: %d trades selected from %d candidates across %d symbols",
            len(selected),
            len(candidates),
            len(symbols),
        )
        return ScanResult(selected, metadata)

    def _finish(self, metadata: dict, started_perf: float) -> None:
        metadata["scan_end"] = self._clock().isoformat()
        metadata["scan_duration_ms"] = int(round((time.perf_counter() - started_perf) * 1000))

    # ── Per-symbol analysis ────────────────────────────────────────

    def scan_symbol(self, symbol: str) -> list[TradeCandidate]:
        quote = self.broker.get_quote(symbol)
        if not quote or not self.quote_fresh(quote):
            logger.debug("Skipping %s: quote missing or stale", symbol)
            return []

        chain = self.broker.get_option_chain(symbol)
        if not chain:
            return []

        expirations = self.filter_expirations(chain)
        opportunities = []
        opportunities.extend(self.analyze_put_credit_spreads(symbol, quote, chain, expirations))
        opportunities.extend(self.analyze_iron_condors(symbol, quote, chain, expirations))
        opportunities.extend(self.analyze_call_credit_spreads(symbol, quote, chain, expirations))
        return opportunities

    def quote_fresh(self, quote: dict) -> bool:
        updated_at = _parse_timestamp(quote.get("updated_at"))
        if updated_at is None:
            return False
        window = timedelta(minutes=self.config.quote_freshness_minutes)
        return updated_at > self._clock() - window

    def filter_expirations(self, chain: dict) -> list[tuple[str, int]]:
        """Expirations within the DTE window as ``(expiration, dte)`` pairs."""
        today = self._clock().date()
        selected = []
        for raw in chain.get("expirations") or []:
            try:
                expiration = date.fromisoformat(str(raw)[:10])
            except ValueError:
                logger.debug("Ignoring unparseable expiration %r", raw)
                continue
            dte = (expiration - today).days
            if self.config.min_dte <= dte <= self.config.max_dte:
                selected.append((str(raw), dte))
        return selected

    def analyze_put_credit_spreads(
        self,
        symbol: str,
        quote: dict,
        chain: dict,
        expirations: list[tuple[str, int]],
    ) -> list[TradeCandidate]:
        spot = safe_float(quote.get("last"))
        target = spot * self.config.put_short_strike_factor
        opportunities = []
        for expiration, dte in expirations:
            puts = _sorted_options(chain, "puts", expiration, descending=True)
            for spread in self._spreads(puts, target, "put"):
                opportunities.append(
                    self._candidate(
                        symbol, PUT_CREDIT_SPREAD, quote, spread, expiration, dte,
                        legs=f"{_fmt_strike(spread.short_strike)}/{_fmt_strike(spread.long_strike)}",
                    )
                )
        return opportunities

    def analyze_call_credit_spreads(
        self,
        symbol: str,
        quote: dict,
        chain: dict,
        expirations: list[tuple[str, int]],
    ) -> list[TradeCandidate]:
        spot = safe_float(quote.get("last"))
        target = spot * self.config.call_short_strike_factor
        opportunities = []
        for expiration, dte in expirations:
            calls = _sorted_options(chain, "calls", expiration, descending=False)
            for spread in self._spreads(calls, target, "call"):
                opportunities.append(
                    self._candidate(
                        symbol, CALL_CREDIT_SPREAD, quote, spread, expiration, dte,
                        legs=f"{_fmt_strike(spread.short_strike)}/{_fmt_strike(spread.long_strike)}",
                    )
                )
        return opportunities

    def analyze_iron_condors(
        self,
        symbol: str,
        quote: dict,
        chain: dict,
        expirations: list[tuple[str, int]],
    ) -> list[TradeCandidate]:
        spot = safe_float(quote.get("last"))
        opportunities = []
        for expiration, dte in expirations:
            puts = _sorted_options(chain, "puts", expiration, descending=True)
            calls = _sorted_options(chain, "calls", expiration, descending=False)
            if len(puts) < 4 or len(calls) < 4:
                continue

            put_side = self.find_best_spread(puts, spot * self.config.put_short_strike_factor, "put")
            if put_side is None:
                continue
            call_side = self.find_best_spread(calls, spot * self.config.call_short_strike_factor, "call")
            if call_side is None:
                continue

            credit = put_side.credit + call_side.credit
            max_loss = max(put_side.max_loss, call_side.max_loss)
            legs = "/".join(
                _fmt_strike(s) for s in (
                    put_side.short_strike, put_side.long_strike,
                    call_side.short_strike, call_side.long_strike,
                )
            )
            opportunities.append(
                TradeCandidate(
                    symbol=symbol,
                    strategy=IRON_CONDOR,
                    legs=legs,
                    expiration=expiration,
                    credit=credit,
                    max_loss=max_loss,
                    risk_reward=credit * 100 / max_loss,
                    pop=put_side.pop * call_side.pop,
                    model_score=model_score(quote),
                    momentum_z=momentum_z(quote),
                    flow_z=(put_side.flow_z + call_side.flow_z) / 2,
                    thesis=thesis(IRON_CONDOR, quote),
                    current_price=spot,
                    iv_rank=optional_float(quote.get("iv_rank")),
                    delta=_net_delta(put_side, call_side),
                    days_to_expiration=dte,
                )
            )
        return opportunities

    def _spreads(self, options: list[dict], target: float, kind: str) -> list[_Spread]:
        """Adjacent (short, long) pairs beyond ``target`` that collect a credit."""
        spreads = []
        for short_opt, long_opt in zip(options, options[1:]):
            spread = _build_spread(short_opt, long_opt, target, kind)
            if spread is not None:
                spreads.append(spread)
        return spreads

    def find_best_spread(self, options: list[dict], target: float, kind: str) -> Optional[_Spread]:
        best = None
        for spread in self._spreads(options, target, kind):
            if best is None or spread.credit > best.credit:
                best = spread
        return best

    def _candidate(
        self,
        symbol: str,
        strategy: str,
        quote: dict,
        spread: _Spread,
        expiration: str,
        dte: int,
        legs: str,
    ) -> TradeCandidate:
        return TradeCandidate(
            symbol=symbol,
            strategy=strategy,
            legs=legs,
            expiration=expiration,
            credit=spread.credit,
            max_loss=spread.max_loss,
            risk_reward=spread.credit * 100 / spread.max_loss,
            pop=spread.pop,
            model_score=model_score(quote),
            momentum_z=momentum_z(quote),
            flow_z=spread.flow_z,
            thesis=thesis(strategy, quote),
            current_price=safe_float(quote.get("last")),
            iv_rank=optional_float(quote.get("iv_rank")),
            delta=optional_float(spread.short.get("delta")),
            theta=optional_float(spread.short.get("theta")),
            vega=optional_float(spread.short.get("vega")),
            days_to_expiration=dte,
        )

    # ── Filtering and selection ────────────────────────────────────

    def account_nav(self) -> float:
        default = self.config.default_nav
        if not self.account_id:
            return default
        try:
            account = self.broker.get_account(self.account_id) or {}
        except BrokerError as exc:
            logger.warning("Account NAV unavailable, assuming %.2f: %s", default, exc)
            return default
        nav = safe_float(
            account.get("net-liquidating-value", account.get("net_liquidating_value")),
            0.0,
        )
        return nav if nav > 0 else default

    def apply_hard_filters(self, candidates: list[TradeCandidate], nav: float) -> list[TradeCandidate]:
        max_loss_allowed = nav * self.config.max_loss_pct_of_nav / 100
        kept = []
        for trade in candidates:
            if trade.pop < self.config.min_pop:
                continue
            if trade.risk_reward < self.config.min_risk_reward:
                continue
            if trade.max_loss > max_loss_allowed:
                continue
            if self.risk_manager is not None and not self.risk_manager.can_place_trade({
                "symbol": trade.symbol,
                "quantity": 1,
                "order_type": "limit",
                "action": "sell-to-open",
                "price": trade.credit,
                "trade_cost": trade.max_loss,
            }):
                continue
            kept.append(trade)
        return kept

    def select_top_trades(
        self,
        candidates: list[TradeCandidate],
        nav: float,
    ) -> tuple[list[TradeCandidate], dict]:
        if not candidates:
            return [], self._greeks_report([], nav)

        ranked = sorted(candidates, key=lambda t: (-t.model_score, -t.momentum_z, -t.flow_z))
        selected = self._greedy(ranked)
        if self.meets_portfolio_constraints(selected, nav):
            return selected, self._greeks_report(selected, nav)

        if not self.config.rebalance_greeks:
            logger.warning("Selected trades breach the portfolio Greeks limits; keeping selection")
            return selected, self._greeks_report(selected, nav)

        rebalanced = self._greedy(ranked, nav=nav)
        report = self._greeks_report(rebalanced, nav)
        report["rebalanced"] = True
        logger.info("Rebalanced selection from %d to %d trades to fit Greeks limits",
                    len(selected), len(rebalanced))
        return rebalanced, report

    def _greedy(self, ranked: list[TradeCandidate], nav: Optional[float] = None) -> list[TradeCandidate]:
        """Pick in rank order under the sector and cycle caps.

        With ``nav`` set, a trade is only admitted if the selection stays within
        the Greeks limits afterwards.
        """
        selected: list[TradeCandidate] = []
        sector_counts: dict[str, int] = {}
        for trade in ranked:
            sector = get_sector(trade.symbol)
            if sector_counts.get(sector, 0) >= self.config.max_per_sector:
                continue
            if nav is not None and not self.meets_portfolio_constraints(selected + [trade], nav):
                continue
            selected.append(trade)
            sector_counts[sector] = sector_counts.get(sector, 0) + 1
            if len(selected) >= self.config.max_trades_per_cycle:
                break
        return selected

    @staticmethod
    def portfolio_greeks(trades: list[TradeCandidate]) -> tuple[float, float]:
        if not trades:
            return 0.0, 0.0
        contributions = np.array(
            [STRATEGY_GREEKS.get(t.strategy, (0.0, 0.0)) for t in trades],
            dtype=float,
        )
        net_delta, net_vega = contributions.sum(axis=0)
        return float(net_delta), float(net_vega)

    def meets_portfolio_constraints(self, trades: list[TradeCandidate], nav: float) -> bool:
        net_delta, net_vega = self.portfolio_greeks(trades)
        nav_factor = nav / 100_000
        return (
            abs(net_delta) <= DELTA_LIMIT_PER_100K * nav_factor + 1e-12
            and net_vega >= VEGA_LIMIT_PER_100K * nav_factor - 1e-12
        )

    def _greeks_report(self, trades: list[TradeCandidate], nav: float) -> dict:
        net_delta, net_vega = self.portfolio_greeks(trades)
        nav_factor = nav / 100_000
        return {
            "net_delta": round(net_delta, 4),
            "net_vega": round(net_vega, 4),
            "delta_limit": round(DELTA_LIMIT_PER_100K * nav_factor, 4),
            "vega_limit": round(VEGA_LIMIT_PER_100K * nav_factor, 4),
            "within_limits": self.meets_portfolio_constraints(trades, nav),
            "rebalanced": False,
        }

    # ── Demo data ──────────────────────────────────────────────────

    def demo_candidates(self) -> list[TradeCandidate]:
        today = self._clock().date()
        return [
            TradeCandidate(
                expiration=(today + timedelta(days=days)).isoformat(),
                days_to_expiration=days,
                **fields,
            )
            for days, fields in DEMO_TRADES
        ]


# ── Scoring proxies ──────────────────────────────────────────────────


def probability_of_profit(option: dict) -> float:
    """1 - |delta| of the short strike, floored at 50%."""
    return max(1 - abs(safe_float(option.get("delta"))), 0.5)


def model_score(quote: dict) -> float:
    score = 0.0
    if quote.get("iv_rank") is not None:
        score += safe_float(quote["iv_rank"]) / 100 * 0.4
    avg_volume = safe_float(quote.get("avg_volume"))
    if quote.get("volume") is not None and avg_volume > 0:
        score += min(safe_float(quote["volume"]) / avg_volume, 1.0) * 0.3
    if quote.get("price_change_percent") is not None:
        score += (1 - min(abs(safe_float(quote["price_change_percent"])) / 5, 1.0)) * 0.3
    return score


def momentum_z(quote: dict) -> float:
    if quote.get("price_change_percent") is None:
        return 0.0
    return safe_float(quote["price_change_percent"]) / 2.0


def flow_z(short_option: dict, long_option: dict) -> float:
    ratios = [
        safe_float(opt.get("volume")) / max(safe_float(opt.get("open_interest")), 1.0)
        for opt in (short_option, long_option)
    ]
    return clamp(float(np.mean(ratios)) - 0.5, -2.0, 2.0)


def thesis(strategy: str, quote: dict) -> str:
    iv_rank = round(safe_float(quote.get("iv_rank")))
    if strategy == PUT_CREDIT_SPREAD:
        return f"High IV rank {iv_rank}% with support near strike, bullish momentum"
    if strategy == CALL_CREDIT_SPREAD:
        return f"Elevated IV {iv_rank}% with resistance above, overbought conditions"
    if strategy == IRON_CONDOR:
        return f"Range-bound with high IV rank {iv_rank}%, expecting consolidation"
    return "Premium collection opportunity with favorable risk/reward"


# ── Helpers ──────────────────────────────────────────────────────────


def _build_spread(short_opt: dict, long_opt: dict, target: float, kind: str) -> Optional[_Spread]:
    short_strike = safe_float(short_opt.get("strike"))
    long_strike = safe_float(long_opt.get("strike"))
    if kind == "put":
        if short_strike > target or long_strike >= short_strike:
            return None
    else:
        if short_strike < target or long_strike <= short_strike:
            return None

    credit = safe_float(short_opt.get("bid")) - safe_float(long_opt.get("ask"))
    max_loss = abs(short_strike - long_strike) * 100 - credit * 100
    if credit <= 0 or max_loss <= 0:
        return None

    return _Spread(
        short=short_opt,
        long=long_opt,
        short_strike=short_strike,
        long_strike=long_strike,
        credit=credit,
        max_loss=max_loss,
        pop=probability_of_profit(short_opt),
        flow_z=flow_z(short_opt, long_opt),
    )


def _sorted_options(chain: dict, side: str, expiration: str, descending: bool) -> list[dict]:
    options = (chain.get(side) or {}).get(expiration) or []
    options = [opt for opt in options if isinstance(opt, dict)]
    return sorted(options, key=lambda opt: safe_float(opt.get("strike")), reverse=descending)


def _net_delta(put_side: _Spread, call_side: _Spread) -> Optional[float]:
    put_delta = optional_float(put_side.short.get("delta"))
    call_delta = optional_float(call_side.short.get("delta"))
    if put_delta is None or call_delta is None:
        return None
    return put_delta + call_delta


def _fmt_strike(strike: float) -> str:
    return f"{strike:g}"


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
