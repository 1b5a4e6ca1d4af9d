# lobclient/engine/orderbook.py
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from ..models import BookView, PriceLevel, PricePoint, now_ms
from .history import BoundedLog

PRICE_DECIMALS = 3
DEFAULT_DEPTH = 50
DEFAULT_PRICE_HISTORY_LIMIT = 2000


def price_key(price: Any) -> Optional[str]:
    """
    Chiave canonica a 3 decimali: 100.5, "100.5" e "100.500" finiscono
    sullo stesso livello. None se il prezzo non e' interpretabile.
    """
    if isinstance(price, bool) or price is None:
        return None
    try:
        value = float(price)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return f"{value:.{PRICE_DECIMALS}f}"


def parse_quantity(raw: Any) -> Optional[int]:
    """
    Quantita' intera come parseInt: "12.7" -> 12, "abc" -> None.
    """
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, int):
        return raw
    try:
        return int(raw)
    except (TypeError, ValueError, OverflowError):
        pass
    try:
        return int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return None


def _level(key: str, quantity: int) -> PriceLevel:
    return PriceLevel(price_key=key, price=float(key), quantity=quantity)


@dataclass(frozen=True)
class BookState:
    # dict: price_key -> PriceLevel; mai livelli con quantity <= 0
    bids: Mapping[str, PriceLevel] = field(default_factory=dict)
    asks: Mapping[str, PriceLevel] = field(default_factory=dict)


# --- trasformazioni pure: (stato, messaggio) -> stato ---

def apply_snapshot(state: BookState, snapshot: Any) -> BookState:
    """
    Sostituisce entrambi i lati. Snapshot malformato -> stato invariato.
    """
    if not isinstance(snapshot, Mapping):
        return state
    raw_bids = snapshot.get("bids")
    raw_asks = snapshot.get("asks")
    if not isinstance(raw_bids, list) or not isinstance(raw_asks, list):
        return state
    return BookState(bids=_build_side(raw_bids), asks=_build_side(raw_asks))


def _build_side(levels: list) -> Dict[str, PriceLevel]:
    side: Dict[str, PriceLevel] = {}
    for level in levels:
        if not isinstance(level, Mapping):
            continue
        key = price_key(level.get("price"))
        quantity = parse_quantity(level.get("quantity"))
        if key is None or quantity is None or quantity <= 0:
            continue
        side[key] = _level(key, quantity)
    return side


def apply_delta(state: BookState, delta: Any) -> BookState:
    """
    changes: [[side, price_key, quantity_str], ...]. Lavora su copie dei
    due lati e restituisce un nuovo stato solo a messaggio completo.
    """
    if not isinstance(delta, Mapping):
        return state
    changes = delta.get("changes")
    if not isinstance(changes, list):
        return state

    next_bids = dict(state.bids)
    next_asks = dict(state.asks)
    for change in changes:
        if not isinstance(change, (list, tuple)) or len(change) < 3:
            continue
        side_tag, raw_key, raw_qty = change[0], change[1], change[2]
        if side_tag == "BUY":
            target = next_bids
        elif side_tag == "SELL":
            target = next_asks
        else:
            continue
        key = price_key(raw_key)
        if key is None:
            continue
        quantity = parse_quantity(raw_qty)
        if quantity is None or quantity <= 0:
            # size 0 = cancella livello (no-op se assente)
            target.pop(key, None)
        else:
            target[key] = _level(key, quantity)

    return BookState(bids=next_bids, asks=next_asks)


def project(state: BookState, depth: int = DEFAULT_DEPTH) -> BookView:
    # sort stabile: a parita' di prezzo resta l'ordine d'inserimento
    bids = sorted(state.bids.values(), key=lambda lvl: lvl.price, reverse=True)[:depth]
    asks = sorted(state.asks.values(), key=lambda lvl: lvl.price)[:depth]
    return BookView(bids=tuple(bids), asks=tuple(asks))


class BookReconciler:
    """
    Ricostruisce il book locale da SNAPSHOT + LOB_UPDATE.

    Unico proprietario dei due lati: dopo ogni messaggio valido ricalcola
    la BookView (top-N) e aggiunge esattamente un PricePoint.
    Messaggi malformati vengono ignorati, lo stato precedente resta.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        depth: int = DEFAULT_DEPTH,
        price_history_limit: int = DEFAULT_PRICE_HISTORY_LIMIT,
    ):
        self.logger = logger or logging.getLogger("BookReconciler")
        self.depth = depth
        self._state = BookState()
        self._view = BookView()
        self._price_history: BoundedLog[PricePoint] = BoundedLog(price_history_limit)

    @property
    def state(self) -> BookState:
        return self._state

    @property
    def view(self) -> BookView:
        return self._view

    def price_history(self) -> Tuple[PricePoint, ...]:
        return self._price_history.snapshot()

    def apply_snapshot(self, snapshot: Any) -> bool:
        nxt = apply_snapshot(self._state, snapshot)
        if nxt is self._state:
            self.logger.debug("Ignoring malformed snapshot")
            return False
        self._commit(nxt)
        self.logger.debug(
            "Order book snapshot",
            extra={
                "best_bid": self._view.best_bid,
                "best_ask": self._view.best_ask,
                "bid_depth": len(self._state.bids),
                "ask_depth": len(self._state.asks),
            },
        )
        return True

    def apply_delta(self, delta: Any) -> bool:
        nxt = apply_delta(self._state, delta)
        if nxt is self._state:
            self.logger.debug("Ignoring malformed delta")
            return False
        self._commit(nxt)
        return True

    def clear(self) -> None:
        self._state = BookState()
        self._view = BookView()
        self._price_history.clear()

    def _commit(self, state: BookState) -> None:
        self._state = state
        self._view = project(state, self.depth)
        self._price_history.append(
            PricePoint(time=now_ms(), best_bid=self._view.best_bid, best_ask=self._view.best_ask)
        )
