# lobclient/engine/trade_feed.py
from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Any, List, Mapping, Optional, Tuple

from ..models import Trade, now_ms
from .history import BoundedLog

DEFAULT_TRADE_LIMIT = 500


def extract_trades(payload: Any) -> Optional[list]:
    """
    Le tre forme del feed pubblico che portano trade:
    lista nuda, {type: TRADES, data: [...]}, {trades: [...]}.
    None se il payload non contiene trade.
    """
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, Mapping):
        return None
    if payload.get("type") == "TRADES":
        data = payload.get("data")
        return data if isinstance(data, list) else None
    trades = payload.get("trades")
    if isinstance(trades, list):
        return trades
    return None


def _number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize_trade(raw: Any, timestamp: int, index: int) -> Trade:
    # prezzo/quantita' dal lato buy, fallback sul lato sell
    bid = raw.get("bidTrade") if isinstance(raw, Mapping) else None
    ask = raw.get("askTrade") if isinstance(raw, Mapping) else None
    bid = bid if isinstance(bid, Mapping) else {}
    ask = ask if isinstance(ask, Mapping) else {}

    if _number(bid.get("price")):
        price = bid["price"]
    elif _number(ask.get("price")):
        price = ask["price"]
    else:
        price = None
    quantity = bid.get("quantity")
    if quantity is None:
        quantity = ask.get("quantity")

    ref = bid.get("orderId")
    if ref is None:
        ref = ask.get("orderId")
    if ref is None:
        ref = uuid.uuid4().hex

    return Trade(
        id=f"{timestamp}-{index}-{ref}",
        timestamp=timestamp,
        price=price,
        quantity=quantity,
        bid_order_id=bid.get("orderId"),
        ask_order_id=ask.get("orderId"),
        bid_user_id=bid.get("userId"),
        ask_user_id=ask.get("userId"),
    )


def viewer_role(trade: Trade, viewer_id: Any) -> Optional[str]:
    if viewer_id is None:
        return None
    if trade.bid_user_id == viewer_id:
        return "bid"
    if trade.ask_user_id == viewer_id:
        return "ask"
    return None


class TradeFeed:
    """
    Storico trade normalizzati, a capacita' fissa.

    Il ruolo del viewer non viene salvato: l'utente autenticato puo'
    cambiare durante la vita della connessione, quindi si calcola in
    lettura con decorated().
    """

    def __init__(self, logger: Optional[logging.Logger] = None, limit: int = DEFAULT_TRADE_LIMIT):
        self.logger = logger or logging.getLogger("TradeFeed")
        self._history: BoundedLog[Trade] = BoundedLog(limit)

    def ingest(self, trades: list) -> List[Trade]:
        if not trades:
            return []
        timestamp = now_ms()
        mapped = [normalize_trade(raw, timestamp, i) for i, raw in enumerate(trades)]
        self._history.extend(mapped)
        self.logger.debug(
            "Trades received",
            extra={"raw_count": len(trades), "mapped_count": len(mapped)},
        )
        return mapped

    def clear(self) -> None:
        self._history.clear()

    def raw(self) -> Tuple[Trade, ...]:
        return self._history.snapshot()

    def decorated(self, viewer_id: Any) -> Tuple[Trade, ...]:
        return tuple(
            replace(trade, viewer_role=viewer_role(trade, viewer_id))
            for trade in self._history.snapshot()
        )

    def __len__(self) -> int:
        return len(self._history)
