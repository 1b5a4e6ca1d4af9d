# lobclient/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple
import time


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP_MARKET = "STOP_MARKET"
    STOP_LIMIT = "STOP_LIMIT"


class TimeInForce(str, Enum):
    GTC = "GTC"
    DAY = "DAY"
    IOC = "IOC"
    FOK = "FOK"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ConnectionStatus(str, Enum):
    IDLE = "idle"                  # private feed without credentials
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    DISCONNECTED = "disconnected"
    ERROR = "error"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PriceLevel:
    price_key: str       # prezzo formattato a 3 decimali, chiave della mappa
    price: float
    quantity: int


@dataclass(frozen=True)
class BookView:
    bids: Tuple[PriceLevel, ...] = ()
    asks: Tuple[PriceLevel, ...] = ()

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0].price if self.asks else None


@dataclass(frozen=True)
class PricePoint:
    time: int
    best_bid: Optional[float]
    best_ask: Optional[float]


@dataclass(frozen=True)
class Trade:
    id: str
    timestamp: int
    price: Optional[float]
    quantity: Optional[int]
    bid_order_id: Optional[Any] = None
    ask_order_id: Optional[Any] = None
    bid_user_id: Optional[Any] = None
    ask_user_id: Optional[Any] = None
    viewer_role: Optional[str] = None    # "bid" / "ask" / None, calcolato in lettura


@dataclass
class OrderRequest:
    """
    Ordine come lo compila l'utente, prima che il ledger gli assegni un id.

    price e' None per MARKET, trigger_price solo per gli stop.
    """
    ticker: str
    side: Side
    order_type: OrderType
    quantity: int
    price: Optional[float] = None
    time_in_force: TimeInForce = TimeInForce.GTC
    post_only: bool = False
    display_quantity: Optional[int] = None
    trigger_price: Optional[float] = None

    def to_payload(self, order_id: str) -> dict:
        allow_price = self.order_type != OrderType.MARKET
        requires_trigger = self.order_type in (OrderType.STOP_MARKET, OrderType.STOP_LIMIT)
        display = self.display_quantity
        if display is None or display <= 0:
            display = self.quantity
        return {
            "orderId": order_id,
            "ticker": self.ticker.strip().upper(),
            "orderType": self.order_type.value,
            "timeInForce": self.time_in_force.value,
            "side": self.side.value,
            "quantity": self.quantity,
            "postOnly": self.order_type == OrderType.LIMIT and self.post_only,
            "displayQuantity": display,
            "price": self.price if allow_price else None,
            "triggerPrice": self.trigger_price if requires_trigger else None,
        }


@dataclass
class PendingOrder:
    order_id: str                       # identificativo noto al momento
    client_order_id: str                # stabile per tutta la vita dell'ordine
    server_order_id: Optional[str]
    side: Optional[str]
    order_type: Optional[str]
    price: Optional[float]
    quantity: Optional[int]
    ticker: Optional[str] = None
    filled_quantity: int = 0
    created_ts: float = field(default_factory=time.time)
    acknowledged_ts: Optional[float] = None

    @property
    def acknowledged(self) -> bool:
        return self.server_order_id is not None

    @property
    def remaining_quantity(self) -> Optional[int]:
        if self.quantity is None:
            return None
        return max(0, self.quantity - self.filled_quantity)


@dataclass(frozen=True)
class OrderEvent:
    timestamp: int
    phase: str
    order_id: Optional[str] = None
    side: Optional[str] = None
    order_type: Optional[str] = None
    price: Optional[Any] = None
    quantity: Optional[Any] = None
    message: Optional[str] = None
    severity: Severity = Severity.INFO


@dataclass(frozen=True)
class Fill:
    fill_id: Any
    order_id: Any
    user_id: Any
    ticker: Optional[str]
    side: Optional[str]
    price: Optional[float]
    quantity: Optional[int]
    timestamp: Any

    @classmethod
    def from_payload(cls, payload: dict, default_user_id: Any = None) -> "Fill":
        user_id = payload.get("userId")
        return cls(
            fill_id=payload.get("fillId"),
            order_id=payload.get("orderId"),
            user_id=user_id if user_id is not None else default_user_id,
            ticker=payload.get("ticker"),
            side=payload.get("side"),
            price=payload.get("price"),
            quantity=payload.get("quantity"),
            timestamp=payload.get("timestamp"),
        )


@dataclass(frozen=True)
class Account:
    user_id: Any
    cash: Any
    positions: Tuple[dict, ...] = ()
