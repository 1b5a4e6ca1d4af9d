# lobclient/engine/order_ledger.py
from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from ..models import Fill, OrderEvent, OrderRequest, PendingOrder, Severity, now_ms

_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_B36[rem])
    return "".join(reversed(digits))


def _norm(identifier: Any) -> Optional[str]:
    if identifier is None or identifier == "":
        return None
    return str(identifier)


def format_price(price: Any) -> Any:
    if isinstance(price, (int, float)) and not isinstance(price, bool):
        return f"{price:.3f}"
    return price


class PendingOrderLedger:
    """
    Ordini inviati da questo client di cui non si conosce ancora l'esito.

    - submit(): inserimento ottimistico sotto il clientOrderId generato qui
    - rekey(): quando il server assegna il suo id (ACK o risposta HTTP)
    - resolve(): unico punto di lettura, con precedenza documentata
    - remove(): idempotente, per cancel/reject/fallimenti che arrivano
      in qualunque ordine
    """

    PREFIX = "TMP"

    def __init__(self, logger: Optional[logging.Logger] = None, clock: Callable[[], float] = time.time):
        self.logger = logger or logging.getLogger("PendingOrderLedger")
        self._clock = clock
        self._seq = itertools.count(1)
        # key (client o server id) -> PendingOrder
        self._entries: Dict[str, PendingOrder] = {}

    # ------------------------------------------------------------------ #
    # scrittura
    # ------------------------------------------------------------------ #

    def now(self) -> float:
        return self._clock()

    def next_client_order_id(self) -> str:
        base = to_base36(int(self._clock() * 1000))
        return f"{self.PREFIX}-{base}-{to_base36(next(self._seq))}"

    def submit(self, order: OrderRequest, client_order_id: Optional[str] = None) -> str:
        client_order_id = client_order_id or self.next_client_order_id()
        self._entries[client_order_id] = PendingOrder(
            order_id=client_order_id,
            client_order_id=client_order_id,
            server_order_id=None,
            side=order.side.value,
            order_type=order.order_type.value,
            price=order.price,
            quantity=order.quantity,
            ticker=order.ticker,
        )
        self.logger.debug("Pending order inserted", extra={"client_order_id": client_order_id})
        return client_order_id

    def rekey(self, from_key: Any, to_key: Any) -> bool:
        src_key, dst_key = _norm(from_key), _norm(to_key)
        if src_key is None or dst_key is None:
            return False
        source = self._entries.get(src_key)
        if source is None:
            return False
        self._entries[dst_key] = replace(
            source,
            order_id=dst_key,
            server_order_id=dst_key,
            client_order_id=source.client_order_id or src_key,
            acknowledged_ts=source.acknowledged_ts or self._clock(),
        )
        if src_key != dst_key:
            del self._entries[src_key]
        self.logger.debug("Pending order rekeyed", extra={"from": src_key, "to": dst_key})
        return True

    def remove(self, *identifiers: Any) -> int:
        """
        Cancella ogni entry indirizzata da uno degli id: per chiave, ma anche
        per client_order_id o server_order_id, cosi' un CANCELED con l'id
        server toglie pure un'entry rimasta sotto la chiave TMP-.
        Id assenti sono no-op. Ritorna quante entry sono uscite.
        """
        wanted = {key for key in (_norm(i) for i in identifiers) if key is not None}
        if not wanted:
            return 0
        doomed = [
            key
            for key, entry in self._entries.items()
            if key in wanted
            or entry.client_order_id in wanted
            or (entry.server_order_id is not None and entry.server_order_id in wanted)
        ]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def apply_fill(self, identifier: Any, quantity: Any) -> Optional[PendingOrder]:
        entry_key = self._find_key(identifier)
        if entry_key is None or not isinstance(quantity, int) or isinstance(quantity, bool):
            return None
        entry = self._entries[entry_key]
        entry.filled_quantity += max(0, quantity)
        return entry

    def prune_acknowledged(
        self,
        open_order_ids: Iterable[Any],
        acknowledged_before: Optional[float] = None,
    ) -> int:
        """
        Toglie gli ordini confermati che il motore non lista piu' come aperti.

        acknowledged_before: istante in cui e' partita la richiesta open-orders;
        un ACK arrivato dopo non puo' comparire in quella lista.
        """
        still_open = {key for key in (_norm(i) for i in open_order_ids) if key is not None}
        doomed = [
            key
            for key, entry in self._entries.items()
            if entry.acknowledged
            and entry.server_order_id not in still_open
            and (
                acknowledged_before is None
                or (entry.acknowledged_ts is not None and entry.acknowledged_ts < acknowledged_before)
            )
        ]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    # ------------------------------------------------------------------ #
    # lettura
    # ------------------------------------------------------------------ #

    def resolve(self, identifier: Any, open_orders: Sequence[Mapping] = ()) -> Optional[PendingOrder]:
        """
        Precedenza:
          1. entry pendente con client_order_id == identifier
          2. entry pendente con server_order_id == identifier
          3. entry pendente con order_id == identifier
          4. ordine nella lista open-orders con orderId == identifier
        """
        entry_key = self._find_key(identifier)
        if entry_key is not None:
            return self._entries[entry_key]
        wanted = _norm(identifier)
        if wanted is None:
            return None
        for order in open_orders:
            if isinstance(order, Mapping) and _norm(order.get("orderId")) == wanted:
                return PendingOrder(
                    order_id=wanted,
                    client_order_id=_norm(order.get("clientOrderId")) or wanted,
                    server_order_id=wanted,
                    side=order.get("side"),
                    order_type=order.get("orderType"),
                    price=order.get("price"),
                    quantity=order.get("quantity"),
                    ticker=order.get("ticker"),
                )
        return None

    def _find_key(self, identifier: Any) -> Optional[str]:
        wanted = _norm(identifier)
        if wanted is None:
            return None
        for attr in ("client_order_id", "server_order_id", "order_id"):
            for key, entry in self._entries.items():
                if getattr(entry, attr) == wanted:
                    return key
        return None

    def keys(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, key: Any) -> bool:
        return _norm(key) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------- #
# feed privato: macchina a stati per ordine
# ---------------------------------------------------------------------- #

@dataclass
class Reaction:
    """Effetti che il controller deve applicare dopo un evento privato."""
    event: Optional[OrderEvent] = None
    fill: Optional[Fill] = None
    refresh_orders: bool = False
    refresh_account: bool = False


def build_event(
    ledger: PendingOrderLedger,
    phase: str,
    order_id: Any = None,
    message: Optional[str] = None,
    severity: Severity = Severity.INFO,
    open_orders: Sequence[Mapping] = (),
    **details: Any,
) -> OrderEvent:
    # i campi mancanti si prendono dai metadati dell'ordine, se noto
    meta = ledger.resolve(order_id, open_orders) if order_id is not None else None

    def pick(name: str, attr: str) -> Any:
        value = details.get(name)
        if value is None and meta is not None:
            value = getattr(meta, attr)
        return value

    resolved_id = _norm(order_id)
    if resolved_id is None and meta is not None:
        resolved_id = meta.order_id
    return OrderEvent(
        timestamp=now_ms(),
        phase=phase,
        order_id=resolved_id,
        side=pick("side", "side"),
        order_type=pick("order_type", "order_type"),
        price=format_price(pick("price", "price")),
        quantity=pick("quantity", "quantity"),
        message=message,
        severity=severity,
    )


def reconcile_private_event(
    ledger: PendingOrderLedger,
    payload: Any,
    open_orders: Sequence[Mapping] = (),
) -> Reaction:
    if not isinstance(payload, Mapping):
        return Reaction()
    kind = payload.get("type")
    order_id = _norm(payload.get("orderId"))
    client_order_id = _norm(payload.get("clientOrderId"))
    identifier = order_id or client_order_id

    if kind == "ACK":
        if client_order_id and order_id:
            ledger.rekey(client_order_id, order_id)
        event = build_event(
            ledger, "ACK", identifier, "Order acknowledged", Severity.SUCCESS, open_orders
        )
        return Reaction(event=event, refresh_orders=True)

    if kind == "REJECT":
        event = build_event(
            ledger, "REJECT", identifier, payload.get("reason") or "Order rejected",
            Severity.ERROR, open_orders,
        )
        ledger.remove(identifier, client_order_id, order_id)
        return Reaction(event=event)

    if kind == "CANCELED":
        event = build_event(
            ledger, "CANCELED", identifier, "Order canceled", Severity.WARNING, open_orders
        )
        ledger.remove(identifier, client_order_id, order_id)
        return Reaction(event=event, refresh_orders=True)

    if kind == "FILL":
        quantity = payload.get("quantity")
        price = payload.get("price")
        event = build_event(
            ledger, "FILL", identifier, f"Fill {quantity} @ {price}", Severity.SUCCESS,
            open_orders, quantity=quantity, price=price,
        )
        # un fill puo' essere parziale: l'entry resta nel ledger
        ledger.apply_fill(identifier, quantity)
        return Reaction(
            event=event,
            fill=Fill.from_payload(payload),
            refresh_orders=True,
            refresh_account=True,
        )

    return Reaction()
