# lobclient/session.py
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Set, Tuple

from .engine.history import BoundedLog, prepend_unique_with_limit
from .engine.order_ledger import PendingOrderLedger, build_event, format_price, reconcile_private_event
from .engine.orderbook import BookReconciler
from .engine.script import parse_command
from .engine.trade_feed import TradeFeed, extract_trades
from .exceptions import AuthorizationExpired, EngineHTTPError, LobClientError
from .exchange.engine_client import EngineClient, FeedConnection
from .models import (
    Account,
    BookView,
    ConnectionStatus,
    Fill,
    OrderEvent,
    OrderRequest,
    PricePoint,
    Severity,
    Trade,
    now_ms,
)

SESSION_EXPIRED = "Session expired. Please reconnect."


def safe_parse(raw: Any) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def _assigned_id(body: Any) -> Optional[str]:
    if isinstance(body, Mapping) and body.get("orderId"):
        return str(body["orderId"])
    return None


def _fill_sort_key(fill: Fill) -> float:
    ts = fill.timestamp
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        return float(ts)
    if isinstance(ts, str):
        try:
            return datetime.fromisoformat(ts.replace("Z", "+00:00")).timestamp() * 1000
        except ValueError:
            return 0.0
    return 0.0


class TradingSession:
    """
    Controller di sessione: possiede book, trade feed, ledger e i log
    limitati; unico punto in cui arrivano i messaggi dei due feed e le
    risposte HTTP.

    Le risposte HTTP non vengono mai cancellate: ogni chiamata cattura
    l'epoch di sessione e, se al ritorno l'epoch e' cambiato (disconnect
    o nuovo token), la risposta viene solo loggata.
    """

    def __init__(
        self,
        cfg: dict,
        logger: Optional[logging.Logger] = None,
        client: Optional[EngineClient] = None,
        feed_factory: Callable[..., FeedConnection] = FeedConnection,
    ):
        self.cfg = cfg
        self.logger = logger or logging.getLogger("Session")
        self.client = client or EngineClient(cfg, logging.getLogger("EngineClient"))

        self.book = BookReconciler(
            logging.getLogger("BookReconciler"),
            depth=cfg.get("depth", 50),
            price_history_limit=cfg.get("price_history_limit", 2000),
        )
        self.trade_feed = TradeFeed(logging.getLogger("TradeFeed"), limit=cfg.get("trade_limit", 500))
        self.ledger = PendingOrderLedger(logging.getLogger("PendingOrderLedger"))
        self._events: BoundedLog[OrderEvent] = BoundedLog(cfg.get("event_limit", 500))
        self.fill_limit = cfg.get("fill_limit", 200)

        # stato utente: azzerato da disconnect / 401
        self._fills: List[Fill] = []
        self.account: Optional[Account] = None
        self.open_orders: Tuple[dict, ...] = ()
        self.last_error: Optional[str] = None
        self.refreshing_account = False
        self.resetting = False

        self._epoch = 0
        self._tasks: Set[asyncio.Task] = set()
        self._feed_factory = feed_factory
        self._ws_cfg = cfg.get("ws", {})
        self.public_feed = feed_factory(
            "public",
            self.client.public_feed_url(),
            self.handle_public_message,
            logging.getLogger("Feed_public"),
            ws_cfg=self._ws_cfg,
        )
        self.private_feed: Optional[FeedConnection] = None

    # ------------------------------------------------------------------ #
    # stato in sola lettura
    # ------------------------------------------------------------------ #

    @property
    def token(self) -> Optional[str]:
        return self.client.token

    @property
    def positions(self) -> Tuple[dict, ...]:
        return self.account.positions if self.account is not None else ()

    @property
    def book_view(self) -> BookView:
        return self.book.view

    @property
    def public_status(self) -> ConnectionStatus:
        return self.public_feed.status

    @property
    def private_status(self) -> ConnectionStatus:
        if not self.token:
            return ConnectionStatus.IDLE
        if self.private_feed is None:
            return ConnectionStatus.DISCONNECTED
        return self.private_feed.status

    def price_history(self) -> Tuple[PricePoint, ...]:
        return self.book.price_history()

    def trades(self) -> Tuple[Trade, ...]:
        viewer_id = self.account.user_id if self.account is not None else None
        if viewer_id is None:
            return self.trade_feed.raw()
        return self.trade_feed.decorated(viewer_id)

    def order_events(self) -> Tuple[OrderEvent, ...]:
        return self._events.snapshot()

    def fills(self) -> Tuple[Fill, ...]:
        return tuple(self._fills)

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        try:
            await self.public_feed.open()
        except LobClientError as e:
            self.last_error = str(e)
        if self.token:
            await self.connect(self.token)

    async def connect(self, token: Optional[str]) -> None:
        if not token:
            # senza credenziali il feed privato non si apre
            await self.disconnect()
            return

        self.last_error = None
        await self._close_private_feed()
        if token != self.client.token:
            # lo stato utente appartiene al token precedente
            self.clear_user_state()
        self.client.token = token
        self._epoch += 1

        self.private_feed = self._feed_factory(
            "private",
            self.client.private_feed_url(),
            self.handle_private_message,
            logging.getLogger("Feed_private"),
            ws_cfg=self._ws_cfg,
        )
        try:
            await self.private_feed.open()
        except LobClientError as e:
            self.last_error = str(e)

        await asyncio.gather(self.refresh_account(), self.refresh_orders(), self.refresh_fills())

    async def disconnect(self, message: str = "Disconnected") -> None:
        self.clear_user_state()
        self.client.token = None
        self._epoch += 1
        await self._close_private_feed()
        self._record(OrderEvent(timestamp=now_ms(), phase="SESSION", message=message))

    async def handle_auth_expired(self) -> None:
        self.logger.warning("Authorization expired, dropping user session")
        self.last_error = SESSION_EXPIRED
        await self.disconnect()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._close_private_feed()
        await self.public_feed.close()
        await self.client.close()

    async def drain(self) -> None:
        # attende i refresh schedulati dai messaggi del feed privato
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _close_private_feed(self) -> None:
        feed, self.private_feed = self.private_feed, None
        if feed is not None:
            await feed.close()

    def clear_user_state(self) -> None:
        self.account = None
        self.open_orders = ()
        self._fills = []
        self.ledger.clear()

    def clear_market_state(self) -> None:
        self.book.clear()
        self.trade_feed.clear()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _record(self, event: OrderEvent) -> None:
        self._events.append(event)

    def _is_stale(self, epoch: int, what: str) -> bool:
        if epoch != self._epoch:
            self.logger.info("Ignoring response from previous session", extra={"request": what})
            return True
        return False

    # ------------------------------------------------------------------ #
    # feed pubblico
    # ------------------------------------------------------------------ #

    def handle_public_message(self, raw: str) -> None:
        payload = safe_parse(raw)
        if payload is None:
            self.logger.debug("Dropping undecodable public message")
            return
        self.handle_public_payload(payload)

    def handle_public_payload(self, payload: Any) -> None:
        if isinstance(payload, list):
            self._ingest_trades(payload)
            return
        if not isinstance(payload, Mapping):
            return

        kind = payload.get("type")
        if kind == "SNAPSHOT":
            self.book.apply_snapshot(payload)
            return
        if kind == "LOB_UPDATE":
            self.book.apply_delta(payload)
            return
        if kind == "TRADES":
            trades = extract_trades(payload)
            if trades is not None:
                self._ingest_trades(trades)
            return

        # forme senza discriminante
        handled = False
        trades = extract_trades(payload)
        if trades is not None:
            self._ingest_trades(trades)
            handled = True
        if isinstance(payload.get("bids"), list) and isinstance(payload.get("asks"), list):
            self.book.apply_snapshot(payload)
            handled = True
        if not handled:
            self.logger.debug("Unhandled public message shape", extra={"type": kind})

    def _ingest_trades(self, trades: list) -> None:
        if not trades:
            # lista vuota = reset del motore: si riparte da zero
            self.logger.info("Received empty trades payload, clearing market state")
            self.clear_market_state()
            return
        self.trade_feed.ingest(trades)

    # ------------------------------------------------------------------ #
    # feed privato
    # ------------------------------------------------------------------ #

    def handle_private_message(self, raw: str) -> None:
        payload = safe_parse(raw)
        if not isinstance(payload, Mapping):
            self.logger.debug("Dropping malformed private message")
            return
        self.handle_private_payload(payload)

    def handle_private_payload(self, payload: Mapping) -> None:
        reaction = reconcile_private_event(self.ledger, payload, self.open_orders)
        if reaction.event is not None:
            self._record(reaction.event)
        if reaction.fill is not None:
            self._fills = prepend_unique_with_limit(
                self._fills, reaction.fill, self.fill_limit, key=lambda f: f.fill_id
            )
        if reaction.refresh_account:
            self._spawn(self.refresh_account())
        if reaction.refresh_orders:
            self._spawn(self.refresh_orders())

    # ------------------------------------------------------------------ #
    # invio ordini / script / reset
    # ------------------------------------------------------------------ #

    async def submit_order(self, order: OrderRequest) -> Optional[str]:
        if not self.token:
            self._record(OrderEvent(
                timestamp=now_ms(),
                phase="SUBMIT",
                order_id=self.ledger.next_client_order_id(),
                side=order.side.value,
                order_type=order.order_type.value,
                price=order.price,
                quantity=order.quantity,
                message="Authenticate before submitting orders",
                severity=Severity.ERROR,
            ))
            return None

        client_order_id = self.ledger.submit(order)
        self._record(OrderEvent(
            timestamp=now_ms(),
            phase="SUBMIT",
            order_id=client_order_id,
            side=order.side.value,
            order_type=order.order_type.value,
            price=format_price(order.price),
            quantity=order.quantity,
            message="Submitting order",
        ))

        epoch = self._epoch
        try:
            body = await self.client.submit_order(order.to_payload(client_order_id))
        except AuthorizationExpired:
            self.ledger.remove(client_order_id)
            if not self._is_stale(epoch, "order"):
                await self.handle_auth_expired()
            return client_order_id
        except EngineHTTPError as e:
            if self._is_stale(epoch, "order"):
                # l'ordine e' fallito comunque: niente evento, ma via dal ledger
                self.ledger.remove(client_order_id, _assigned_id(e.body))
            else:
                self._fail_submission(client_order_id, _assigned_id(e.body), e.message)
            return client_order_id
        except LobClientError as e:
            if self._is_stale(epoch, "order"):
                self.ledger.remove(client_order_id)
            else:
                self._fail_submission(client_order_id, None, str(e))
            return client_order_id

        if self._is_stale(epoch, "order"):
            return client_order_id
        assigned = _assigned_id(body)
        if assigned:
            self.ledger.rekey(client_order_id, assigned)
        return client_order_id

    def _fail_submission(self, client_order_id: str, assigned: Optional[str], reason: str) -> None:
        identifier = assigned or client_order_id
        # evento costruito prima della rimozione, finche' i metadati esistono
        event = build_event(
            self.ledger, "SUBMIT_FAILED", client_order_id, reason, Severity.ERROR, self.open_orders
        )
        self.ledger.remove(client_order_id, assigned)
        self._record(replace(event, order_id=identifier))
        self.logger.warning("Order submission failed", extra={"order_id": identifier, "reason": reason})

    async def submit_script(self, lines: Iterable[str]) -> bool:
        commands = [line.strip() for line in lines if line and line.strip()]
        if not self.token:
            self._record(OrderEvent(
                timestamp=now_ms(),
                phase="SCRIPT",
                message="Authenticate before running scripts",
                severity=Severity.ERROR,
            ))
            return False

        for line in commands:
            cmd = parse_command(line)
            if cmd is None:
                continue
            self._record(OrderEvent(
                timestamp=now_ms(),
                phase=cmd.kind,
                order_id=str(cmd.order_id) if cmd.order_id is not None else None,
                side=cmd.side.value if cmd.side is not None else None,
                order_type=cmd.order_type,
                price=cmd.price,
                quantity=cmd.quantity,
            ))

        epoch = self._epoch
        try:
            await self.client.submit_script(commands)
        except AuthorizationExpired:
            if not self._is_stale(epoch, "script"):
                await self.handle_auth_expired()
            return False
        except LobClientError as e:
            if not self._is_stale(epoch, "script"):
                self._record(OrderEvent(
                    timestamp=now_ms(), phase="SCRIPT", message=str(e), severity=Severity.ERROR
                ))
            return False

        if self._is_stale(epoch, "script"):
            return False
        self._record(OrderEvent(
            timestamp=now_ms(),
            phase="SCRIPT",
            message=f"Submitted script with {len(commands)} commands",
        ))
        await self.refresh_orders()
        return True

    async def reset_engine(self) -> bool:
        if not self.token:
            self._record(OrderEvent(
                timestamp=now_ms(),
                phase="RESET",
                message="Authenticate as admin to reset",
                severity=Severity.ERROR,
            ))
            return False

        epoch = self._epoch
        self.resetting = True
        try:
            await self.client.reset()
        except AuthorizationExpired:
            if not self._is_stale(epoch, "reset"):
                await self.handle_auth_expired()
            return False
        except LobClientError as e:
            if not self._is_stale(epoch, "reset"):
                self.last_error = str(e)
                self._record(OrderEvent(
                    timestamp=now_ms(), phase="RESET", message=str(e), severity=Severity.ERROR
                ))
            return False
        finally:
            self.resetting = False

        self.clear_market_state()
        self._record(OrderEvent(
            timestamp=now_ms(), phase="RESET", message="Engine reset complete", severity=Severity.SUCCESS
        ))
        await asyncio.gather(
            self.refresh_account(), self.refresh_orders(), self.refresh_fills(), return_exceptions=True
        )
        return True

    # ------------------------------------------------------------------ #
    # refresh stato utente
    # ------------------------------------------------------------------ #

    async def _refresh_failed(self, error: LobClientError, epoch: int, what: str) -> None:
        if self._is_stale(epoch, what):
            return
        if isinstance(error, AuthorizationExpired):
            await self.handle_auth_expired()
        else:
            self.logger.warning("Refresh failed", extra={"request": what, "error": str(error)})
            self.last_error = str(error)

    async def refresh_account(self) -> None:
        if not self.token:
            return
        epoch = self._epoch
        self.refreshing_account = True
        try:
            data = await self.client.get_account()
        except LobClientError as e:
            await self._refresh_failed(e, epoch, "account")
            return
        finally:
            self.refreshing_account = False
        if self._is_stale(epoch, "account") or not isinstance(data, Mapping):
            return

        positions = data.get("positions")
        positions = positions if isinstance(positions, list) else []
        self.account = Account(
            user_id=data.get("userId"),
            cash=data.get("cash"),
            positions=tuple(sorted(
                (p for p in positions if isinstance(p, Mapping)),
                key=lambda p: str(p.get("ticker", "")),
            )),
        )
        self.last_error = None

    async def refresh_orders(self) -> None:
        if not self.token:
            self.open_orders = ()
            return
        epoch = self._epoch
        requested_at = self.ledger.now()
        try:
            data = await self.client.get_orders()
        except LobClientError as e:
            await self._refresh_failed(e, epoch, "orders")
            return
        if self._is_stale(epoch, "orders"):
            return

        self.open_orders = tuple(o for o in data if isinstance(o, Mapping)) if isinstance(data, list) else ()
        pruned = self.ledger.prune_acknowledged(
            (o.get("orderId") for o in self.open_orders), acknowledged_before=requested_at
        )
        if pruned:
            self.logger.debug("Pruned acknowledged orders no longer open", extra={"count": pruned})
        self.last_error = None

    async def refresh_fills(self) -> None:
        if not self.token:
            self._fills = []
            return
        epoch = self._epoch
        try:
            data = await self.client.get_fills()
        except LobClientError as e:
            await self._refresh_failed(e, epoch, "fills")
            return
        if self._is_stale(epoch, "fills"):
            return

        viewer_id = self.account.user_id if self.account is not None else None
        if isinstance(data, list):
            mapped = [Fill.from_payload(f, viewer_id) for f in data if isinstance(f, Mapping)]
            mapped.sort(key=_fill_sort_key, reverse=True)
            self._fills = mapped[: self.fill_limit]
        else:
            self._fills = []
        self.last_error = None
