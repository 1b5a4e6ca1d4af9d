# lobclient/exchange/engine_client.py
import asyncio
import json
from typing import Any, Callable, Optional
from urllib.parse import quote

import aiohttp
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config_loader import resolve_api_base, to_websocket_base
from ..exceptions import (
    AuthenticationRequired,
    AuthorizationExpired,
    EngineHTTPError,
    EngineTransportError,
)
from ..models import ConnectionStatus


class FeedConnection:
    """
    Una connessione WebSocket long-lived (feed pubblico o privato).

    Lo stato e' osservabile (connecting / connected / closing /
    disconnected / error) e ogni transizione viene notificata a on_status.
    I messaggi testuali vanno a on_message cosi' come arrivano.
    """

    def __init__(
        self,
        name: str,
        url: str,
        on_message: Callable[[str], Any],
        logger,
        on_status: Optional[Callable[[str, ConnectionStatus], Any]] = None,
        ws_cfg: Optional[dict] = None,
        connect: Callable = websockets.connect,
    ):
        self.name = name
        self.url = url
        self.logger = logger
        self._on_message = on_message
        self._on_status = on_status
        self._ws_cfg = ws_cfg or {}
        self._connect = connect

        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._status = ConnectionStatus.DISCONNECTED

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        self.logger.info("Feed status changed", extra={"feed": self.name, "status": status.value})
        if self._on_status is not None:
            self._on_status(self.name, status)

    # ----------------------------------------------------------------------
    # LIFECYCLE
    # ----------------------------------------------------------------------
    async def open(self) -> None:
        if self._ws is not None:
            return

        self._set_status(ConnectionStatus.CONNECTING)
        try:
            self._ws = await self._connect(
                self.url,
                ping_interval=self._ws_cfg.get("ping_interval", 20),
                ping_timeout=self._ws_cfg.get("ping_timeout", 10),
                close_timeout=self._ws_cfg.get("close_timeout", 5),
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._set_status(ConnectionStatus.ERROR)
            self.logger.warning("Feed connection failed", extra={"feed": self.name, "error": str(e)})
            raise EngineTransportError(f"{self.name} feed connection failed: {e}") from e

        self._set_status(ConnectionStatus.CONNECTED)
        self._reader_task = asyncio.create_task(self._reader_loop(), name=f"{self.name}_ws")

    async def close(self) -> None:
        if self._ws is None and self._reader_task is None:
            return
        self._set_status(ConnectionStatus.CLOSING)

        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def _reader_loop(self) -> None:
        ws = self._ws
        try:
            assert ws is not None
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                try:
                    self._on_message(raw)
                except Exception:
                    self.logger.exception("Error handling feed message", extra={"feed": self.name})
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            self.logger.info("Feed closed by server", extra={"feed": self.name, "code": e.rcvd.code if e.rcvd else None})
            self._set_status(ConnectionStatus.DISCONNECTED)
        except Exception as e:
            self.logger.exception(f"Error in {self.name} WS reader: {e}")
            self._set_status(ConnectionStatus.ERROR)
        else:
            self._set_status(ConnectionStatus.DISCONNECTED)
        finally:
            if self._ws is ws and ws is not None:
                await ws.close()
                self._ws = None
                self._reader_task = None


class EngineClient:
    """
    Wrapper HTTP verso il motore: aggiunge il bearer token, serializza i
    body JSON e classifica i fallimenti (401 / non-2xx / trasporto).
    """

    def __init__(self, cfg: dict, logger, token: Optional[str] = None):
        self.cfg = cfg
        self.logger = logger
        self.name = "engine"

        self.api_base = resolve_api_base(cfg)
        self.ws_base = to_websocket_base(self.api_base)
        self.token = token or cfg.get("api_token") or None

        self._http: Optional[aiohttp.ClientSession] = None
        self._http_timeout = aiohttp.ClientTimeout(total=cfg.get("http_timeout_s"))

    # ----------------------------------------------------------------------
    # URL
    # ----------------------------------------------------------------------
    def public_feed_url(self) -> str:
        return f"{self.ws_base}/ws/public"

    def private_feed_url(self) -> str:
        if not self.token:
            raise AuthenticationRequired()
        return f"{self.ws_base}/ws/private?token={quote(self.token, safe='')}"

    # ----------------------------------------------------------------------
    # LIFECYCLE
    # ----------------------------------------------------------------------
    async def _ensure_http(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession(timeout=self._http_timeout)
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None

    # ----------------------------------------------------------------------
    # REQUEST
    # ----------------------------------------------------------------------
    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        if not self.token:
            raise AuthenticationRequired()

        session = await self._ensure_http()
        headers = {"Authorization": f"Bearer {self.token}"}
        data = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body)

        url = f"{self.api_base}{path}"
        try:
            async with session.request(method, url, data=data, headers=headers) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error("Engine HTTP request failed", extra={"url": url, "error": str(e)})
            raise EngineTransportError(str(e) or type(e).__name__) from e

        try:
            parsed = json.loads(text) if text else {}
        except json.JSONDecodeError:
            parsed = {}

        if status == 401:
            self.logger.warning("Engine HTTP unauthorized", extra={"url": url})
            raise AuthorizationExpired(parsed)
        if not 200 <= status < 300:
            message = parsed.get("message") if isinstance(parsed, dict) else None
            self.logger.error("Engine HTTP error", extra={"url": url, "status": status, "body": text})
            raise EngineHTTPError(status, message, parsed)
        return parsed

    # ----------------------------------------------------------------------
    # ENDPOINTS
    # ----------------------------------------------------------------------
    async def submit_order(self, payload: dict) -> Any:
        """POST /api/order: la risposta puo' contenere l'orderId assegnato."""
        self.logger.debug("Submitting order", extra={"order_id": payload.get("orderId")})
        return await self._request("POST", "/api/order", payload)

    async def submit_script(self, lines: list) -> Any:
        return await self._request("POST", "/api/script", list(lines))

    async def reset(self) -> Any:
        return await self._request("POST", "/api/reset")

    async def get_account(self) -> Any:
        return await self._request("GET", "/api/account")

    async def get_orders(self) -> Any:
        return await self._request("GET", "/api/orders")

    async def get_fills(self) -> Any:
        return await self._request("GET", "/api/fills")
