# viewer/run_viewer.py
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Optional

from lobclient.config_loader import load_config
from lobclient.engine.script import split_script
from lobclient.infra.logging_setup import setup_logging
from lobclient.session import TradingSession


def log_top_of_book(session: TradingSession, logger: logging.Logger) -> None:
    view = session.book_view
    trades = session.trades()
    last = trades[-1] if trades else None
    logger.info(
        "Top of book",
        extra={
            "best_bid": view.best_bid,
            "best_ask": view.best_ask,
            "bid_levels": len(view.bids),
            "ask_levels": len(view.asks),
            "trades": len(trades),
            "last_price": last.price if last else None,
            "pending": len(session.ledger),
            "public": session.public_status.value,
            "private": session.private_status.value,
        },
    )


async def run_viewer(
    config_path: str,
    token: Optional[str] = None,
    script_path: Optional[str] = None,
    duration_s: Optional[float] = None,
) -> None:
    # ------------------------------------------------------------------
    # Carica config e logging
    # ------------------------------------------------------------------
    cfg = load_config(config_path)
    if token:
        cfg["api_token"] = token
    setup_logging(cfg.get("logging", {}))
    logger = logging.getLogger("viewer")

    logger.info("Starting viewer", extra={"config_path": config_path})

    session = TradingSession(cfg, logging.getLogger("Session"))
    refresh_s = cfg.get("report_interval_ms", 1000) / 1000.0

    try:
        await session.start()

        if script_path:
            lines = split_script(Path(script_path).read_text(encoding="utf-8"))
            ok = await session.submit_script(lines)
            logger.info("Script submitted", extra={"path": script_path, "lines": len(lines), "ok": ok})

        # ------------------------------------------------------------------
        # Main loop: report periodico finche' non scade o viene cancellato
        # ------------------------------------------------------------------
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration_s if duration_s else None
        seen_events = 0
        while deadline is None or loop.time() < deadline:
            log_top_of_book(session, logger)
            events = session.order_events()
            for event in events[seen_events:]:
                logger.info(
                    "Order event",
                    extra={"phase": event.phase, "order_id": event.order_id, "severity": event.severity.value, "text": event.message},
                )
            seen_events = len(events)
            if session.last_error:
                logger.warning("Session error", extra={"error": session.last_error})
            await asyncio.sleep(refresh_s)
    except asyncio.CancelledError:
        logger.info("Cancellation requested, shutting down...")
    finally:
        try:
            await session.close()
        except Exception as e:
            logger.warning("Error closing session", extra={"error": str(e)})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Order book viewer for the matching engine")
    parser.add_argument(
        "--config",
        type=str,
        default="config/config.yaml",
        help="Path to configuration file (default: config/config.yaml)",
    )
    parser.add_argument("--token", type=str, default=None, help="Bearer token for the private feed")
    parser.add_argument("--script", type=str, default=None, help="Command script to submit after connecting")
    parser.add_argument("--duration", type=float, default=None, help="Stop after N seconds")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    config_path = Path(args.config)
    if not config_path.exists():
        raise SystemExit(f"Config file not found: {config_path}")

    try:
        asyncio.run(run_viewer(str(config_path), args.token, args.script, args.duration))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
