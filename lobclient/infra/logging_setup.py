# lobclient/infra/logging_setup.py
import logging
from typing import Any, Dict, Optional

# attributi standard di LogRecord: tutto il resto arriva da extra={...}
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

DEFAULT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class KeyValueFormatter(logging.Formatter):
    """
    Formatter testuale che accoda i campi extra come key=value, cosi'
    logger.info("Cancel order", extra={"order_id": 7}) diventa
    "... Cancel order order_id=7".
    """

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = {k: v for k, v in vars(record).items() if k not in _RESERVED and not k.startswith("_")}
        if not fields:
            return base
        rendered = " ".join(
            f"{k}={v!r}" if isinstance(v, str) and " " in v else f"{k}={v}"
            for k, v in sorted(fields.items())
        )
        return f"{base} {rendered}"


def setup_logging(cfg: Optional[Dict[str, Any]] = None) -> None:
    cfg = cfg or {}
    level_name = str(cfg.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = KeyValueFormatter(cfg.get("format", DEFAULT_FORMAT))

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    log_file = cfg.get("file")
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # websockets logga ogni frame a DEBUG
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))
