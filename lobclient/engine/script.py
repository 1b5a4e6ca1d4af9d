# lobclient/engine/script.py
"""
Grammatica degli script di comandi accettati da POST /api/script.

    A <B|S> <OrderType> <Price> <Quantity> <OrderId>
    M <OrderId> <B|S> <Price> <Quantity>
    R|C <OrderId>

Token extra in coda sono tollerati (es. "R 7 0 0").
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from ..models import Side
from .orderbook import parse_quantity


@dataclass(frozen=True)
class ScriptCommand:
    kind: str                    # "Add" / "Modify" / "Cancel"
    order_id: Optional[int]
    side: Optional[Side] = None
    order_type: Optional[str] = None
    price: Optional[int] = None
    quantity: Optional[int] = None


def _side(token: str) -> Side:
    return Side.BUY if token.upper() == "B" else Side.SELL


def split_script(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_command(line: str) -> Optional[ScriptCommand]:
    tokens = line.split()
    if not tokens:
        return None
    code = tokens[0].upper()
    if code == "A" and len(tokens) >= 6:
        return ScriptCommand(
            kind="Add",
            order_id=parse_quantity(tokens[5]),
            side=_side(tokens[1]),
            order_type=tokens[2],
            price=parse_quantity(tokens[3]),
            quantity=parse_quantity(tokens[4]),
        )
    if code == "M" and len(tokens) >= 5:
        return ScriptCommand(
            kind="Modify",
            order_id=parse_quantity(tokens[1]),
            side=_side(tokens[2]),
            order_type="MODIFY",
            price=parse_quantity(tokens[3]),
            quantity=parse_quantity(tokens[4]),
        )
    if code in ("R", "C") and len(tokens) >= 2:
        return ScriptCommand(kind="Cancel", order_id=parse_quantity(tokens[1]), order_type="CANCEL")
    return None


def _side_code(side: Side) -> str:
    return "B" if side == Side.BUY else "S"


def format_add(side: Side, order_type: str, price, quantity, order_id) -> str:
    return f"A {_side_code(side)} {order_type} {price} {quantity} {order_id}"


def format_modify(order_id, side: Side, price, quantity) -> str:
    return f"M {order_id} {_side_code(side)} {price} {quantity}"


def format_cancel(order_id) -> str:
    return f"C {order_id}"
