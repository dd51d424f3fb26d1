"""
Signal model and the text format delivered by the webhook source.

Format: "<T|R> <BUY|SELL> <ENTRY|CLOSE>", case-insensitive, any whitespace.
The first token is the setup type (T = trend, R = reversal); together with
the side it forms the category ("T_BUY", "R_SELL", ...).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pairbot.domain.pair import Side

SETUP_TYPES = ("T", "R")


class SignalKind(str, Enum):
    ENTRY = "ENTRY"
    CLOSE = "CLOSE"


class InvalidSignal(ValueError):
    """Signal text or payload could not be parsed."""


@dataclass(frozen=True)
class Signal:
    signal_id: str
    kind: SignalKind
    side: Side
    category: Optional[str] = None
    approval: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "kind": self.kind.value,
            "side": self.side.value,
            "category": self.category,
            "approval": self.approval,
        }


def parse_signal_string(text: str, signal_id: Optional[str] = None) -> Signal:
    """
    Parse "T BUY ENTRY" style text.

    Raises:
        InvalidSignal: if the text does not match the format
    """
    parts = str(text or "").strip().upper().split()
    if len(parts) != 3:
        raise InvalidSignal(f"invalid signal format: {text!r}")
    setup, side_raw, kind_raw = parts
    if setup not in SETUP_TYPES or side_raw not in ("BUY", "SELL"):
        raise InvalidSignal(f"invalid signal format: {text!r}")
    try:
        kind = SignalKind(kind_raw)
    except ValueError:
        raise InvalidSignal(f"invalid signal kind: {kind_raw!r}") from None
    return Signal(
        signal_id=signal_id or uuid.uuid4().hex,
        kind=kind,
        side=Side(side_raw),
        category=f"{setup}_{side_raw}",
    )


def signal_from_payload(payload: Dict[str, Any]) -> Signal:
    """Build a Signal from a webhook JSON body: {"signal": "...", "signalId": "...", "approval": bool}."""
    if not isinstance(payload, dict) or not payload.get("signal"):
        raise InvalidSignal("missing 'signal' in payload")
    raw_id = payload.get("signalId") or payload.get("signal_id")
    sig = parse_signal_string(payload["signal"], signal_id=str(raw_id) if raw_id else None)
    if "approval" in payload:
        sig = Signal(
            signal_id=sig.signal_id,
            kind=sig.kind,
            side=sig.side,
            category=sig.category,
            approval=bool(payload["approval"]),
        )
    return sig
