"""
BrokerGateway: the capability set the engine consumes from a broker connector.

Concrete connectors implement four primitives (_submit_market, _close,
_fetch_positions, _fetch_quote). The public methods wrap them with the
tolerance rules the engine relies on:

- place_market raises BrokerError on transport failure and OrderRejected
  when the broker answers without a ticket
- close_position never raises; "not found" / "invalid ticket" is success
  with already_closed=True
- list_positions normalises the many raw position shapes into BrokerPosition
- last_price returns None instead of raising

Connection lifecycle, retries and reconnection belong to the connector.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pairbot.domain.pair import Side

log = logging.getLogger("pairbot")

_NOT_FOUND_RE = re.compile(r"position not found|not found|invalid ticket", re.IGNORECASE)

_TICKET_KEYS = ("positionId", "ticket", "id")
_ORDER_TICKET_KEYS = ("positionId", "orderId", "ticket", "id")
_OPEN_TIME_KEYS = ("openingTime", "opening_time_utc", "time", "openTime", "updateTime")
_VOLUME_KEYS = ("volume", "lots", "original_position_size")


class BrokerError(Exception):
    """Transport or API failure talking to the broker. Always transient for the engine."""


class OrderRejected(BrokerError):
    """Broker accepted the request but returned no position ticket."""


@dataclass(frozen=True)
class Quote:
    bid: float
    ask: float
    timestamp_ms: Optional[int] = None

    def price_for(self, side: Side) -> float:
        """Exit-side price: positions are valued at bid when long, ask when short."""
        return self.bid if side is Side.BUY else self.ask

    def entry_for(self, side: Side) -> float:
        return self.ask if side is Side.BUY else self.bid


@dataclass(frozen=True)
class BrokerPosition:
    ticket: str
    side: Optional[Side]
    volume: float
    open_time_ms: Optional[int] = None
    open_price: Optional[float] = None


@dataclass
class PlaceResult:
    ticket: str
    price: Optional[float] = None
    raw: Any = None


@dataclass
class CloseResult:
    ok: bool
    already_closed: bool = False
    error: Optional[str] = None


def parse_time_ms(value: Any) -> Optional[int]:
    """
    Parse broker timestamps into epoch ms.

    Accepts datetime, ISO-8601 strings, epoch seconds and epoch milliseconds.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, (int, float)):
        # Anything below ~2001-09 in ms is really seconds
        return int(value * 1000) if value < 1e12 else int(value)
    text = str(value).strip()
    try:
        return parse_time_ms(float(text))
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parse_time_ms(dt)


def _first(raw: Dict[str, Any], keys: tuple) -> Any:
    for k in keys:
        v = raw.get(k)
        if v not in (None, ""):
            return v
    return None


def _float_or(value: Any, default: Optional[float]) -> Optional[float]:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_position(raw: Dict[str, Any]) -> Optional[BrokerPosition]:
    """Normalise one raw position dict. Returns None when it carries no ticket."""
    ticket = _first(raw, _TICKET_KEYS)
    if ticket is None:
        return None
    return BrokerPosition(
        ticket=str(ticket),
        side=Side.parse(_first(raw, ("type", "side"))),
        volume=_float_or(_first(raw, _VOLUME_KEYS), 0.0),
        open_time_ms=parse_time_ms(_first(raw, _OPEN_TIME_KEYS)),
        open_price=_float_or(_first(raw, ("openPrice", "open_price", "price")), None),
    )


def parse_order_ticket(res: Any) -> Optional[str]:
    """Extract the position ticket from an order response (flat or nested under 'result')."""
    if not isinstance(res, dict):
        return None
    ticket = _first(res, _ORDER_TICKET_KEYS)
    if ticket is None and isinstance(res.get("result"), dict):
        ticket = _first(res["result"], _ORDER_TICKET_KEYS)
    return str(ticket) if ticket is not None else None


def parse_fill_price(res: Any) -> Optional[float]:
    if not isinstance(res, dict):
        return None
    px = _first(res, ("price", "averagePrice", "openPrice"))
    if px is None and isinstance(res.get("result"), dict):
        px = _first(res["result"], ("price", "averagePrice", "openPrice"))
    try:
        return float(px) if px is not None else None
    except (TypeError, ValueError):
        return None


def is_not_found_error(exc: BaseException) -> bool:
    return bool(_NOT_FOUND_RE.search(str(exc) or ""))


class BrokerGateway(ABC):
    """
    Broker connector base class.

    Subclasses implement the underscore primitives; the engine only calls the
    public methods.
    """

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol

    # ---- primitives -------------------------------------------------------

    @abstractmethod
    async def _submit_market(
        self, side: Side, lot: float, sl: Optional[float], tp: Optional[float]
    ) -> Dict[str, Any]:
        """Send a market order; return the raw broker response."""

    @abstractmethod
    async def _close(self, ticket: str, lot: Optional[float]) -> Any:
        """Close a position fully (lot=None) or partially."""

    @abstractmethod
    async def _fetch_positions(self) -> List[Dict[str, Any]]:
        """Return raw open positions for self.symbol."""

    @abstractmethod
    async def _fetch_quote(self) -> Optional[Dict[str, Any]]:
        """Return the latest {'bid', 'ask'} for self.symbol, or None."""

    # ---- engine-facing API ------------------------------------------------

    async def place_market(
        self,
        side: Side,
        lot: float,
        sl: Optional[float] = None,
        tp: Optional[float] = None,
    ) -> PlaceResult:
        try:
            raw = await self._submit_market(side, lot, sl, tp)
        except BrokerError:
            raise
        except Exception as exc:
            raise BrokerError(f"place_market failed: {exc}") from exc

        ticket = parse_order_ticket(raw)
        if not ticket:
            raise OrderRejected(f"no ticket in order response: {raw!r}")
        log.info(json.dumps({
            "event": "broker_order_placed",
            "symbol": self.symbol,
            "side": side.value,
            "lot": lot,
            "ticket": ticket,
        }))
        return PlaceResult(ticket=ticket, price=parse_fill_price(raw), raw=raw)

    async def close_position(self, ticket: str, lot: Optional[float] = None) -> CloseResult:
        try:
            await self._close(str(ticket), lot)
        except Exception as exc:
            if is_not_found_error(exc):
                return CloseResult(ok=True, already_closed=True)
            log.warning(json.dumps({
                "event": "broker_close_error",
                "symbol": self.symbol,
                "ticket": str(ticket),
                "error": str(exc),
            }))
            return CloseResult(ok=False, error=str(exc))
        return CloseResult(ok=True)

    async def list_positions(self) -> List[BrokerPosition]:
        """Normalised open positions. Raises BrokerError if the fetch fails."""
        try:
            raw = await self._fetch_positions()
        except BrokerError:
            raise
        except Exception as exc:
            raise BrokerError(f"list_positions failed: {exc}") from exc
        out: List[BrokerPosition] = []
        for item in raw or []:
            if not isinstance(item, dict):
                continue
            try:
                pos = parse_position(item)
            except Exception as exc:
                log.warning(json.dumps({
                    "event": "broker_position_skipped",
                    "symbol": self.symbol,
                    "raw": repr(item)[:200],
                    "error": str(exc),
                }))
                continue
            if pos is not None:
                out.append(pos)
        return out

    async def last_price(self) -> Optional[Quote]:
        try:
            raw = await self._fetch_quote()
        except Exception as exc:
            log.warning(json.dumps({
                "event": "broker_quote_error",
                "symbol": self.symbol,
                "error": str(exc),
            }))
            return None
        if not raw or raw.get("bid") is None or raw.get("ask") is None:
            return None
        return Quote(bid=float(raw["bid"]), ask=float(raw["ask"]), timestamp_ms=parse_time_ms(raw.get("time")))

    async def close(self) -> None:
        """Release connector resources. Default: nothing to release."""
