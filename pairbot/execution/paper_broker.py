"""
In-memory broker connector.

Simulates the behaviours the engine has to cope with on a real account:

- mirror_second_leg: after an order is placed, the broker opens a second
  position with the same side and volume on its own (the "mirror")
- hidden tickets: positions that exist but are not listed yet
  (eventually-consistent listing)
- scripted placement failures and close failures
- externally opened positions with arbitrary open times

Used by the process entry point (PB_BROKER=paper) and throughout the tests.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from pairbot.core.clock import Clock
from pairbot.domain.pair import Side
from pairbot.execution.broker_gateway import BrokerError, BrokerGateway


@dataclass
class PaperPosition:
    ticket: str
    side: Side
    volume: float
    open_time_ms: Optional[int]
    open_price: float


class PaperBroker(BrokerGateway):

    def __init__(
        self,
        clock: Clock,
        symbol: str = "XAUUSDm",
        bid: Optional[float] = 2000.0,
        ask: Optional[float] = 2000.2,
        mirror_second_leg: bool = False,
        ticket_start: int = 1,
    ) -> None:
        super().__init__(symbol)
        self.clock = clock
        self.bid = bid
        self.ask = ask
        self.mirror_second_leg = mirror_second_leg
        self.positions: Dict[str, PaperPosition] = {}
        self.hidden: Set[str] = set()
        self.fail_next_places = 0
        self.fail_all_places = False
        self.reject_next_places = 0
        self.close_errors: Dict[str, str] = {}
        self.list_error: Optional[str] = None
        self._ids = itertools.count(ticket_start)

        # call journals for assertions
        self.place_calls: List[Dict[str, Any]] = []
        self.close_calls: List[Dict[str, Any]] = []
        self.list_calls = 0

    # ---- scripting ----------------------------------------------------------

    def set_quote(self, bid: Optional[float], ask: Optional[float] = None) -> None:
        self.bid = bid
        self.ask = ask if ask is not None else bid

    def next_ticket(self) -> str:
        return f"T{next(self._ids)}"

    def open_position(
        self,
        side: Side,
        volume: float,
        ticket: Optional[str] = None,
        open_time_ms: Optional[int] = None,
        age_ms: Optional[int] = None,
        hidden: bool = False,
    ) -> str:
        """Create a position directly at the broker (external or mirror)."""
        ticket = ticket or self.next_ticket()
        if open_time_ms is None and age_ms is not None:
            open_time_ms = self.clock.now_ms() - age_ms
        self.positions[ticket] = PaperPosition(
            ticket=ticket,
            side=side,
            volume=volume,
            open_time_ms=open_time_ms,
            open_price=self._fill_price(side),
        )
        if hidden:
            self.hidden.add(ticket)
        return ticket

    def reveal(self, *tickets: str) -> None:
        for t in tickets or list(self.hidden):
            self.hidden.discard(t)

    def remove_position(self, ticket: str) -> None:
        """Simulate a close that happened outside the engine (broker SL/TP, manual)."""
        self.positions.pop(ticket, None)
        self.hidden.discard(ticket)

    def _fill_price(self, side: Side) -> float:
        px = self.ask if side is Side.BUY else self.bid
        return float(px) if px is not None else 0.0

    # ---- primitives -----------------------------------------------------------

    async def _submit_market(
        self, side: Side, lot: float, sl: Optional[float], tp: Optional[float]
    ) -> Dict[str, Any]:
        self.place_calls.append({"side": side, "lot": lot, "sl": sl, "tp": tp})
        if self.fail_all_places:
            raise BrokerError("trade context busy")
        if self.fail_next_places > 0:
            self.fail_next_places -= 1
            raise BrokerError("trade context busy")
        if self.reject_next_places > 0:
            self.reject_next_places -= 1
            return {"stringCode": "TRADE_RETCODE_REJECT"}

        now = self.clock.now_ms()
        ticket = self.open_position(side, lot, open_time_ms=now)
        if self.mirror_second_leg:
            self.open_position(side, lot, open_time_ms=now)
        return {"positionId": ticket, "price": self.positions[ticket].open_price}

    async def _close(self, ticket: str, lot: Optional[float]) -> Any:
        self.close_calls.append({"ticket": ticket, "lot": lot})
        if ticket in self.close_errors:
            raise BrokerError(self.close_errors[ticket])
        pos = self.positions.get(ticket)
        if pos is None:
            raise BrokerError(f"Position not found: {ticket}")
        if lot is None or lot >= pos.volume - 1e-9:
            self.remove_position(ticket)
        else:
            pos.volume = round(pos.volume - lot, 8)
        return {"stringCode": "TRADE_RETCODE_DONE"}

    async def _fetch_positions(self) -> List[Dict[str, Any]]:
        self.list_calls += 1
        if self.list_error:
            raise BrokerError(self.list_error)
        return [
            {
                "id": p.ticket,
                "type": f"POSITION_TYPE_{p.side.value}",
                "volume": p.volume,
                "time": p.open_time_ms,
                "openPrice": p.open_price,
            }
            for p in self.positions.values()
            if p.ticket not in self.hidden
        ]

    async def _fetch_quote(self) -> Optional[Dict[str, Any]]:
        if self.bid is None or self.ask is None:
            return None
        return {"bid": self.bid, "ask": self.ask, "time": self.clock.now_ms()}

    def closed_tickets(self) -> List[str]:
        return [c["ticket"] for c in self.close_calls]
