"""Persistence interface for paper-trading records."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sideways_trader.models.order import Order
    from sideways_trader.models.position import Position


class Ledger(ABC):
    """Write-only record of orders and positions.

    Used by PaperExchange; the live gateway does not persist anything.
    """

    @abstractmethod
    def record_order(self, order: "Order") -> None:
        ...

    @abstractmethod
    def record_position(self, position: "Position") -> None:
        ...

    @abstractmethod
    def update_position(self, position: "Position") -> None:
        """Update a previously recorded position (matched by symbol and entry time)."""
        ...
