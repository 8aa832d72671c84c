"""
Position book and its external collaborators.

The broker reports quantities by contract id only. The book resolves each
contract through a metadata provider and the expiration calendar, and keeps
the resolved positions per underlying. Every snapshot replaces an
underlying's positions wholesale.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Mapping, Optional

from volatility_hedging.core.types import ContractMetadata, Position
from volatility_hedging.hedging.calendar import ExpirationCalendar
from volatility_hedging.hedging.messages import PositionsSnapshot
from volatility_hedging.utils.logging import get_logger

logger = get_logger(__name__)


class ContractMetadataProvider(ABC):
    """Contract lookup by broker contract id."""

    @abstractmethod
    def resolve(self, contract_id: int) -> ContractMetadata:
        """
        Resolve a contract.

        Raises:
            KeyError: If the contract is unknown
        """
        pass


class InMemoryContractMetadataProvider(ContractMetadataProvider):
    """Metadata provider backed by a dict."""

    def __init__(self, contracts: Iterable[ContractMetadata] = ()) -> None:
        self._contracts: dict[int, ContractMetadata] = {}
        for metadata in contracts:
            self.add(metadata)

    def add(self, metadata: ContractMetadata) -> None:
        self._contracts[metadata.contract_id] = metadata

    def resolve(self, contract_id: int) -> ContractMetadata:
        try:
            return self._contracts[contract_id]
        except KeyError:
            raise KeyError(f"Unknown contract id: {contract_id}") from None


SnapshotHandler = Callable[[PositionsSnapshot], None]


class PositionFeed(ABC):
    """Source of authoritative position snapshots."""

    def __init__(self) -> None:
        self._handler: Optional[SnapshotHandler] = None

    def set_snapshot_handler(self, handler: SnapshotHandler) -> None:
        self._handler = handler

    def _emit(self, snapshot: PositionsSnapshot) -> None:
        if self._handler is None:
            logger.warning("Position snapshot dropped: no handler registered")
            return
        self._handler(snapshot)

    @abstractmethod
    async def request_snapshot(self) -> None:
        """Ask the broker for a full snapshot; it arrives through the handler."""
        pass


class InMemoryPositionFeed(PositionFeed):
    """Position feed for tests and the demo runner."""

    def __init__(
        self,
        account_id: str,
        quantities: Optional[Mapping[int, Decimal]] = None,
        latency: float = 0.0,
    ) -> None:
        super().__init__()
        self.account_id = account_id
        self.latency = latency
        self.requests = 0
        self._quantities: dict[int, Decimal] = dict(quantities or {})

    def set_quantity(self, contract_id: int, quantity: Decimal) -> None:
        if quantity == 0:
            self._quantities.pop(contract_id, None)
        else:
            self._quantities[contract_id] = quantity

    def adjust(self, contract_id: int, quantity: Decimal) -> None:
        self.set_quantity(contract_id, self._quantities.get(contract_id, Decimal("0")) + quantity)

    def push(self, timestamp: datetime) -> PositionsSnapshot:
        """Emit the current quantities as a snapshot."""
        snapshot = PositionsSnapshot(
            account_id=self.account_id,
            quantities=dict(self._quantities),
            timestamp=timestamp,
        )
        self._emit(snapshot)
        return snapshot

    async def request_snapshot(self) -> None:
        self.requests += 1
        await asyncio.sleep(self.latency)
        self.push(datetime.now(timezone.utc))


class PositionBook:
    """
    Resolved positions per underlying.

    Example:
        >>> book = PositionBook(provider, ExpirationCalendar())
        >>> slices = book.resolve_snapshot(snapshot.quantities, now)
        >>> book.replace("ES", slices.get("ES", []), sequence=1)
    """

    def __init__(
        self, metadata: ContractMetadataProvider, calendar: Optional[ExpirationCalendar] = None
    ) -> None:
        self.metadata = metadata
        self.calendar = calendar or ExpirationCalendar()
        self._positions: dict[str, dict[int, Position]] = {}
        self._sequences: dict[str, int] = {}

    def to_position(
        self, metadata: ContractMetadata, quantity: Decimal, as_of: datetime
    ) -> Position:
        return Position(
            contract_id=metadata.contract_id,
            underlying=metadata.underlying,
            asset_class=metadata.asset_class,
            quantity=quantity,
            multiplier=metadata.multiplier,
            strike=metadata.strike,
            expiration=self.calendar.expiration_instant(metadata, as_of),
            option_type=metadata.option_type,
        )

    def resolve_snapshot(
        self, quantities: Mapping[int, Decimal], as_of: datetime
    ) -> dict[str, list[Position]]:
        """
        Resolve broker quantities into positions grouped by underlying.

        Zero quantities are dropped. Contracts that cannot be resolved are
        logged and skipped.
        """
        grouped: dict[str, list[Position]] = defaultdict(list)
        for contract_id, quantity in quantities.items():
            quantity = Decimal(quantity)
            if quantity == 0:
                continue
            try:
                metadata = self.metadata.resolve(contract_id)
                position = self.to_position(metadata, quantity, as_of)
            except (KeyError, ValueError) as e:
                logger.error(f"Skipping contract {contract_id}: {e}")
                continue
            grouped[position.underlying].append(position)
        return dict(grouped)

    def replace(self, underlying: str, positions: Iterable[Position], sequence: int) -> None:
        """Replace all positions of an underlying."""
        underlying = underlying.upper()
        self._positions[underlying] = {p.contract_id: p for p in positions}
        self._sequences[underlying] = sequence
        logger.debug(
            f"{underlying}: position book replaced with {len(self._positions[underlying])} "
            f"positions (sequence {sequence})"
        )

    def apply_fill(
        self, underlying: str, contract_id: int, quantity: Decimal, as_of: datetime
    ) -> Position:
        """
        Provisionally add a filled hedge quantity.

        The next snapshot supersedes the adjustment.
        """
        underlying = underlying.upper()
        book = self._positions.setdefault(underlying, {})
        existing = book.get(contract_id)
        if existing is None:
            updated = self.to_position(self.metadata.resolve(contract_id), quantity, as_of)
        else:
            updated = existing.model_copy(update={"quantity": existing.quantity + quantity})

        if updated.quantity == 0:
            book.pop(contract_id, None)
        else:
            book[contract_id] = updated
        return updated

    def positions(self, underlying: str) -> list[Position]:
        return list(self._positions.get(underlying.upper(), {}).values())

    def sequence(self, underlying: str) -> int:
        """Sequence of the last snapshot applied, 0 if none."""
        return self._sequences.get(underlying.upper(), 0)

    def underlyings(self) -> set[str]:
        return set(self._positions)
