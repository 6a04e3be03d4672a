from abc import ABC, abstractmethod
from typing import List, Optional

from pkgvault.domain.models import LedgerEntry


class LedgerStore(ABC):
    """
    Abstract base class for install ledger storage.
    """

    @abstractmethod
    def initialize(self) -> None:
        """Initialize the storage subsystem (e.g. create directories)."""
        pass

    @abstractmethod
    def get(self, serial: str) -> Optional[LedgerEntry]:
        """Get the ledger record for a serial, or None when nothing is installed."""
        pass

    @abstractmethod
    def list_all(self) -> List[LedgerEntry]:
        """Get every readable ledger record, ordered by serial."""
        pass

    @abstractmethod
    def save(self, entry: LedgerEntry) -> None:
        """
        Create or replace the record for entry.serial.
        Must never leave a partially written record behind.
        """
        pass

    @abstractmethod
    def delete(self, serial: str) -> None:
        """Remove the record for a serial."""
        pass
