"""
Base source adapter interface.

A source adapter reads the source-of-truth directory and returns raw entries,
each a dictionary with at least `name`, `email`, `title` and `image_ref`.
Entries are validated by the normalizer, not here.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Raised when the source directory cannot be read. Fatal to the run."""
    pass


class SourceAdapterBase(ABC):
    """Abstract base class for directory sources."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.name = config.get('name', self.__class__.__name__)

    @abstractmethod
    def list_entries(self) -> List[Dict[str, Any]]:
        """
        Return every member entry of the directory.

        Raises:
            SourceError: If the directory cannot be read
        """

    def test_connection(self) -> bool:
        """Check that the directory is reachable without raising."""
        try:
            self.list_entries()
            return True
        except SourceError as e:
            logger.debug(f"Source connection test failed for {self.name}: {e}")
            return False

    def close(self) -> None:
        """Release any open connection."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
