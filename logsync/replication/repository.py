"""Versioned repositories that can be replicated from a remote."""

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from ..errors import StorageError
from ..ranges import SortedRangeSet

logger = logging.getLogger(__name__)


class ReplicationRepository(ABC):
    """A repository holding numbered versions of opaque data.

    Identified by ``(customer, name)``. ``limit`` caps how many of the newest
    versions are kept; None means unlimited.
    """

    def __init__(self, customer: str, name: str, limit: int | None = None):
        if limit is not None and limit < 1:
            raise ValueError(f"Limit must be at least 1, was {limit}")
        self.customer = customer
        self.name = name
        self.limit = limit

    @property
    def key(self) -> tuple[str, str]:
        return (self.customer, self.name)

    @abstractmethod
    def get_range(self) -> SortedRangeSet:
        """Return the versions present."""
        pass

    @abstractmethod
    def get(self, version: int) -> bytes | None:
        """Return the data of a version, or None if it is not present."""
        pass

    @abstractmethod
    def put(self, data: bytes, version: int) -> bool:
        """Store a version. Returns False if it was already present."""
        pass


class FileRepository(ReplicationRepository):
    """Repository keeping one file per version in a directory."""

    def __init__(
        self,
        path: str | Path,
        customer: str,
        name: str,
        limit: int | None = None,
    ):
        super().__init__(customer, name, limit)
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Repository location is not a valid directory ({self.path}): {e}"
            ) from e

    def _file(self, version: int) -> Path:
        return self.path / str(version)

    def _versions(self) -> list[int]:
        return sorted(
            int(p.name)
            for p in self.path.iterdir()
            if p.is_file() and p.name.isascii() and p.name.isdigit()
        )

    def get_range(self) -> SortedRangeSet:
        try:
            return SortedRangeSet.from_values(self._versions())
        except OSError as e:
            raise StorageError(f"Unable to list repository {self.path}: {e}") from e

    def get(self, version: int) -> bytes | None:
        if version <= 0:
            raise ValueError("Version must be greater than 0.")
        file = self._file(version)
        if not file.is_file():
            return None
        try:
            return file.read_bytes()
        except OSError as e:
            raise StorageError(f"Unable to read version {version} of {self.path}: {e}") from e

    def put(self, data: bytes, version: int) -> bool:
        if version <= 0:
            raise ValueError("Version must be greater than 0.")

        with self._lock:
            file = self._file(version)
            if file.exists():
                return False

            # Write next to the target so the final rename stays on one filesystem
            fd, tmp_name = tempfile.mkstemp(prefix=".repository-", dir=self.path)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, file)
            except OSError as e:
                Path(tmp_name).unlink(missing_ok=True)
                raise StorageError(
                    f"Error occurred while storing version {version} in {self.path}: {e}"
                ) from e

            self._purge()

        logger.debug(f"Stored version {version} of {self.customer}/{self.name}")
        return True

    def commit(self, data: bytes, from_version: int) -> int:
        """Store ``data`` as the version after ``from_version``.

        Raises:
            StorageError: If ``from_version`` is not the current version.

        Returns:
            The new version number.
        """
        if from_version < 0:
            raise ValueError("Version must be greater than or equal to 0.")
        current = self.get_range().high
        if current != from_version:
            raise StorageError(
                f"Repository already changed, cannot commit version {from_version}"
            )
        self.put(data, from_version + 1)
        return from_version + 1

    def _purge(self) -> None:
        if self.limit is None:
            return
        versions = self._versions()
        for version in versions[: max(0, len(versions) - self.limit)]:
            self._file(version).unlink(missing_ok=True)
            logger.debug(f"Purged version {version} of {self.customer}/{self.name}")
