"""
Storage Abstraction Layer

Provides a clean interface for storing result images. LocalStorage writes to
the filesystem; other backends only need to implement IStorage.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from studiostyle.core.config import settings


class IStorage(ABC):
    """Interface for storage operations"""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "results",
        content_type: str = "image/png"
    ) -> str:
        """
        Store a file and return its unique storage key.

        Args:
            file_data: Raw bytes of the file
            filename: Desired filename; made unique if already taken
            folder: Subfolder/container prefix
            content_type: MIME type of the file

        Returns:
            Storage key identifying the stored file
        """
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation."""

    def __init__(self, base_path: str = "./data/output"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_free_path(self, folder_path: Path, filename: str) -> Path:
        """Append a counter to the stem until the filename is unused."""
        candidate = folder_path / filename
        stem, suffix = candidate.stem, candidate.suffix
        counter = 1
        while candidate.exists():
            candidate = folder_path / f"{stem}_{counter}{suffix}"
            counter += 1
        return candidate

    def get_path(self, storage_key: str) -> Path:
        """Resolve a storage key to its local path."""
        return self.base_path / storage_key

    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "results",
        content_type: str = "image/png"
    ) -> str:
        folder_path = self.base_path / folder
        folder_path.mkdir(parents=True, exist_ok=True)

        file_path = self._get_free_path(folder_path, filename)

        with open(file_path, "wb") as f:
            f.write(file_data)

        return f"{folder}/{file_path.name}"


class StorageFactory:
    """Factory for the process-wide storage instance."""

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls, base_path: Optional[str] = None) -> IStorage:
        """Get the storage implementation, creating it on first use."""
        if cls._instance is None:
            cls._instance = LocalStorage(base_path=base_path or settings.OUTPUT_DIR)
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


def get_storage(base_path: Optional[str] = None) -> IStorage:
    """Get the storage instance."""
    return StorageFactory.get_storage(base_path)
