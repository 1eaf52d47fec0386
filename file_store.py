import hashlib
import logging
import os
from dataclasses import dataclass
from typing import BinaryIO, List, Optional

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024


def hash_bytes(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def hash_file(path: str) -> str:
    h = hashlib.md5()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(READ_CHUNK)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


@dataclass(frozen=True)
class CatalogEntry:
    file_name: str
    content_hash: str
    size_bytes: int
    path: str

    def to_wire(self) -> dict:
        return {"file": self.file_name, "hash": self.content_hash, "size": self.size_bytes}


class FileCatalog:
    """
    The files this peer shares: every regular file directly inside 'directory'.
    """

    def __init__(self, directory: str):
        self.directory = os.path.abspath(directory)
        self.entries: List[CatalogEntry] = []

    def scan(self) -> List[CatalogEntry]:
        """
        Hashes every file in the directory. Raises FileNotFoundError if it doesn't exist.
        """
        if not os.path.isdir(self.directory):
            raise FileNotFoundError(f"Couldn't find \"{self.directory}\".")

        entries = []
        for name in sorted(os.listdir(self.directory)):
            path = os.path.join(self.directory, name)
            if os.path.isdir(path):
                logger.info(f"Ignored folder: {name}")
                continue
            if not os.path.isfile(path):
                continue
            entries.append(CatalogEntry(name, hash_file(path), os.path.getsize(path), path))

        self.entries = entries
        logger.info(f"Found {len(entries)} files in {self.directory}.")
        return entries

    def to_wire(self) -> List[dict]:
        return [entry.to_wire() for entry in self.entries]

    def lookup(self, file_name: str, content_hash: str) -> Optional[CatalogEntry]:
        for entry in self.entries:
            if entry.file_name == file_name and entry.content_hash == content_hash:
                return entry
        return None

    def open(self, entry: CatalogEntry) -> BinaryIO:
        return open(entry.path, "rb")


class DownloadWriter:
    """
    Persists reassembled files under a local downloads directory, creating it if absent.
    """

    def __init__(self, directory: str = "downloads"):
        self.directory = os.path.abspath(directory)

    def write(self, file_name: str, data: bytes) -> str:
        os.makedirs(self.directory, exist_ok=True)
        # Never let a remote file name escape the downloads directory.
        name = os.path.basename(file_name)
        if name in ("", ".", ".."):
            raise ValueError(f"Invalid file name: {file_name!r}")
        path = os.path.join(self.directory, name)
        with open(path, "wb") as f:
            f.write(data)
        logger.info(f"Wrote {len(data)} bytes to {path}")
        return path
