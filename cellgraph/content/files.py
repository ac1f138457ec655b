"""
Content file helpers for Cellgraph.

Hashing, byte-exact reads and writes of content files, and downloading of
remote content into the local cache.
"""

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

import httpx

from ..errors import StorageIOError

ENCODING = "utf-8"


def content_bytes(content: Union[str, bytes]) -> bytes:
    return content if isinstance(content, bytes) else content.encode(ENCODING)


def calculate_content_hash(content: Union[str, bytes]) -> str:
    """
    Calculate the SHA-256 hash of content.

    Args:
        content: Text (hashed as UTF-8) or raw bytes

    Returns:
        The SHA-256 hash as a hex string
    """
    return hashlib.sha256(content_bytes(content)).hexdigest()


def hash_file(path: Union[str, Path]) -> str:
    """Hash a file's bytes without loading it all at once."""
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
    except OSError as e:
        raise StorageIOError(f"Failed to hash {path}: {e}") from e
    return digest.hexdigest()


def read_text(path: Union[str, Path]) -> str:
    """Read a content file exactly as stored (no newline translation)."""
    try:
        return Path(path).read_bytes().decode(ENCODING)
    except OSError as e:
        raise StorageIOError(f"Failed to read content file {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise StorageIOError(f"Content file is not valid {ENCODING}: {path}") from e


def read_optional_bytes(path: Union[str, Path]) -> Optional[bytes]:
    """Return a file's bytes, or None when it does not exist."""
    try:
        return Path(path).read_bytes()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageIOError(f"Failed to read {path}: {e}") from e


def write_bytes_atomic(path: Union[str, Path], data: bytes) -> None:
    """
    Write a file via a sibling temporary file and rename.

    Readers never observe a half-written file.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise StorageIOError(f"Failed to write content file {path}: {e}") from e


def remove_file(path: Union[str, Path]) -> None:
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        raise StorageIOError(f"Failed to remove content file {path}: {e}") from e


def fetch_remote(url: str, timeout: float = 30.0, client: Optional[httpx.Client] = None) -> bytes:
    """
    Download remote content.

    Args:
        url: The URL to fetch
        timeout: Request timeout in seconds
        client: Optional shared httpx client

    Returns:
        The response body

    Raises:
        StorageIOError: If the request fails or returns an error status
    """
    try:
        if client is not None:
            response = client.get(url, follow_redirects=True)
        else:
            response = httpx.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
    except httpx.RequestError as e:
        raise StorageIOError(f"Failed to fetch remote content {url}: {e}") from e
    except httpx.HTTPStatusError as e:
        raise StorageIOError(f"Remote content request failed {url}: {e}") from e

    logging.info(f"Fetched remote content: {url} ({len(response.content)} bytes)")
    return response.content
