"""
Tar helpers for the container archive API.

The engine only moves files in and out of containers as tar streams, so every
file write or read goes through these two functions.
"""

from __future__ import annotations

import io
import posixpath
import tarfile
import time


def pack_file(name: str, data: bytes, mode: int = 0o644, uid: int = 0, gid: int = 0) -> bytes:
    """
    Build an uncompressed tar archive holding a single regular file.

    Args:
        name: File name inside the archive (no directory components).
        data: File contents.
        mode: Permission bits.
        uid: Owner user id inside the container.
        gid: Owner group id inside the container.

    Returns:
        The tar archive as bytes.
    """
    buffer = io.BytesIO()
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mode = mode
    info.uid = uid
    info.gid = gid
    info.mtime = int(time.time())

    with tarfile.open(fileobj=buffer, mode="w") as tar:
        tar.addfile(info, io.BytesIO(data))

    return buffer.getvalue()


def unpack_file(archive: bytes, path: str) -> bytes:
    """
    Extract one regular file from a tar archive returned by the engine.

    The engine names the member after the basename of the requested path.

    Raises:
        FileNotFoundError: If the archive holds no regular file with that name.
    """
    wanted = posixpath.basename(path.rstrip("/"))
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r") as tar:
        for member in tar.getmembers():
            if member.isfile() and posixpath.basename(member.name) == wanted:
                extracted = tar.extractfile(member)
                if extracted is not None:
                    return extracted.read()

    raise FileNotFoundError(f"{path} not found in archive")
