"""
kubestrap/utils/ephemeral_file.py

Provides an async context manager for a short-lived file: a private temporary
directory is created, a path inside it is yielded (optionally pre-filled with
content), and the file and directory are removed on exit no matter how the
block ends (return, exception or cancellation).
"""

import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiofiles


@asynccontextmanager
async def ephemeral_file(
    file_name: str,
    *,
    content: Optional[str] = None,
    prefix: str = "ephemeral-",
    parent_dir: Optional[str] = None,
    mode: int = 0o600,
) -> AsyncGenerator[str, None]:
    """
    Yield the path of an ephemeral file named `file_name`.

    Args:
        file_name: Base name of the file inside the ephemeral directory.
        content: If given, written to the file (UTF-8) before yielding.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the directory. Defaults to the system temp dir.
        mode: Permissions applied to the file when `content` is written.

    Yields:
        The absolute file path. The file only exists if `content` was given
        or the caller creates it.

    Raises:
        ValueError: If `file_name` is not a plain base name.
    """
    if not file_name or os.path.basename(file_name) != file_name:
        raise ValueError(f"file_name must be a plain base name, got {file_name!r}")

    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir, prefix=prefix)
    ephemeral_path = os.path.join(ephemeral_dir, file_name)

    try:
        if content is not None:
            async with aiofiles.open(ephemeral_path, "w", encoding="utf-8") as fobj:
                await fobj.write(content)
            os.chmod(ephemeral_path, mode)

        yield ephemeral_path

    finally:
        if os.path.isdir(ephemeral_dir):
            for item in os.listdir(ephemeral_dir):
                item_path = os.path.join(ephemeral_dir, item)
                if os.path.isfile(item_path) or os.path.islink(item_path):
                    os.remove(item_path)
            os.rmdir(ephemeral_dir)
