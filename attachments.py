"""
attachments.py
--------------
Invoice Record Builder: Attachment Acquisition
----------------------------------------------
Reads caller-supplied files into :class:`schemas.Attachment` objects.

Reads are the only suspension point of a build.  All sources are read
concurrently and the build waits for every one of them; a single failure
aborts the whole build with :class:`AttachmentReadError`, so no bundle is
ever assembled from a partial attachment set.

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from schemas import Attachment

logger = logging.getLogger(__name__)

_DEFAULT_CONTENT_TYPE = "application/octet-stream"


class AttachmentReadError(Exception):
    """Reading one attachment failed; the build cannot continue."""

    def __init__(self, filename: str, message: str) -> None:
        self.filename = filename
        super().__init__(f"Could not read attachment '{filename}': {message}")


class AttachmentSource(Protocol):
    filename: str

    async def read(self) -> Attachment: ...


def _guess_content_type(filename: str, declared: Optional[str]) -> str:
    if declared:
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or _DEFAULT_CONTENT_TYPE


class BytesAttachmentSource:
    """
    An attachment whose bytes are produced by an async reader.

    ``reader`` is typically ``UploadFile.read`` from FastAPI; plain bytes
    may be given instead.
    """

    def __init__(
        self,
        filename: str,
        content_type: Optional[str] = None,
        data: Optional[bytes] = None,
        reader: Optional[Callable[[], Awaitable[bytes]]] = None,
    ) -> None:
        if data is None and reader is None:
            raise ValueError("BytesAttachmentSource needs data or a reader")
        self.filename = filename or "attachment"
        self.content_type = _guess_content_type(self.filename, content_type)
        self._data = data
        self._reader = reader

    async def read(self) -> Attachment:
        try:
            data = self._data if self._data is not None else await self._reader()
        except Exception as exc:
            raise AttachmentReadError(self.filename, str(exc)) from exc
        return Attachment(filename=self.filename, content_type=self.content_type, data=data)


class FileAttachmentSource:
    """An attachment read from the local filesystem in a worker thread."""

    def __init__(self, path: str, content_type: Optional[str] = None) -> None:
        self.path = path
        self.filename = os.path.basename(path)
        self.content_type = _guess_content_type(self.filename, content_type)

    def _read_bytes(self) -> bytes:
        with open(self.path, "rb") as fh:
            return fh.read()

    async def read(self) -> Attachment:
        try:
            data = await asyncio.to_thread(self._read_bytes)
        except OSError as exc:
            raise AttachmentReadError(self.filename, str(exc)) from exc
        return Attachment(filename=self.filename, content_type=self.content_type, data=data)


async def read_attachments(sources: Sequence[AttachmentSource]) -> List[Attachment]:
    """
    Read every source concurrently, preserving input order.

    Every read runs to completion before the outcome is decided, so no
    failure is left unobserved in a background task.

    Raises:
        AttachmentReadError: the first failure in input order; the other
            results are discarded.
    """
    if not sources:
        return []
    results = await asyncio.gather(*(source.read() for source in sources), return_exceptions=True)
    failures = [r for r in results if isinstance(r, BaseException)]
    if failures:
        if len(failures) > 1:
            logger.warning("attachments: %d of %d reads failed.", len(failures), len(results))
        raise failures[0]
    logger.debug("attachments: read %d attachment(s).", len(results))
    return list(results)
