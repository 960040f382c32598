"""
Upload Assembler - turns uploaded bytes into durable source files.

Two paths produce an UploadedFile:
1. Chunked: begin a session, accept chunks in any order (duplicates overwrite),
   finalize once every index has arrived.
2. Whole-file: a single-shot stream copy, used directly by the compile endpoint
   and as the client's fallback when chunking keeps failing.

Size ceilings are enforced before bytes are persisted wherever the size is
declared up front, and again while bytes are written.
"""

import asyncio
import logging
import os
import re
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterable, Optional

from clipstitch.config import Settings, get_settings

logger = logging.getLogger(__name__)

_FILE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class UploadError(Exception):
    """Raised when an upload request cannot be accepted."""
    pass


class UploadTooLargeError(UploadError):
    """Raised when a file exceeds the configured size ceiling."""
    pass


class IncompleteUploadError(UploadError):
    """Raised when finalizing a chunk session that is missing chunks."""

    def __init__(self, file_id: str, missing: list[int]):
        self.file_id = file_id
        self.missing = missing
        preview = ", ".join(str(i) for i in missing[:10])
        if len(missing) > 10:
            preview += ", ..."
        super().__init__(f"Upload {file_id} is missing {len(missing)} chunk(s): {preview}")


class ChunkStatus(str, Enum):
    """Outcome of accepting one chunk."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


@dataclass
class UploadedFile:
    """A source file persisted on local disk."""

    file_id: str
    path: str
    original_name: str
    size: int
    stored_at: float = field(default_factory=time.monotonic)


@dataclass
class ChunkSession:
    """An in-progress chunked transfer."""

    file_id: str
    file_name: str
    total_chunks: int
    assembly_dir: str
    total_size: Optional[int] = None
    received: set[int] = field(default_factory=set)
    chunk_sizes: dict[int, int] = field(default_factory=dict)
    last_activity: float = field(default_factory=time.monotonic)

    @property
    def bytes_received(self) -> int:
        return sum(self.chunk_sizes.values())

    @property
    def missing(self) -> list[int]:
        return [i for i in range(self.total_chunks) if i not in self.received]

    def part_path(self, index: int) -> str:
        return os.path.join(self.assembly_dir, f"{index:06d}.part")


def new_file_id() -> str:
    """Time-ordered unique id for a whole-file upload."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def safe_file_name(name: str) -> str:
    """Strip directories and characters that don't belong in a file name."""
    base = Path(name or "").name
    cleaned = _UNSAFE_NAME_CHARS.sub("_", base).strip("._")
    return cleaned or "upload.bin"


class UploadAssembler:
    """
    Receives file bytes and issues UploadedFile handles.

    Output structure:
        <data>/chunks/<file_id>/000000.part ...   (live chunk sessions)
        <data>/uploads/<file_id>-<name>           (finalized sources)
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._sessions: dict[str, ChunkSession] = {}
        self._files: dict[str, UploadedFile] = {}
        self._lock = threading.Lock()

        os.makedirs(self.settings.upload_directory, exist_ok=True)
        os.makedirs(self.settings.chunk_directory, exist_ok=True)

    # ------------------------------------------------------------------
    # Chunked path
    # ------------------------------------------------------------------

    def begin_chunk_session(
        self,
        file_id: str,
        total_chunks: int,
        file_name: str,
        total_size: Optional[int] = None,
    ) -> ChunkSession:
        """
        Open a chunk session, or return the existing one for the same transfer.

        Raises:
            UploadTooLargeError: If the declared size exceeds the chunked ceiling
            UploadError: For invalid ids/counts or conflicting session parameters
        """
        self._check_file_id(file_id)
        if total_chunks < 1:
            raise UploadError(f"totalChunks must be at least 1 (got {total_chunks})")

        limit = self.settings.max_chunked_upload_bytes
        if total_size is not None and total_size > limit:
            raise UploadTooLargeError(
                f"File {file_name} is {total_size} bytes, exceeds the {limit} byte limit"
            )

        with self._lock:
            existing = self._sessions.get(file_id)
            if existing is not None:
                if existing.total_chunks != total_chunks:
                    raise UploadError(
                        f"Upload {file_id} already started with {existing.total_chunks} chunks"
                    )
                if existing.file_name != file_name:
                    raise UploadError(
                        f"Upload {file_id} already started for {existing.file_name!r}"
                    )
                if (
                    existing.total_size is not None
                    and total_size is not None
                    and existing.total_size != total_size
                ):
                    raise UploadError(
                        f"Upload {file_id} already started with {existing.total_size} bytes"
                    )
                existing.last_activity = time.monotonic()
                return existing

            assembly_dir = os.path.join(self.settings.chunk_directory, file_id)
            os.makedirs(assembly_dir, exist_ok=True)
            session = ChunkSession(
                file_id=file_id,
                file_name=file_name,
                total_chunks=total_chunks,
                assembly_dir=assembly_dir,
                total_size=total_size,
            )
            self._sessions[file_id] = session

        logger.info(f"Chunk session started: {file_id} ({file_name}, {total_chunks} chunks)")
        return session

    async def accept_chunk(self, file_id: str, index: int, data: bytes) -> ChunkStatus:
        """
        Store one chunk. A repeated index overwrites the earlier bytes.

        Raises:
            UploadError: Unknown session or index out of range
            UploadTooLargeError: Received bytes crossed the chunked ceiling
        """
        session = self.get_session(file_id)
        if session is None:
            raise UploadError(f"No upload session for {file_id}")
        if index < 0 or index >= session.total_chunks:
            raise UploadError(
                f"Chunk index {index} out of range for {session.total_chunks} chunks"
            )

        projected = session.bytes_received - session.chunk_sizes.get(index, 0) + len(data)
        if projected > self.settings.max_chunked_upload_bytes:
            self._drop_session(file_id)
            raise UploadTooLargeError(
                f"Upload {file_id} exceeds the {self.settings.max_chunked_upload_bytes} byte limit"
            )

        await asyncio.to_thread(Path(session.part_path(index)).write_bytes, data)

        duplicate = index in session.received
        session.received.add(index)
        session.chunk_sizes[index] = len(data)
        session.last_activity = time.monotonic()

        if duplicate:
            logger.debug(f"Chunk {index} of {file_id} received again, overwritten")
            return ChunkStatus.DUPLICATE
        return ChunkStatus.ACCEPTED

    async def finalize(self, file_id: str) -> UploadedFile:
        """
        Reassemble a complete chunk session into a source file.

        Raises:
            UploadError: Unknown session
            IncompleteUploadError: One or more chunk indices never arrived
        """
        session = self.get_session(file_id)
        if session is None:
            raise UploadError(f"No upload session for {file_id}")

        missing = session.missing
        if missing:
            raise IncompleteUploadError(file_id, missing)

        with self._lock:
            self._sessions.pop(file_id, None)

        target = os.path.join(
            self.settings.upload_directory,
            f"{file_id}-{safe_file_name(session.file_name)}",
        )
        try:
            size = await asyncio.to_thread(self._assemble, session, target)
        except BaseException:
            Path(target).unlink(missing_ok=True)
            raise
        finally:
            shutil.rmtree(session.assembly_dir, ignore_errors=True)

        uploaded = UploadedFile(
            file_id=file_id,
            path=target,
            original_name=session.file_name,
            size=size,
        )
        with self._lock:
            self._files[file_id] = uploaded

        logger.info(f"Upload finalized: {file_id} -> {target} ({size} bytes)")
        return uploaded

    def get_session(self, file_id: str) -> Optional[ChunkSession]:
        with self._lock:
            return self._sessions.get(file_id)

    def expire_sessions(self, max_idle_seconds: float) -> int:
        """Delete chunk sessions idle longer than ``max_idle_seconds``."""
        now = time.monotonic()
        with self._lock:
            stale = [
                file_id
                for file_id, session in self._sessions.items()
                if now - session.last_activity > max_idle_seconds
            ]
        for file_id in stale:
            self._drop_session(file_id)
        if stale:
            logger.info(f"Expired {len(stale)} abandoned chunk session(s)")
        return len(stale)

    def expire_uploads(self, max_age_seconds: float) -> int:
        """Delete finalized uploads no job claimed within ``max_age_seconds``."""
        now = time.monotonic()
        with self._lock:
            stale = [
                self._files.pop(file_id)
                for file_id, uploaded in list(self._files.items())
                if now - uploaded.stored_at > max_age_seconds
            ]
        self.discard(stale)
        if stale:
            logger.info(f"Expired {len(stale)} unclaimed upload(s)")
        return len(stale)

    # ------------------------------------------------------------------
    # Whole-file path
    # ------------------------------------------------------------------

    async def accept_whole(
        self,
        file_name: str,
        stream: BinaryIO,
        size: Optional[int] = None,
        register: bool = True,
    ) -> UploadedFile:
        """
        Persist a whole file from a readable binary stream.

        Args:
            file_name: Original client file name
            stream: Source of the bytes
            size: Declared size, checked before anything is written
            register: Keep the file claimable by id (False when the caller
                hands it straight to a job)

        Raises:
            UploadTooLargeError: Declared or actual size over the whole-file ceiling
        """
        limit = self.settings.max_whole_upload_bytes
        if size is not None and size > limit:
            raise UploadTooLargeError(
                f"File {file_name} is {size} bytes, exceeds the {limit} byte limit"
            )

        file_id = new_file_id()
        target = os.path.join(
            self.settings.upload_directory,
            f"{file_id}-{safe_file_name(file_name)}",
        )
        written = await asyncio.to_thread(self._copy_stream, stream, target, limit)

        uploaded = UploadedFile(
            file_id=file_id,
            path=target,
            original_name=file_name,
            size=written,
        )
        if register:
            with self._lock:
                self._files[file_id] = uploaded

        logger.info(f"Upload stored: {file_name} -> {target} ({written} bytes)")
        return uploaded

    # ------------------------------------------------------------------
    # Handoff
    # ------------------------------------------------------------------

    def claim(self, file_id: str) -> UploadedFile:
        """Hand a finalized upload to a job; each upload can be claimed once."""
        with self._lock:
            uploaded = self._files.pop(file_id, None)
        if uploaded is None:
            raise UploadError(f"Unknown upload id: {file_id}")
        return uploaded

    def discard(self, files: Iterable[UploadedFile]) -> None:
        """Delete files that will never reach a job."""
        for uploaded in files:
            with self._lock:
                self._files.pop(uploaded.file_id, None)
            try:
                Path(uploaded.path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to delete upload {uploaded.path}: {e}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_file_id(self, file_id: str) -> None:
        if not _FILE_ID_PATTERN.match(file_id or ""):
            raise UploadError(f"Invalid file id: {file_id!r}")

    def _drop_session(self, file_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(file_id, None)
        if session is not None:
            shutil.rmtree(session.assembly_dir, ignore_errors=True)

    def _assemble(self, session: ChunkSession, target: str) -> int:
        size = 0
        block = self.settings.upload_block_size
        with open(target, "wb") as out:
            for index in range(session.total_chunks):
                with open(session.part_path(index), "rb") as part:
                    while True:
                        data = part.read(block)
                        if not data:
                            break
                        out.write(data)
                        size += len(data)
        return size

    def _copy_stream(self, stream: BinaryIO, target: str, limit: int) -> int:
        written = 0
        block = self.settings.upload_block_size
        try:
            with open(target, "wb") as out:
                while True:
                    data = stream.read(block)
                    if not data:
                        break
                    written += len(data)
                    if written > limit:
                        raise UploadTooLargeError(f"Upload exceeds the {limit} byte limit")
                    out.write(data)
        except BaseException:
            Path(target).unlink(missing_ok=True)
            raise
        return written
