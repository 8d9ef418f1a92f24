"""
Chunked file transfer over an open data channel.

Each file travels as a `META:` control message, a run of binary chunks and
an end marker. With file tagging enabled (the default) the metadata carries
an integer `id`, every chunk is prefixed with that id as a 4-byte big-endian
integer and the end marker reads `EOF:<id>`, so the receiver can keep several
files open at once. Untagged peers send bare chunks and a bare `EOF`, and the
receiver falls back to a single active file.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import mimetypes
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    BinaryIO,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Union,
)

from .errors import ChannelNotOpen, ProtocolViolation, TransferCancelled
from .transport import DataChannel, Message

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
HIGH_WATER_MARK = 2 * 1024 * 1024
POLL_INTERVAL = 0.1
META_PREFIX = "META:"
END_MARKER = "EOF"
END_MARKER_PREFIX = END_MARKER + ":"
ABORT_MARKER = "ABORT"
ABORT_MARKER_PREFIX = ABORT_MARKER + ":"
DEFAULT_MIME_TYPE = "application/octet-stream"
# Progress never reads 100% until the end marker has been seen.
PROGRESS_CAP = 99.0

FILE_ID = struct.Struct(">I")

ProgressCallback = Callable[["TransferProgress"], None]


@dataclass(frozen=True)
class FileMetadata:
    """Declared once per file by the sender."""

    name: str
    mime_type: str
    size: int
    file_id: Optional[int] = None

    def to_message(self) -> str:
        payload: Dict[str, object] = {
            "name": self.name,
            "type": self.mime_type,
            "size": self.size,
        }
        if self.file_id is not None:
            payload["id"] = self.file_id
        return META_PREFIX + json.dumps(payload, ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_message(cls, message: str) -> "FileMetadata":
        try:
            payload = json.loads(message[len(META_PREFIX):])
        except json.JSONDecodeError as exc:
            raise ProtocolViolation(f"metadata is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ProtocolViolation("metadata must be a JSON object")
        name_raw = payload.get("name")
        name = os.path.basename(name_raw) if isinstance(name_raw, str) else ""
        if not name:
            raise ProtocolViolation("metadata is missing a file name")
        size = payload.get("size")
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise ProtocolViolation(f"metadata has invalid size {size!r}")
        mime_raw = payload.get("type")
        mime_type = mime_raw if isinstance(mime_raw, str) and mime_raw else DEFAULT_MIME_TYPE
        file_id = payload.get("id")
        if file_id is not None and (isinstance(file_id, bool) or not isinstance(file_id, int)):
            raise ProtocolViolation(f"metadata has invalid id {file_id!r}")
        return cls(name=name, mime_type=mime_type, size=size, file_id=file_id)


@dataclass
class TransferProgress:
    """Per-file, per-side byte counter."""

    name: str
    bytes_seen: int
    size: int
    completed: bool = False

    @property
    def percent(self) -> float:
        if self.completed:
            return 100.0
        if self.size <= 0:
            return 0.0
        return min(self.bytes_seen / self.size * 100.0, PROGRESS_CAP)

    def snapshot(self) -> "TransferProgress":
        return TransferProgress(self.name, self.bytes_seen, self.size, self.completed)


@dataclass(frozen=True)
class ReceivedFile:
    name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


FileSink = Callable[[ReceivedFile], object]


def guess_mime_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or DEFAULT_MIME_TYPE


def _iter_handle(handle: BinaryIO, chunk_size: int) -> Iterator[bytes]:
    while True:
        chunk = handle.read(chunk_size)
        if not chunk:
            break
        yield chunk


def _iter_bytes(data: bytes, chunk_size: int) -> Iterator[bytes]:
    view = memoryview(data)
    for offset in range(0, len(data), chunk_size):
        yield bytes(view[offset : offset + chunk_size])


class FileSender:
    """Streams files over the channel, one file at a time."""

    def __init__(
        self,
        channel: DataChannel,
        *,
        chunk_size: int = CHUNK_SIZE,
        high_water_mark: int = HIGH_WATER_MARK,
        poll_interval: float = POLL_INTERVAL,
        tag_files: bool = True,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        if tag_files and chunk_size <= FILE_ID.size:
            raise ValueError(f"chunk_size must exceed the {FILE_ID.size}-byte file id when tagging")
        self.channel = channel
        self.chunk_size = chunk_size
        self.high_water_mark = high_water_mark
        self.poll_interval = poll_interval
        self.tag_files = tag_files
        self.progress_cb = progress_cb
        self._ids = itertools.count(1)
        self._cancel_event = asyncio.Event()
        self._progress: Dict[str, TransferProgress] = {}

    @property
    def payload_size(self) -> int:
        """File bytes per chunk; `chunk_size` bounds the whole channel message."""

        return self.chunk_size - FILE_ID.size if self.tag_files else self.chunk_size

    def progress(self, name: str) -> Optional[TransferProgress]:
        entry = self._progress.get(name)
        return entry.snapshot() if entry else None

    def cancel(self) -> None:
        """Stop the in-flight send at the next chunk boundary.

        Only the send running at the time is affected; later sends start clean.
        """

        self._cancel_event.set()

    async def send(self, path: Union[str, Path], *, mime_type: Optional[str] = None) -> FileMetadata:
        file_path = Path(path)
        self._require_open()
        if not file_path.is_file():
            raise FileNotFoundError(f"not a file: {file_path}")
        size = file_path.stat().st_size
        metadata = self._metadata(file_path.name, mime_type or guess_mime_type(file_path), size)
        with file_path.open("rb") as handle:
            await self._stream(metadata, _iter_handle(handle, self.payload_size))
        return metadata

    async def send_bytes(
        self, name: str, data: bytes, mime_type: str = DEFAULT_MIME_TYPE
    ) -> FileMetadata:
        self._require_open()
        metadata = self._metadata(name, mime_type, len(data))
        await self._stream(metadata, _iter_bytes(data, self.payload_size))
        return metadata

    async def send_many(self, paths: Sequence[Union[str, Path]]) -> List[FileMetadata]:
        """Send files strictly one after another."""

        sent: List[FileMetadata] = []
        for path in paths:
            sent.append(await self.send(path))
        return sent

    async def flush(self) -> None:
        """Wait until everything queued on the channel has been handed off."""

        while self.channel.is_open and self.channel.buffered_amount > 0:
            await asyncio.sleep(self.poll_interval)

    # Internal helpers -------------------------------------------------

    def _require_open(self) -> None:
        if not self.channel.is_open:
            raise ChannelNotOpen("data channel is not open")

    def _metadata(self, name: str, mime_type: str, size: int) -> FileMetadata:
        file_id = next(self._ids) if self.tag_files else None
        return FileMetadata(name=name, mime_type=mime_type, size=size, file_id=file_id)

    async def _stream(self, metadata: FileMetadata, chunks: Iterable[bytes]) -> None:
        progress = TransferProgress(metadata.name, 0, metadata.size)
        self._progress[metadata.name] = progress
        header = FILE_ID.pack(metadata.file_id) if metadata.file_id is not None else b""
        self._cancel_event.clear()

        self.channel.send(metadata.to_message())
        self._report(progress)
        for chunk in chunks:
            await self._wait_for_drain()
            if self._cancel_event.is_set():
                self._abort(metadata)
                raise TransferCancelled(metadata.name)
            self._require_open()
            self.channel.send(header + chunk if header else chunk)
            progress.bytes_seen += len(chunk)
            self._report(progress)

        if metadata.file_id is not None:
            self.channel.send(f"{END_MARKER_PREFIX}{metadata.file_id}")
        else:
            self.channel.send(END_MARKER)
        progress.completed = True
        self._report(progress)
        logger.debug("sent %s (%d bytes)", metadata.name, progress.bytes_seen)

    def _abort(self, metadata: FileMetadata) -> None:
        self._progress.pop(metadata.name, None)
        if not self.channel.is_open:
            return
        if metadata.file_id is not None:
            self.channel.send(f"{ABORT_MARKER_PREFIX}{metadata.file_id}")
        else:
            self.channel.send(ABORT_MARKER)
        logger.info("cancelled %s", metadata.name)

    async def _wait_for_drain(self) -> None:
        while self.channel.buffered_amount > self.high_water_mark:
            if self._cancel_event.is_set():
                return
            await asyncio.sleep(self.poll_interval)

    def _report(self, progress: TransferProgress) -> None:
        if self.progress_cb:
            self.progress_cb(progress.snapshot())


@dataclass
class _Reception:
    metadata: FileMetadata
    progress: TransferProgress
    chunks: List[bytes] = field(default_factory=list)
    bytes_seen: int = 0


class FileReceiver:
    """Reassembles files from channel messages and hands them to a sink."""

    def __init__(
        self,
        sink: Optional[FileSink] = None,
        *,
        progress_cb: Optional[ProgressCallback] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        on_abort: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.sink = sink
        self.progress_cb = progress_cb
        self.on_error = on_error
        self.on_abort = on_abort
        self.received: List[ReceivedFile] = []
        self.errors: List[Exception] = []
        self._tagged: Dict[int, _Reception] = {}
        self._active: Optional[_Reception] = None
        self._progress: Dict[str, TransferProgress] = {}

    def attach(self, channel: DataChannel) -> None:
        """Route a channel's messages here, recording protocol failures."""

        channel.on_message(self._handle_channel_message)

    def progress(self, name: str) -> Optional[TransferProgress]:
        entry = self._progress.get(name)
        return entry.snapshot() if entry else None

    @property
    def in_flight(self) -> List[str]:
        names = [reception.metadata.name for reception in self._tagged.values()]
        if self._active is not None:
            names.append(self._active.metadata.name)
        return names

    def on_message(self, message: Message) -> None:
        if isinstance(message, str):
            if message.startswith(META_PREFIX):
                self._open(FileMetadata.from_message(message))
                return
            if message == END_MARKER:
                self._finish_active()
                return
            if message.startswith(END_MARKER_PREFIX):
                self._finish_tagged(message[len(END_MARKER_PREFIX):])
                return
            if message == ABORT_MARKER:
                self._abort_active()
                return
            if message.startswith(ABORT_MARKER_PREFIX):
                self._abort_tagged(message[len(ABORT_MARKER_PREFIX):])
                return
            raise ProtocolViolation(f"unexpected control message {message[:32]!r}")
        if isinstance(message, (bytes, bytearray, memoryview)):
            self._append(bytes(message))
            return
        raise ProtocolViolation(f"unsupported message type {type(message).__name__}")

    # Internal helpers -------------------------------------------------

    def _handle_channel_message(self, message: Message) -> None:
        try:
            self.on_message(message)
        except ProtocolViolation as exc:
            logger.error("transfer protocol violation: %s", exc)
            self.errors.append(exc)
            if self.on_error:
                self.on_error(exc)

    def _open(self, metadata: FileMetadata) -> None:
        reception = _Reception(metadata, TransferProgress(metadata.name, 0, metadata.size))
        if metadata.file_id is not None:
            if metadata.file_id in self._tagged:
                raise ProtocolViolation(f"file id {metadata.file_id} is already open")
            self._tagged[metadata.file_id] = reception
        else:
            if self._active is not None:
                logger.warning(
                    "metadata for %s arrived before %s finished; discarding %d buffered bytes",
                    metadata.name,
                    self._active.metadata.name,
                    self._active.bytes_seen,
                )
                self._release(self._active)
            self._active = reception
        self._progress[metadata.name] = reception.progress
        self._report(reception.progress)

    def _append(self, message: bytes) -> None:
        if self._tagged:
            if len(message) < FILE_ID.size:
                raise ProtocolViolation("tagged chunk is shorter than its header")
            (file_id,) = FILE_ID.unpack_from(message)
            reception = self._tagged.get(file_id)
            if reception is None:
                raise ProtocolViolation(f"chunk for unknown file id {file_id}")
            data = message[FILE_ID.size:]
        else:
            reception = self._active
            if reception is None:
                raise ProtocolViolation("binary chunk received with no file open")
            data = message
        if reception.bytes_seen + len(data) > reception.metadata.size:
            raise ProtocolViolation(
                f"{reception.metadata.name} exceeds its declared size of "
                f"{reception.metadata.size} bytes"
            )
        reception.chunks.append(data)
        reception.bytes_seen += len(data)
        reception.progress.bytes_seen = reception.bytes_seen
        self._report(reception.progress)

    def _finish_active(self) -> None:
        reception, self._active = self._active, None
        if reception is None:
            raise ProtocolViolation("end marker received with no file open")
        self._finalize(reception)

    def _finish_tagged(self, raw_id: str) -> None:
        self._finalize(self._pop_tagged(raw_id, "end marker"))

    def _abort_active(self) -> None:
        reception, self._active = self._active, None
        if reception is None:
            raise ProtocolViolation("abort received with no file open")
        self._discard(reception)

    def _abort_tagged(self, raw_id: str) -> None:
        self._discard(self._pop_tagged(raw_id, "abort"))

    def _pop_tagged(self, raw_id: str, what: str) -> _Reception:
        try:
            file_id = int(raw_id)
        except ValueError as exc:
            raise ProtocolViolation(f"invalid {what} id {raw_id!r}") from exc
        reception = self._tagged.pop(file_id, None)
        if reception is None:
            raise ProtocolViolation(f"{what} for unknown file id {file_id}")
        return reception

    def _discard(self, reception: _Reception) -> None:
        logger.info(
            "sender cancelled %s after %d bytes", reception.metadata.name, reception.bytes_seen
        )
        self._release(reception)
        if self.on_abort:
            self.on_abort(reception.metadata.name)

    def _release(self, reception: _Reception) -> None:
        reception.chunks.clear()
        if self._progress.get(reception.metadata.name) is reception.progress:
            del self._progress[reception.metadata.name]

    def _finalize(self, reception: _Reception) -> None:
        metadata = reception.metadata
        received = ReceivedFile(
            name=metadata.name,
            mime_type=metadata.mime_type,
            data=b"".join(reception.chunks),
        )
        if received.size != metadata.size:
            logger.warning(
                "%s finished with %d of %d declared bytes",
                metadata.name,
                received.size,
                metadata.size,
            )
        self.received.append(received)
        reception.progress.completed = True
        self._report(reception.progress)
        self._release(reception)
        if self.sink:
            self.sink(received)

    def _report(self, progress: TransferProgress) -> None:
        if self.progress_cb:
            self.progress_cb(progress.snapshot())


class DirectorySink:
    """Save/download collaborator that writes received files into a directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.saved: List[Path] = []

    def __call__(self, received: ReceivedFile) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self._prepare_destination(self.directory, received.name)
        target.write_bytes(received.data)
        self.saved.append(target)
        logger.info("saved %s (%d bytes)", target, received.size)
        return target

    @staticmethod
    def _prepare_destination(directory: Path, filename: str) -> Path:
        target = directory / os.path.basename(filename)
        if not target.exists():
            return target
        stem = target.stem
        suffix = target.suffix
        counter = 1
        while True:
            candidate = directory / f"{stem}({counter}){suffix}"
            if not candidate.exists():
                return candidate
            counter += 1


__all__ = [
    "ABORT_MARKER",
    "CHUNK_SIZE",
    "DEFAULT_MIME_TYPE",
    "DirectorySink",
    "END_MARKER",
    "FILE_ID",
    "FileMetadata",
    "FileReceiver",
    "FileSender",
    "HIGH_WATER_MARK",
    "META_PREFIX",
    "POLL_INTERVAL",
    "PROGRESS_CAP",
    "ReceivedFile",
    "TransferProgress",
    "guess_mime_type",
]
