"""
Persisted Host State

Versioned binary snapshot of the host fields that must survive a BMC reboot.
Writes go to a temporary file that is fsync'd and renamed over the old
snapshot, so a power cut leaves either the old or the new record.

On-disk layout (little endian):
    magic   b"SMHS"
    version u32
    v2 only: retry_attempts u32
    requested_transition, boot_progress, os_status  (u32 length + utf-8)
    boot_progress_last_update u64
    restart_cause                                   (u32 length + utf-8)

Every older version is upgraded to the canonical PersistedRecord on load;
fields a version did not carry get sane defaults.
"""

import fcntl
import io
import os
import struct
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Callable

from .logging_setup import get_service_logger

logger = get_service_logger("host.persist")

MAGIC = b"SMHS"


class RecordVersion(IntEnum):
    """Snapshot schema versions"""
    V1 = 1  # no retry-attempts field
    V2 = 2  # adds retry attempts

    @classmethod
    def current(cls) -> "RecordVersion":
        return cls.V2


@dataclass
class PersistedRecord:
    """Canonical in-memory form of a host snapshot"""
    requested_transition: str
    boot_progress: str
    os_status: str
    boot_progress_last_update: int
    restart_cause: str
    retry_attempts: int


class _Reader:
    def __init__(self, data: bytes):
        self._buf = io.BytesIO(data)

    def _take(self, size: int) -> bytes:
        chunk = self._buf.read(size)
        if len(chunk) != size:
            raise ValueError("truncated record")
        return chunk

    def u32(self) -> int:
        return struct.unpack("<I", self._take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self._take(8))[0]

    def text(self) -> str:
        return self._take(self.u32()).decode("utf-8")

    def at_end(self) -> bool:
        return self._buf.read(1) == b""


def _pack_text(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def _read_common(reader: _Reader) -> dict:
    requested = reader.text()
    progress = reader.text()
    os_status = reader.text()
    last_update = reader.u64()
    restart_cause = reader.text()
    return {
        "requested_transition": requested,
        "boot_progress": progress,
        "os_status": os_status,
        "boot_progress_last_update": last_update,
        "restart_cause": restart_cause,
    }


def _upgrade_v1(reader: _Reader, default_retry_attempts: int) -> PersistedRecord:
    return PersistedRecord(**_read_common(reader), retry_attempts=default_retry_attempts)


def _upgrade_v2(reader: _Reader, default_retry_attempts: int) -> PersistedRecord:
    retry_attempts = reader.u32()
    return PersistedRecord(**_read_common(reader), retry_attempts=retry_attempts)


_UPGRADERS: dict[RecordVersion, Callable[[_Reader, int], PersistedRecord]] = {
    RecordVersion.V1: _upgrade_v1,
    RecordVersion.V2: _upgrade_v2,
}


def encode_record(
    record: PersistedRecord,
    version: RecordVersion = RecordVersion.V2,
) -> bytes:
    """Serialize a record in the given schema version"""
    out = MAGIC + struct.pack("<I", int(version))
    if version >= RecordVersion.V2:
        out += struct.pack("<I", record.retry_attempts)
    out += _pack_text(record.requested_transition)
    out += _pack_text(record.boot_progress)
    out += _pack_text(record.os_status)
    out += struct.pack("<Q", record.boot_progress_last_update)
    out += _pack_text(record.restart_cause)
    return out


def decode_record(data: bytes, default_retry_attempts: int) -> PersistedRecord:
    """
    Deserialize any known schema version into the canonical record.

    Raises:
        ValueError: bad magic, unknown version, truncated or trailing data
    """
    if data[:4] != MAGIC:
        raise ValueError("bad magic")

    reader = _Reader(data[4:])
    try:
        version = RecordVersion(reader.u32())
    except ValueError as e:
        raise ValueError(f"unsupported record version: {e}") from e

    record = _UPGRADERS[version](reader, default_retry_attempts)
    if not reader.at_end():
        raise ValueError("trailing data after record")
    return record


class HostStateStore:
    """File-backed snapshot store for one host instance"""

    def __init__(self, directory: str | Path, host_id: int):
        self.path = Path(directory) / f"host{host_id}.bin"

    def save(self, record: PersistedRecord) -> Path:
        """Write the snapshot atomically"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")

        with open(temp_path, "wb") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(encode_record(record))
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

        temp_path.replace(self.path)
        logger.debug(f"Host state persisted to {self.path}")
        return self.path

    def load(self, default_retry_attempts: int) -> PersistedRecord | None:
        """
        Read the snapshot.

        Returns:
            The upgraded record, or None when there is no usable snapshot
        """
        if not self.path.exists():
            return None

        try:
            data = self.path.read_bytes()
            return decode_record(data, default_retry_attempts)
        except (OSError, ValueError, UnicodeDecodeError) as e:
            logger.error(
                f"Discarding unreadable host state {self.path}: {e}",
                extra={"path": str(self.path)},
            )
            return None
