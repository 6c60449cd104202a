"""
zstd compression and tar.zst archives.

Dumps are compressed chunk by chunk as they arrive from the container, and
archives are written through a streaming tarfile, so nothing is held in
memory whole. Files are written with a content checksum so verify() can
detect corruption, and they stay readable by `zstd -d` and `tar --zstd`.
"""

import io
import logging
import shutil
import tarfile
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable, Iterable, Iterator, Optional

import zstandard

from .errors import ExecutionError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
DEFAULT_LEVEL = 3

SQL_SUFFIX = '.sql.zst'
ARCHIVE_SUFFIX = '.tar.zst'


class _IterReader(io.RawIOBase):
    """Read-only file object over an iterator of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._buffer = b''

    def readable(self):
        return True

    def readinto(self, b):
        while not self._buffer:
            try:
                self._buffer = next(self._chunks)
            except StopIteration:
                return 0
        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        self._buffer = self._buffer[n:]
        return n


def _compressor(level: int) -> zstandard.ZstdCompressor:
    return zstandard.ZstdCompressor(level=level, write_checksum=True)


def _extract_member(tar: tarfile.TarFile, member: tarfile.TarInfo, dest: Path) -> None:
    # Links are kept as they are, like docker cp. Member names still may not
    # leave dest.
    if hasattr(tarfile, 'tar_filter'):
        tar.extract(member, dest, filter='tar')
    else:
        tar.extract(member, dest)


# =============================================================================
# SINGLE STREAMS (.sql.zst)
# =============================================================================

def compress_stream(chunks: Iterable[bytes], dest: Path, level: int = DEFAULT_LEVEL) -> int:
    """Compress an iterable of chunks into dest. Returns uncompressed bytes.

    dest is removed again if the source raises part way through.
    """
    dest = Path(dest)
    total = 0
    try:
        with open(dest, 'wb') as fh:
            with _compressor(level).stream_writer(fh, closefd=False) as writer:
                for chunk in chunks:
                    writer.write(chunk)
                    total += len(chunk)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    return total


def decompress_stream(source: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield decompressed chunks of a .zst file."""
    with open(source, 'rb') as fh:
        reader = zstandard.ZstdDecompressor().stream_reader(fh, read_across_frames=True)
        with reader:
            while True:
                chunk = reader.read(chunk_size)
                if not chunk:
                    break
                yield chunk


def verify(path: Path) -> bool:
    """zstd integrity check: the whole file must decompress cleanly."""
    path = Path(path)
    try:
        if path.stat().st_size == 0:
            return False
        for _ in decompress_stream(path):
            pass
    except (zstandard.ZstdError, OSError) as e:
        logger.debug(f"Integrity check failed for {path}: {e}")
        return False
    return True


# =============================================================================
# ARCHIVES (.tar.zst)
# =============================================================================

def create_archive(source: Path, dest: Path, arcname: Optional[str] = None,
                   level: int = DEFAULT_LEVEL,
                   exclude: Optional[Callable[[str], bool]] = None) -> Path:
    """tar --zstd -cf dest -C source.parent source.name

    exclude receives each member name and drops it when it returns True.
    """
    source, dest = Path(source), Path(dest)
    arcname = arcname or source.name

    def _filter(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        if exclude and exclude(info.name):
            return None
        return info

    try:
        with open(dest, 'wb') as fh:
            with _compressor(level).stream_writer(fh, closefd=False) as writer:
                with tarfile.open(fileobj=writer, mode='w|') as tar:
                    tar.add(str(source), arcname=arcname, filter=_filter)
    except (OSError, tarfile.TarError, zstandard.ZstdError) as e:
        dest.unlink(missing_ok=True)
        raise ExecutionError(f"Failed to archive {source}: {e}") from e
    return dest


def extract_archive(archive: Path, dest: Path) -> None:
    """tar --zstd -xf archive -C dest"""
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with open(archive, 'rb') as fh:
            reader = zstandard.ZstdDecompressor().stream_reader(fh, read_across_frames=True)
            with reader, tarfile.open(fileobj=reader, mode='r|') as tar:
                for member in tar:
                    _extract_member(tar, member, dest)
    except (OSError, tarfile.TarError, zstandard.ZstdError) as e:
        raise ExecutionError(f"Failed to extract {archive}: {e}") from e


def archive_top_level(archive: Path) -> Optional[str]:
    """Name of the first top-level entry of an archive."""
    with open(archive, 'rb') as fh:
        reader = zstandard.ZstdDecompressor().stream_reader(fh, read_across_frames=True)
        with reader, tarfile.open(fileobj=reader, mode='r|') as tar:
            for member in tar:
                return PurePosixPath(member.name).parts[0]
    return None


# =============================================================================
# CONTAINER COPY STREAMS
# =============================================================================

def _rename_top(name: str, new_top: str) -> str:
    parts = PurePosixPath(name).parts
    if not parts:
        return new_top
    return str(PurePosixPath(new_top, *parts[1:]))


def extract_tar_stream(chunks: Iterable[bytes], dest_dir: Path, rename_to: str) -> Path:
    """Unpack a `docker cp` style tar stream into dest_dir/rename_to.

    The stream's top-level entry (the basename of the copied path) is renamed,
    which gives the same result as `docker cp container:path dest_dir/rename_to`.
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    target = dest_dir / rename_to
    try:
        with tarfile.open(fileobj=io.BufferedReader(_IterReader(chunks), CHUNK_SIZE), mode='r|') as tar:
            for member in tar:
                member.name = _rename_top(member.name, rename_to)
                if member.islnk():
                    member.linkname = _rename_top(member.linkname, rename_to)
                _extract_member(tar, member, dest_dir)
    except (OSError, tarfile.TarError) as e:
        shutil.rmtree(target, ignore_errors=True)
        raise ExecutionError(f"Failed to unpack copied data into {target}: {e}") from e
    return target


def pack_directory_contents(source: Path, fileobj: BinaryIO) -> BinaryIO:
    """Tar the contents of source (not source itself) into fileobj.

    Equivalent to the stream `docker cp source/. container:path` sends.
    The file object is rewound and returned.
    """
    source = Path(source)
    entries = sorted(source.iterdir())
    with tarfile.open(fileobj=fileobj, mode='w') as tar:
        for entry in entries:
            tar.add(str(entry), arcname=entry.name)
    fileobj.seek(0)
    return fileobj
