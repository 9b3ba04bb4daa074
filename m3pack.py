#!/usr/bin/env python3
"""Helpers for patching the encrypted M3 asset archives with upscaled images.

An M3 archive starts with a directory header made of 32-bit words, usually
obscured by a linear congruential keystream.  The header lists entries, each
entry groups a handful of sub-entries (cube faces, spot items, frames, movies,
text...) and every payload-bearing sub-entry points at a blob stored after the
header.

Two subcommands are provided:

```
python m3pack.py patch <input_dir> <upscaled_dir> <output_dir> <archive> [--names]
python m3pack.py info <archive> [--names]
```

The *patch* command rewrites ``<input_dir>/<archive>`` into
``<output_dir>/<archive>``.  Image payloads are replaced with pre-upscaled
JPEG files found under ``<upscaled_dir>`` (see :func:`replacement_file_name`
for the naming scheme) or, when no such file exists, upscaled on the fly with
Pillow.  Spot item coordinates are rescaled by the same factor and the payload
region is recompacted so the offset table stays consistent.  The header keeps
its original size and cipher mode.

The *info* command decodes the directory and prints it, which is handy when
looking for the entry names expected by the replacement lookup.
"""

from __future__ import annotations

import argparse
import enum
import io
import logging
import mmap
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

Image = None
UnidentifiedImageError = Exception
PIL_AVAILABLE = False
try:  # pragma: no cover - Pillow availability depends on the environment.
    from PIL import Image, UnidentifiedImageError

    PIL_AVAILABLE = True
except Exception:  # pragma: no cover - Pillow availability depends on the environment.
    pass

LOGGER = logging.getLogger("m3pack")

# Keystream constants of the header cipher.
ADD_KEY = 0x3C6EF35F
MULT_KEY = 0x0019660D
WORD_MASK = 0xFFFFFFFF

# A plaintext header never declares that many words; XOR-obscured sizes almost
# always do.  Sizes strictly greater than this are treated as encrypted.
ENCRYPTION_THRESHOLD = 1_000_000

UPSCALE_FACTOR = int(os.environ.get("M3PACK_UPSCALE_FACTOR", 4))
JPEG_QUALITY = int(os.environ.get("M3PACK_JPEG_QUALITY", 100))

# Files above this size will be memory-mapped instead of fully loaded into RAM.
MEMORY_MAP_THRESHOLD = int(os.environ.get("M3PACK_MEMORY_MAP_THRESHOLD", 256 * 1024 * 1024))

WORD_SIZE = 4
ENTRY_NAME_SIZE = 4
SUB_ENTRY_HEADER_SIZE = 12

_FIXED_FORMATS = {1: "<B", 2: "<H", 4: "<I"}

CUBE_FACE_SUFFIXES = ("", "back", "bottom", "front", "left", "right", "top")

# Replacement files for localized assets use the code of the matching
# non-localized variant shifted by this amount.
LOCALIZED_NAME_OFFSET = 24


class M3PackError(RuntimeError):
    """Base class for errors raised while processing an archive."""


class OutOfBoundsError(M3PackError):
    """Raised when a structured read or write would leave the buffer."""


class IntegrityError(M3PackError):
    """Raised when the header size disagrees with the data it describes."""


class ImageCodecError(M3PackError):
    """Raised when an image payload cannot be decoded, resized or encoded."""


class ArchiveAccessError(M3PackError):
    """Raised when an archive cannot be read from or written to disk."""


class ResourceType(enum.IntEnum):
    CUBE_FACE = 0
    WATER_EFFECT_MASK = 1
    LAVA_EFFECT_MASK = 2
    MAGNETIC_EFFECT_MASK = 3
    SHIELD_EFFECT_MASK = 4
    SPOT_ITEM = 5
    FRAME = 6
    RAW_DATA = 7
    MOVIE = 8
    STILL_MOVIE = 10
    TEXT = 11
    TEXT_METADATA = 12
    NUM_METADATA = 13
    LOCALIZED_SPOT_ITEM = 69
    LOCALIZED_FRAME = 70
    MULTITRACK_MOVIE = 72
    DIALOG_MOVIE = 74


RESOURCE_TYPE_NAMES: Dict[ResourceType, str] = {
    ResourceType.CUBE_FACE: "kCubeFace",
    ResourceType.WATER_EFFECT_MASK: "kWaterEffectMask",
    ResourceType.LAVA_EFFECT_MASK: "kLavaEffectMask",
    ResourceType.MAGNETIC_EFFECT_MASK: "kMagneticEffectMask",
    ResourceType.SHIELD_EFFECT_MASK: "kShieldEffectMask",
    ResourceType.SPOT_ITEM: "kSpotItem",
    ResourceType.FRAME: "kFrame",
    ResourceType.RAW_DATA: "kRawData",
    ResourceType.MOVIE: "kMovie",
    ResourceType.STILL_MOVIE: "kStillMovie",
    ResourceType.TEXT: "kText",
    ResourceType.TEXT_METADATA: "kTextMetadata",
    ResourceType.NUM_METADATA: "kNumMetadata",
    ResourceType.LOCALIZED_SPOT_ITEM: "kLocalizedSpotItem",
    ResourceType.LOCALIZED_FRAME: "kLocalizedFrame",
    ResourceType.MULTITRACK_MOVIE: "kMultitrackMovie",
    ResourceType.DIALOG_MOVIE: "kDialogMovie",
}

# These records store auxiliary values in the offset/size fields.
METADATA_ONLY_TYPES = frozenset({ResourceType.TEXT_METADATA, ResourceType.NUM_METADATA})
SPOT_ITEM_TYPES = frozenset({ResourceType.SPOT_ITEM, ResourceType.LOCALIZED_SPOT_ITEM})


def resource_type_name(code: int) -> str:
    """Return the display name of a resource type code."""

    try:
        return RESOURCE_TYPE_NAMES[ResourceType(code)]
    except ValueError:
        return "Unknown"


def _coerce_resource_type(code: int) -> int:
    try:
        return ResourceType(code)
    except ValueError:
        return code


class ByteCursor:
    """Sequential little-endian reader/writer over a fixed-size buffer."""

    def __init__(self, data: bytes | bytearray | int) -> None:
        # An int allocates a zero-filled buffer of that size.
        self.data = bytearray(data)
        self.position = 0

    def __len__(self) -> int:
        return len(self.data)

    def remaining(self) -> int:
        return len(self.data) - self.position

    def has_record(self, width: int = WORD_SIZE) -> bool:
        """Return True while more than *width* bytes are left to decode."""

        return self.position + width < len(self.data)

    def _claim(self, width: int) -> int:
        start = self.position
        if width < 0 or start + width > len(self.data):
            raise OutOfBoundsError(
                f"access of {width} byte(s) at offset {start} exceeds buffer of {len(self.data)} byte(s)"
            )
        self.position = start + width
        return start

    def read_fixed(self, width: int) -> int:
        fmt = _FIXED_FORMATS[width]
        start = self._claim(width)
        return struct.unpack_from(fmt, self.data, start)[0]

    def write_fixed(self, width: int, value: int) -> None:
        fmt = _FIXED_FORMATS[width]
        if not 0 <= value < 1 << (8 * width):
            raise IntegrityError(f"value {value} does not fit in a {width}-byte field")
        start = self._claim(width)
        struct.pack_into(fmt, self.data, start, value)

    def read24(self) -> int:
        start = self._claim(3)
        low, high = struct.unpack_from("<HB", self.data, start)
        return low | (high << 16)

    def write24(self, value: int) -> None:
        if not 0 <= value <= 0xFFFFFF:
            raise IntegrityError(f"value {value} does not fit in a 3-byte field")
        start = self._claim(3)
        struct.pack_into("<HB", self.data, start, value & 0xFFFF, (value >> 16) & 0xFF)

    def read_bytes(self, size: int) -> bytes:
        start = self._claim(size)
        return bytes(self.data[start : start + size])

    def write_bytes(self, payload: bytes) -> None:
        start = self._claim(len(payload))
        self.data[start : start + len(payload)] = payload

    def read_string(self, size: int) -> str:
        return self.read_bytes(size).decode("latin-1")

    def write_string(self, text: str, max_size: int) -> None:
        """Write *text* truncated or zero-padded to exactly *max_size* bytes."""

        encoded = text.encode("latin-1", errors="replace")[:max_size]
        self.write_bytes(encoded.ljust(max_size, b"\x00"))


# --------------------------------------------------------------- cipher --


def is_encrypted_size(declared_size: int) -> bool:
    return declared_size > ENCRYPTION_THRESHOLD


def keystream(word_count: int) -> Iterator[int]:
    """Yield the header keystream, one 32-bit key per word."""

    key = 0
    for _ in range(word_count):
        key = (key + ADD_KEY) & WORD_MASK
        yield key
        key = (key * MULT_KEY) & WORD_MASK


def apply_keystream(data: bytes) -> bytes:
    """XOR *data* word-by-word with the keystream.

    The transform is its own inverse, so it both encrypts and decrypts.
    """

    if len(data) % WORD_SIZE:
        raise IntegrityError("header length is not a multiple of the word size")
    word_count = len(data) // WORD_SIZE
    words = struct.unpack(f"<{word_count}I", data)
    mixed = [word ^ key for word, key in zip(words, keystream(word_count))]
    return struct.pack(f"<{word_count}I", *mixed)


def decrypt_header(raw: bytes | mmap.mmap) -> Tuple[bytes, bool]:
    """Return the plaintext header found at the start of *raw*.

    The second item tells whether the header was encrypted.  Data following
    the header (the payload region) is ignored.
    """

    if len(raw) < WORD_SIZE:
        raise IntegrityError("archive is too short to hold a directory header")

    declared_size = struct.unpack_from("<I", raw, 0)[0]
    encrypted = is_encrypted_size(declared_size)
    word_count = declared_size ^ ADD_KEY if encrypted else declared_size
    header_size = word_count * WORD_SIZE
    if header_size > len(raw):
        raise IntegrityError(
            f"header declares {word_count} word(s) but only {len(raw)} byte(s) are available"
        )

    header = bytes(raw[:header_size])
    if encrypted:
        return apply_keystream(header), True
    return header, False


def encrypt_header(plain: bytes, encrypted: bool) -> bytes:
    if len(plain) % WORD_SIZE:
        raise IntegrityError("header length is not a multiple of the word size")
    if encrypted:
        return apply_keystream(plain)
    return bytes(plain)


# ------------------------------------------------------------- directory --


@dataclass
class SubEntry:
    offset: int
    size: int
    resource_type: int
    face: int = 0
    metadata: List[int] = field(default_factory=list)
    payload: Optional[bytes] = field(default=None, compare=False, repr=False)

    @property
    def type_name(self) -> str:
        return resource_type_name(self.resource_type)

    @property
    def carries_payload(self) -> bool:
        """True when offset/size point at a non-empty blob in the archive."""

        return self.resource_type not in METADATA_ONLY_TYPES and self.size > 0


@dataclass
class Entry:
    index: int
    sub_entries: List[SubEntry] = field(default_factory=list)
    name: Optional[str] = None


@dataclass
class Directory:
    word_count: int
    encrypted: bool = False
    entries: List[Entry] = field(default_factory=list)
    # Tail of the header too short to hold another entry.
    trailing: bytes = b""

    @property
    def header_size(self) -> int:
        return self.word_count * WORD_SIZE

    def iter_sub_entries(self) -> Iterator[Tuple[Entry, SubEntry]]:
        for entry in self.entries:
            for sub_entry in entry.sub_entries:
                yield entry, sub_entry

    def payload_sub_entries(self) -> Iterator[SubEntry]:
        for _entry, sub_entry in self.iter_sub_entries():
            if sub_entry.payload is not None:
                yield sub_entry


def _read_sub_entry(cursor: ByteCursor) -> SubEntry:
    offset = cursor.read_fixed(4)
    size = cursor.read_fixed(4)
    metadata_count = cursor.read_fixed(2)
    face = cursor.read_fixed(1)
    resource_type = _coerce_resource_type(cursor.read_fixed(1))
    metadata = [cursor.read_fixed(4) for _ in range(metadata_count)]
    return SubEntry(offset, size, resource_type, face, metadata)


def _read_entry(cursor: ByteCursor, expect_names: bool) -> Entry:
    name = cursor.read_string(ENTRY_NAME_SIZE) if expect_names else None
    index = cursor.read24()
    sub_entry_count = cursor.read_fixed(1)
    sub_entries = [_read_sub_entry(cursor) for _ in range(sub_entry_count)]
    return Entry(index, sub_entries, name)


def decode_directory(
    plain: bytes, *, expect_names: bool = False, encrypted: bool = False
) -> Directory:
    """Decode a plaintext directory header."""

    cursor = ByteCursor(plain)
    word_count = cursor.read_fixed(4)
    if word_count * WORD_SIZE != len(plain):
        raise IntegrityError(
            f"header declares {word_count} word(s) but holds {len(plain)} byte(s)"
        )

    entries: List[Entry] = []
    while cursor.has_record(WORD_SIZE):
        entries.append(_read_entry(cursor, expect_names))
    trailing = cursor.read_bytes(cursor.remaining())
    return Directory(word_count, encrypted, entries, trailing)


def _write_sub_entry(cursor: ByteCursor, sub_entry: SubEntry) -> None:
    cursor.write_fixed(4, sub_entry.offset)
    cursor.write_fixed(4, sub_entry.size)
    cursor.write_fixed(2, len(sub_entry.metadata))
    cursor.write_fixed(1, sub_entry.face)
    cursor.write_fixed(1, int(sub_entry.resource_type))
    for word in sub_entry.metadata:
        cursor.write_fixed(4, word)


def _write_entry(cursor: ByteCursor, entry: Entry) -> None:
    if entry.name is not None:
        cursor.write_string(entry.name, ENTRY_NAME_SIZE)
    cursor.write24(entry.index)
    cursor.write_fixed(1, len(entry.sub_entries))
    for sub_entry in entry.sub_entries:
        _write_sub_entry(cursor, sub_entry)


def encode_directory(directory: Directory) -> bytes:
    """Encode *directory* into exactly ``word_count * 4`` plaintext bytes."""

    cursor = ByteCursor(directory.header_size)
    try:
        cursor.write_fixed(4, directory.word_count)
        for entry in directory.entries:
            _write_entry(cursor, entry)
        cursor.write_bytes(directory.trailing)
    except OutOfBoundsError as exc:
        raise IntegrityError(
            f"directory does not fit in {directory.word_count} declared word(s)"
        ) from exc

    if cursor.remaining():
        raise IntegrityError(
            f"directory leaves {cursor.remaining()} byte(s) of the declared header unused"
        )
    return bytes(cursor.data)


def describe_directory(directory: Directory) -> List[str]:
    """Return a human-readable listing of *directory*."""

    mode = "encoded" if directory.encrypted else "readable"
    lines = [f"Directory: size: {directory.word_count}, {mode}"]
    for entry in directory.entries:
        name = (entry.name or "").rstrip("\x00")
        lines.append(f'* Entry: "{name}", index:{entry.index}')
        for sub_entry in entry.sub_entries:
            lines.append(
                f"\t* Subentry: {sub_entry.type_name}, face {sub_entry.face}, "
                f"offset:{sub_entry.offset}, size:{sub_entry.size}"
            )
            shown = sub_entry.metadata[:4]
            if shown:
                values = "".join(f", {value}" for value in shown)
                lines.append(f"\t\tMetadata ({len(sub_entry.metadata)}){values}")
    return lines


# ------------------------------------------------------------ archive io --


def _read_archive_bytes(path: Path) -> bytes | mmap.mmap:
    """Return the bytes for ``path`` using a memory map when appropriate."""

    try:
        size = path.stat().st_size
        if size and size >= max(0, MEMORY_MAP_THRESHOLD):
            flags = os.O_RDONLY
            # Windows requires the O_BINARY flag to avoid implicit newline conversion.
            flags |= getattr(os, "O_BINARY", 0)
            fd = os.open(path, flags)
            try:
                return mmap.mmap(fd, length=0, access=mmap.ACCESS_READ)
            finally:
                os.close(fd)
        return path.read_bytes()
    except OSError as exc:
        raise ArchiveAccessError(f"unable to read archive {path}: {exc}") from exc


def _release_archive_buffer(buffer: object) -> None:
    """Release buffers that expose a ``close`` method (e.g. memory maps)."""

    close = getattr(buffer, "close", None)
    if callable(close):
        close()


def load_payloads(directory: Directory, data: bytes | mmap.mmap) -> None:
    """Copy every payload referenced by *directory* out of *data*."""

    for _entry, sub_entry in directory.iter_sub_entries():
        if not sub_entry.carries_payload:
            continue
        end = sub_entry.offset + sub_entry.size
        if end > len(data):
            raise IntegrityError(
                f"{sub_entry.type_name} payload at {sub_entry.offset} (+{sub_entry.size}) "
                f"runs past the end of the archive ({len(data)} bytes)"
            )
        sub_entry.payload = bytes(data[sub_entry.offset : end])


def read_archive(path: Path, *, expect_names: bool = False) -> Directory:
    """Read *path* and return its directory with all payloads loaded."""

    data = _read_archive_bytes(path)
    try:
        plain, encrypted = decrypt_header(data)
        directory = decode_directory(plain, expect_names=expect_names, encrypted=encrypted)
        load_payloads(directory, data)
    finally:
        _release_archive_buffer(data)

    if LOGGER.isEnabledFor(logging.DEBUG):
        for line in describe_directory(directory):
            LOGGER.debug("%s", line)
    return directory


def write_archive(directory: Directory, path: Path) -> None:
    """Write *directory* and its payloads to *path*.

    The archive is assembled in a temporary sibling file which replaces
    *path* only once everything has been written.
    """

    header = encrypt_header(encode_directory(directory), directory.encrypted)
    temp_path = path.with_name(path.name + ".tmp")

    replaced = False
    try:
        with temp_path.open("wb") as handle:
            handle.write(header)
            for sub_entry in directory.payload_sub_entries():
                handle.seek(sub_entry.offset)
                handle.write(sub_entry.payload)
        os.replace(temp_path, path)
        replaced = True
    except OSError as exc:
        raise ArchiveAccessError(f"unable to write archive {path}: {exc}") from exc
    finally:
        if not replaced:
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass


# ------------------------------------------------------------ relocation --


class ImageCodec:
    """Abstract base for the image backend used when no replacement file exists.

    Subclasses implement all three methods.  Any failure must be raised as
    :class:`ImageCodecError`; :func:`patch_directory` catches only that error,
    logs it and leaves the sub-entry unchanged.
    """

    def decode(self, data: bytes) -> object:
        raise NotImplementedError

    def resize(self, pixels: object, factor: int) -> object:
        raise NotImplementedError

    def encode(self, pixels: object) -> bytes:
        raise NotImplementedError


class PillowImageCodec(ImageCodec):
    """Decode/resize/encode JPEG payloads with Pillow."""

    def __init__(self, quality: int = JPEG_QUALITY) -> None:
        self.quality = quality

    def decode(self, data: bytes) -> object:
        if not PIL_AVAILABLE:
            raise ImageCodecError("Pillow is required to upscale images")
        try:
            with Image.open(io.BytesIO(data)) as image:
                return image.convert("RGB")
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise ImageCodecError(f"unable to decode image: {exc}") from exc

    def resize(self, pixels: object, factor: int) -> object:
        width, height = pixels.size
        Resampling = getattr(Image, "Resampling", Image)
        try:
            return pixels.resize((width * factor, height * factor), Resampling.BICUBIC)
        except (OSError, ValueError) as exc:
            raise ImageCodecError(f"unable to upscale image: {exc}") from exc

    def encode(self, pixels: object) -> bytes:
        buffer = io.BytesIO()
        try:
            pixels.save(buffer, format="JPEG", quality=self.quality)
        except (OSError, ValueError) as exc:
            raise ImageCodecError(f"unable to encode JPEG: {exc}") from exc
        return buffer.getvalue()


ReplacementLookup = Callable[[str], Optional[bytes]]


class ReplacementSource:
    """Look up pre-upscaled replacement files inside a directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def __call__(self, file_name: str) -> Optional[bytes]:
        candidate = self.root / file_name
        if not candidate.is_file():
            return None
        try:
            return candidate.read_bytes()
        except OSError as exc:
            LOGGER.warning("Unable to read replacement %s: %s", candidate, exc)
            return None


@dataclass
class PatchReport:
    replaced: List[str] = field(default_factory=list)
    upscaled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    rescaled: int = 0
    relocated: bool = False


def upscaled_directory(upscaled_root: Path, relative_path: Path) -> Path:
    """Return where replacements for the archive at *relative_path* live.

    ``nodes/tom1.m3a`` maps to ``<upscaled_root>/nodes/tom1-m3a``.
    """

    extension = relative_path.suffix.lstrip(".")
    return upscaled_root / relative_path.parent / f"{relative_path.stem}-{extension}"


def default_entry_name(relative_path: Path) -> str:
    return relative_path.stem[:ENTRY_NAME_SIZE]


def replacement_file_name(entry_name: str, entry: Entry, sub_entry: SubEntry) -> Optional[str]:
    """Return the replacement file name for *sub_entry*, or None if it is not an image."""

    base = f"{entry_name}-{entry.index}"
    resource_type = sub_entry.resource_type
    if resource_type == ResourceType.SPOT_ITEM:
        return f"{base}-{int(resource_type)}-{sub_entry.face}-edit.jpeg"
    if resource_type in (ResourceType.LOCALIZED_SPOT_ITEM, ResourceType.LOCALIZED_FRAME):
        code = int(resource_type) - LOCALIZED_NAME_OFFSET
        return f"{base}-{code}-{sub_entry.face}-edit.jpeg"
    if resource_type == ResourceType.FRAME:
        return f"{base}-{int(resource_type)}-edit.jpeg"
    if resource_type == ResourceType.CUBE_FACE:
        if sub_entry.face >= len(CUBE_FACE_SUFFIXES):
            LOGGER.warning("Cube face %d of entry %s is out of range", sub_entry.face, base)
            return None
        return f"{base}-{CUBE_FACE_SUFFIXES[sub_entry.face]}-edit.jpeg"
    return None


def rescale_spot_item(sub_entry: SubEntry, factor: int) -> bool:
    """Scale the placement coordinates of a spot item in place."""

    if len(sub_entry.metadata) < 2:
        LOGGER.warning(
            "%s at offset %d has no placement coordinates", sub_entry.type_name, sub_entry.offset
        )
        return False
    sub_entry.metadata[0] = (sub_entry.metadata[0] * factor) & WORD_MASK
    sub_entry.metadata[1] = (sub_entry.metadata[1] * factor) & WORD_MASK
    return True


def upscale_payload(payload: bytes, codec: ImageCodec, factor: int) -> bytes:
    pixels = codec.decode(payload)
    return codec.encode(codec.resize(pixels, factor))


def relocate_payloads(directory: Directory) -> int:
    """Pack every payload right after the header, in directory order.

    Offsets of unmodified payloads are recomputed too; the whole payload
    region is rebuilt so that no two payloads can overlap.  Returns the
    offset one past the last payload.
    """

    current_offset = directory.header_size
    for sub_entry in directory.payload_sub_entries():
        sub_entry.offset = current_offset
        current_offset += len(sub_entry.payload)
    return current_offset


def patch_directory(
    directory: Directory,
    *,
    default_name: str,
    replacements: ReplacementLookup,
    codec: Optional[ImageCodec] = None,
    factor: int = UPSCALE_FACTOR,
) -> PatchReport:
    """Swap image payloads for upscaled versions and fix up the offsets."""

    if codec is None:
        codec = PillowImageCodec()

    report = PatchReport()
    size_changed = False

    for entry, sub_entry in directory.iter_sub_entries():
        if sub_entry.payload is None:
            continue

        if sub_entry.resource_type in SPOT_ITEM_TYPES and rescale_spot_item(sub_entry, factor):
            report.rescaled += 1

        entry_name = (entry.name or "").rstrip("\x00") or default_name
        file_name = replacement_file_name(entry_name, entry, sub_entry)
        if file_name is None:
            continue

        previous_size = sub_entry.size
        replacement = replacements(file_name)
        if replacement is not None:
            LOGGER.info("- Looking for file: %s... OK", file_name)
            report.replaced.append(file_name)
        else:
            LOGGER.info("- Looking for file: %s... falling back to basic upscaling", file_name)
            try:
                replacement = upscale_payload(sub_entry.payload, codec, factor)
            except ImageCodecError as exc:
                LOGGER.error("Unable to upscale %s: %s", file_name, exc)
                report.failed.append(file_name)
                continue
            report.upscaled.append(file_name)

        sub_entry.payload = bytes(replacement)
        sub_entry.size = len(sub_entry.payload)
        if sub_entry.size != previous_size:
            size_changed = True

    if size_changed:
        end = relocate_payloads(directory)
        report.relocated = True
        LOGGER.info("Relocated payloads; archive now spans %d byte(s)", end)

    return report


def patch_archive(
    input_dir: Path,
    upscaled_dir: Path,
    output_dir: Path,
    relative_path: Path,
    *,
    expect_names: bool = False,
    passthrough: bool = False,
    factor: int = UPSCALE_FACTOR,
    codec: Optional[ImageCodec] = None,
) -> PatchReport:
    """Patch ``input_dir/relative_path`` into ``output_dir/relative_path``."""

    source = input_dir / relative_path
    destination = output_dir / relative_path

    directory = read_archive(source, expect_names=expect_names)

    if passthrough:
        report = PatchReport()
    else:
        search_dir = upscaled_directory(upscaled_dir, relative_path)
        LOGGER.info("Searching for upscaled data in %s", search_dir.as_posix())
        report = patch_directory(
            directory,
            default_name=default_entry_name(relative_path),
            replacements=ReplacementSource(search_dir),
            codec=codec,
            factor=factor,
        )

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ArchiveAccessError(f"unable to create {destination.parent}: {exc}") from exc
    write_archive(directory, destination)
    return report


# ------------------------------------------------------------------- cli --


def _relative_archive_path(input_dir: Path, archive: Path) -> Path:
    """Accept the archive either relative to *input_dir* or as a path inside it."""

    for base in (input_dir, input_dir.resolve()):
        try:
            return archive.relative_to(base)
        except ValueError:
            continue
    if archive.is_absolute():
        raise ArchiveAccessError(f"{archive} is not inside {input_dir}")
    return archive


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
    )


def build_cli() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--names", action="store_true", help="entries carry a 4-character name")
    common.add_argument("--verbose", action="store_true", help="enable verbose logging")

    parser = argparse.ArgumentParser(description="Patch M3 archives with upscaled images")
    subparsers = parser.add_subparsers(dest="command", required=True)

    patch_parser = subparsers.add_parser(
        "patch", parents=[common], help="replace image payloads with upscaled versions"
    )
    patch_parser.add_argument("input_dir", type=Path, help="root directory of the original archives")
    patch_parser.add_argument("upscaled_dir", type=Path, help="root directory of the upscaled images")
    patch_parser.add_argument("output_dir", type=Path, help="root directory receiving the patched archives")
    patch_parser.add_argument(
        "archive",
        type=Path,
        help="archive to patch, relative to input_dir (e.g. nodes/tom1.m3a)",
    )
    patch_parser.add_argument(
        "--passthrough",
        action="store_true",
        help="re-encode the archive without modifying it",
    )
    patch_parser.add_argument(
        "--factor",
        type=int,
        default=UPSCALE_FACTOR,
        help=f"upscale factor applied to images and spot items (default: {UPSCALE_FACTOR})",
    )

    info_parser = subparsers.add_parser(
        "info", parents=[common], help="print the decoded directory of an archive"
    )
    info_parser.add_argument("archive", type=Path, help="path to the archive")

    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_cli()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        if args.command == "patch":
            if args.factor <= 0:
                parser.error("--factor must be positive")
            relative_path = _relative_archive_path(args.input_dir, args.archive)
            report = patch_archive(
                args.input_dir,
                args.upscaled_dir,
                args.output_dir,
                relative_path,
                expect_names=args.names,
                passthrough=args.passthrough,
                factor=args.factor,
            )
            print(
                f"Patched archive written to {args.output_dir / relative_path} "
                f"({len(report.replaced)} replaced, {len(report.upscaled)} upscaled, "
                f"{len(report.failed)} failed)"
            )
        elif args.command == "info":
            directory = read_archive(args.archive, expect_names=args.names)
            for line in describe_directory(directory):
                print(line)
        else:  # pragma: no cover - argparse enforces the choices
            parser.error("unknown command")
    except ArchiveAccessError as exc:
        LOGGER.error("%s", exc)
        return 1
    except M3PackError as exc:
        LOGGER.error("Unable to process %s: %s", args.archive, exc)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
