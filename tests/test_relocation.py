import sys
import unittest
from pathlib import Path
from typing import Dict, List, Optional

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import m3pack
from m3pack import Directory, Entry, ResourceType, SubEntry


class FakeImageCodec(m3pack.ImageCodec):
    """Treats payloads starting with ``IMG`` as images and repeats them on resize."""

    def decode(self, data: bytes) -> object:
        if not data.startswith(b"IMG"):
            raise m3pack.ImageCodecError("not an image")
        return data

    def resize(self, pixels: object, factor: int) -> object:
        return pixels * factor

    def encode(self, pixels: object) -> bytes:
        return bytes(pixels)


def _with_payload(sub_entry: SubEntry, payload: bytes) -> SubEntry:
    sub_entry.size = len(payload)
    sub_entry.payload = payload
    return sub_entry


def _build_directory() -> Directory:
    entries = [
        Entry(
            index=12,
            sub_entries=[
                _with_payload(SubEntry(0, 0, ResourceType.CUBE_FACE, face=3), b"IMG-face"),
                SubEntry(77, 88, ResourceType.TEXT_METADATA, metadata=[1]),
                _with_payload(
                    SubEntry(0, 0, ResourceType.SPOT_ITEM, face=1, metadata=[10, 20, 30]),
                    b"IMG-spot",
                ),
            ],
        ),
        Entry(
            index=13,
            sub_entries=[
                _with_payload(SubEntry(0, 0, ResourceType.MOVIE), b"MOVIE-DATA"),
                _with_payload(SubEntry(0, 0, ResourceType.FRAME), b"IMG-frame"),
            ],
        ),
    ]
    size = 4
    for entry in entries:
        size += 4 + sum(12 + 4 * len(sub.metadata) for sub in entry.sub_entries)
    directory = Directory(size // 4, True, entries)
    m3pack.relocate_payloads(directory)
    return directory


def _lookup(files: Dict[str, bytes]):
    requested: List[str] = []

    def lookup(file_name: str) -> Optional[bytes]:
        requested.append(file_name)
        return files.get(file_name)

    lookup.requested = requested
    return lookup


def _assert_contiguous(test: unittest.TestCase, directory: Directory) -> None:
    expected = directory.word_count * 4
    for sub_entry in directory.payload_sub_entries():
        test.assertEqual(sub_entry.offset, expected)
        test.assertEqual(len(sub_entry.payload), sub_entry.size)
        expected += sub_entry.size


class ReplacementNamingTests(unittest.TestCase):
    def test_file_names_follow_resource_type(self) -> None:
        entry = Entry(index=12)
        cases = [
            (SubEntry(0, 1, ResourceType.CUBE_FACE, face=3), "tom1-12-front-edit.jpeg"),
            (SubEntry(0, 1, ResourceType.CUBE_FACE, face=6), "tom1-12-top-edit.jpeg"),
            (SubEntry(0, 1, ResourceType.SPOT_ITEM, face=2), "tom1-12-5-2-edit.jpeg"),
            (SubEntry(0, 1, ResourceType.LOCALIZED_SPOT_ITEM, face=0), "tom1-12-45-0-edit.jpeg"),
            (SubEntry(0, 1, ResourceType.LOCALIZED_FRAME, face=1), "tom1-12-46-1-edit.jpeg"),
            (SubEntry(0, 1, ResourceType.FRAME), "tom1-12-6-edit.jpeg"),
            (SubEntry(0, 1, ResourceType.MOVIE), None),
            (SubEntry(0, 1, ResourceType.CUBE_FACE, face=7), None),
        ]
        for sub_entry, expected in cases:
            with self.subTest(resource_type=sub_entry.type_name, face=sub_entry.face):
                self.assertEqual(m3pack.replacement_file_name("tom1", entry, sub_entry), expected)

    def test_upscaled_directory_layout(self) -> None:
        relative = Path("nodes") / "tom1.m3a"
        self.assertEqual(
            m3pack.upscaled_directory(Path("upscaled"), relative),
            Path("upscaled") / "nodes" / "tom1-m3a",
        )
        self.assertEqual(m3pack.default_entry_name(relative), "tom1")
        self.assertEqual(m3pack.default_entry_name(Path("ab.m3a")), "ab")


class RelocationTests(unittest.TestCase):
    def test_spot_item_rescale_only_touches_coordinates(self) -> None:
        sub_entry = SubEntry(0, 1, ResourceType.SPOT_ITEM, metadata=[3, 7, 11, 13])
        self.assertTrue(m3pack.rescale_spot_item(sub_entry, 4))
        self.assertEqual(sub_entry.metadata, [12, 28, 11, 13])

        short = SubEntry(0, 1, ResourceType.SPOT_ITEM, metadata=[3])
        with self.assertLogs("m3pack", level="WARNING"):
            self.assertFalse(m3pack.rescale_spot_item(short, 4))
        self.assertEqual(short.metadata, [3])

    def test_relocation_packs_payloads_after_header(self) -> None:
        directory = _build_directory()
        directory.entries[0].sub_entries[0].payload = b"X" * 100
        directory.entries[0].sub_entries[0].size = 100

        end = m3pack.relocate_payloads(directory)

        _assert_contiguous(self, directory)
        total = sum(sub.size for sub in directory.payload_sub_entries())
        self.assertEqual(end, directory.word_count * 4 + total)
        metadata_record = directory.entries[0].sub_entries[1]
        self.assertEqual((metadata_record.offset, metadata_record.size), (77, 88))

    def test_patch_replaces_and_upscales_in_order(self) -> None:
        directory = _build_directory()
        lookup = _lookup({"tom1-12-front-edit.jpeg": b"REPLACEMENT-FACE"})

        report = m3pack.patch_directory(
            directory, default_name="tom1", replacements=lookup, codec=FakeImageCodec(), factor=4
        )

        self.assertEqual(
            lookup.requested,
            ["tom1-12-front-edit.jpeg", "tom1-12-5-1-edit.jpeg", "tom1-13-6-edit.jpeg"],
        )
        self.assertEqual(report.replaced, ["tom1-12-front-edit.jpeg"])
        self.assertEqual(report.upscaled, ["tom1-12-5-1-edit.jpeg", "tom1-13-6-edit.jpeg"])
        self.assertEqual(report.failed, [])
        self.assertEqual(report.rescaled, 1)
        self.assertTrue(report.relocated)

        face, metadata_record, spot = directory.entries[0].sub_entries
        movie, frame = directory.entries[1].sub_entries
        self.assertEqual(face.payload, b"REPLACEMENT-FACE")
        self.assertEqual(spot.payload, b"IMG-spot" * 4)
        self.assertEqual(spot.metadata, [40, 80, 30])
        self.assertEqual(frame.payload, b"IMG-frame" * 4)
        self.assertEqual(movie.payload, b"MOVIE-DATA")
        self.assertEqual((metadata_record.offset, metadata_record.size), (77, 88))
        _assert_contiguous(self, directory)

    def test_named_entries_use_their_own_name(self) -> None:
        directory = _build_directory()
        directory.entries[0].name = "node"
        directory.entries[1].name = "\x00\x00\x00\x00"
        lookup = _lookup({})

        m3pack.patch_directory(
            directory, default_name="tom1", replacements=lookup, codec=FakeImageCodec()
        )

        self.assertEqual(lookup.requested[0], "node-12-front-edit.jpeg")
        self.assertEqual(lookup.requested[-1], "tom1-13-6-edit.jpeg")

    def test_image_failures_are_isolated(self) -> None:
        directory = _build_directory()
        directory.entries[0].sub_entries[0].payload = b"CORRUPT!"
        original_offsets = [sub.offset for sub in directory.payload_sub_entries()]

        with self.assertLogs("m3pack", level="ERROR") as logs:
            report = m3pack.patch_directory(
                directory,
                default_name="tom1",
                replacements=_lookup({}),
                codec=FakeImageCodec(),
                factor=2,
            )

        self.assertEqual(report.failed, ["tom1-12-front-edit.jpeg"])
        self.assertEqual(len(report.upscaled), 2)
        self.assertIn("tom1-12-front-edit.jpeg", logs.output[0])

        face = directory.entries[0].sub_entries[0]
        self.assertEqual(face.payload, b"CORRUPT!")
        self.assertEqual(face.size, 8)
        self.assertEqual(face.offset, original_offsets[0])
        self.assertEqual(directory.entries[0].sub_entries[2].payload, b"IMG-spot" * 2)
        _assert_contiguous(self, directory)

        encoded = m3pack.encode_directory(directory)
        self.assertEqual(len(encoded), directory.word_count * 4)

    def test_codec_base_class_is_abstract(self) -> None:
        codec = m3pack.ImageCodec()
        with self.assertRaises(NotImplementedError):
            codec.decode(b"IMG")
        with self.assertRaises(NotImplementedError):
            codec.encode(b"IMG")

    def test_same_size_replacements_keep_offsets(self) -> None:
        directory = _build_directory()
        offsets = [sub.offset for sub in directory.payload_sub_entries()]
        lookup = _lookup(
            {
                "tom1-12-front-edit.jpeg": b"IMG-FACE",
                "tom1-12-5-1-edit.jpeg": b"IMG-SPOT",
                "tom1-13-6-edit.jpeg": b"IMG-FRAME",
            }
        )

        report = m3pack.patch_directory(
            directory, default_name="tom1", replacements=lookup, codec=FakeImageCodec()
        )

        self.assertFalse(report.relocated)
        self.assertEqual(len(report.replaced), 3)
        self.assertEqual([sub.offset for sub in directory.payload_sub_entries()], offsets)


if __name__ == "__main__":  # pragma: no cover - manual test runner support
    unittest.main()
