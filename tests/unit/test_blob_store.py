"""Tests for promptloom.core.blob_store — file-backed blobs."""

from __future__ import annotations

import pytest

from promptloom.core.blob_store import BLOB_KINDS, BlobStore
from promptloom.core.errors import PersistenceError


@pytest.fixture
def store(temp_dir) -> BlobStore:
    return BlobStore(temp_dir / "blobs")


class TestBlobStore:
    def test_creates_kind_directories(self, store):
        for kind in BLOB_KINDS:
            assert (store.root / kind).is_dir()

    def test_save_image_returns_relative_png_path(self, store, red_image):
        relative = store.save_image(red_image, "outputs")

        assert relative.startswith("outputs/")
        assert relative.endswith(".png")
        assert store.exists(relative)
        assert store.load_image(relative).size == (8, 8)

    def test_names_never_collide(self, store, red_image):
        paths = {store.save_image(red_image, "inputs") for _ in range(5)}
        assert len(paths) == 5

    def test_drawing_round_trip(self, store):
        relative = store.save_drawing(b"\x00strokes\xff")

        assert relative.startswith("drawings/")
        assert store.load_bytes(relative) == b"\x00strokes\xff"

    def test_unknown_kind_rejected(self, store):
        with pytest.raises(ValueError):
            store.save_bytes(b"x", "secrets")

    def test_path_escape_rejected(self, store):
        with pytest.raises(PersistenceError):
            store.resolve("../outside.png")
        assert not store.exists("../../etc/passwd")

    def test_missing_blob_raises_persistence_error(self, store):
        with pytest.raises(PersistenceError):
            store.load_bytes("outputs/missing.png")

    def test_write_failure_raises_persistence_error(self, store, red_image):
        (store.root / "outputs").rmdir()
        (store.root / "outputs").write_text("not a directory")

        with pytest.raises(PersistenceError):
            store.save_image(red_image, "outputs")
