import pytest

from beatwarp.errors import ClipNotFound
from beatwarp.models import AudioClip
from beatwarp.repos import InMemoryRepository

from conftest import marker


class TestLocalStorage:
    def test_upload_then_download(self, storage):
        storage.upload("warped/a/out.wav", b"RIFF")
        assert storage.exists("warped/a/out.wav")
        assert storage.download("warped/a/out.wav") == b"RIFF"

    def test_no_temp_files_left_behind(self, storage):
        storage.upload("x/y.bin", b"data")
        assert [p.name for p in storage.abs_path("x").iterdir()] == ["y.bin"]

    def test_missing_key(self, storage):
        with pytest.raises(FileNotFoundError):
            storage.download("missing.wav")

    def test_delete(self, storage):
        storage.upload("uploads/a.wav", b"RIFF")
        assert storage.delete("uploads/a.wav") is True
        assert not storage.exists("uploads/a.wav")
        assert storage.delete("uploads/a.wav") is False

    def test_traversal_rejected(self, storage):
        with pytest.raises(ValueError):
            storage.abs_path("../../etc/passwd")

    def test_make_key(self, storage):
        key = storage.make_key("uploads", "mp3", stem="clip")
        assert key.startswith("uploads/")
        assert key.endswith("/clip.mp3")


class TestInMemoryRepository:
    def test_missing_clip(self):
        with pytest.raises(ClipNotFound):
            InMemoryRepository().get_clip("nope")

    def test_markers_listed_by_source_time(self):
        repo = InMemoryRepository()
        repo.add_clip(AudioClip(id="c1", source_key="k", duration=10.0))
        repo.replace_markers("c1", [marker(5, 6), marker(1, 1)])
        assert [m.source_time for m in repo.list_markers("c1")] == [1, 5]

    def test_upsert_and_delete(self):
        repo = InMemoryRepository()
        repo.add_clip(AudioClip(id="c1", source_key="k", duration=10.0))
        repo.upsert_marker("c1", marker(2, 2, "a"))
        repo.upsert_marker("c1", marker(2, 3, "a"))
        assert [m.target_time for m in repo.list_markers("c1")] == [3]
        assert repo.delete_marker("c1", "a")
        assert not repo.delete_marker("c1", "a")

    def test_reads_are_copies(self):
        repo = InMemoryRepository()
        repo.add_clip(AudioClip(id="c1", source_key="k", duration=10.0))
        clip = repo.get_clip("c1")
        clip.rendered_key = "tampered"
        assert repo.get_clip("c1").rendered_key is None
