import io
import tarfile
import threading

import pytest

from pipewright.artifacts import ArtifactStore, pack_paths, unpack
from pipewright.errors import ArtifactNotFoundError, DuplicateArtifactError


class TestArtifactStore:
    def test_publish_commit_fetch(self):
        store = ArtifactStore()
        store.publish("build", "dist", b"payload")
        store.commit("build")
        assert store.fetch("dist", job="deploy") == b"payload"
        assert store.producer("dist") == "build"
        assert store.names() == ["dist"]

    def test_staged_is_not_visible(self):
        store = ArtifactStore()
        store.publish("build", "dist", b"payload")
        with pytest.raises(ArtifactNotFoundError) as exc:
            store.fetch("dist", job="deploy")
        assert exc.value.details["producer"] == "build"
        assert exc.value.job == "deploy"

    def test_missing(self):
        with pytest.raises(ArtifactNotFoundError):
            ArtifactStore().fetch("nothing")

    def test_discard_allows_republish(self):
        store = ArtifactStore()
        store.publish("build", "dist", b"first")
        assert store.discard("build") == ["dist"]
        store.publish("build", "dist", b"second")
        store.commit("build")
        assert store.fetch("dist") == b"second"

    def test_duplicate_name(self):
        store = ArtifactStore()
        store.publish("a", "dist", b"1")
        store.commit("a")
        with pytest.raises(DuplicateArtifactError) as exc:
            store.publish("b", "dist", b"2")
        assert exc.value.owner == "a"

    def test_concurrent_publish_only_one_wins(self):
        store = ArtifactStore()
        errors = []
        barrier = threading.Barrier(8)

        def publish(i):
            barrier.wait()
            try:
                store.publish(f"job{i}", "shared", str(i))
            except DuplicateArtifactError as e:
                errors.append(e)

        threads = [threading.Thread(target=publish, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(errors) == 7

    def test_committed_artifacts_are_persisted(self, tmp_path):
        store = ArtifactStore(tmp_path / "artifacts")
        store.publish("build", "notes", "some text")
        store.publish("build", "meta", {"version": 1})
        store.commit("build")
        assert (tmp_path / "artifacts" / "notes").read_text() == "some text"
        assert '"version": 1' in (tmp_path / "artifacts" / "meta").read_text()

    @pytest.mark.parametrize("name", [".", "..", "a/b", "a\\b", "x:y"])
    def test_rejects_names_that_are_not_file_names(self, name):
        with pytest.raises(ValueError):
            ArtifactStore().publish("build", name, b"x")

    def test_failed_persist_commits_nothing(self, tmp_path):
        root = tmp_path / "artifacts"
        (root / "dist").mkdir(parents=True)
        store = ArtifactStore(root)
        store.publish("build", "dist", b"payload")
        with pytest.raises(OSError):
            store.commit("build")
        assert store.names() == []
        with pytest.raises(ArtifactNotFoundError):
            store.fetch("dist")
        assert store.discard("build") == ["dist"]


class TestArchives:
    def test_pack_and_unpack(self, tmp_path):
        src = tmp_path / "ws"
        (src / "dist").mkdir(parents=True)
        (src / "dist" / "app.txt").write_text("app")
        (src / "dist" / "lib.txt").write_text("lib")
        (src / "other.txt").write_text("other")

        payload, files = pack_paths(src, ["dist/"])
        assert files == ["dist/app.txt", "dist/lib.txt"]

        out = tmp_path / "out"
        restored = unpack(payload, out)
        assert sorted(restored) == files
        assert (out / "dist" / "app.txt").read_text() == "app"
        assert not (out / "other.txt").exists()

    def test_globs_and_excludes(self, tmp_path):
        src = tmp_path / "ws"
        (src / "reports").mkdir(parents=True)
        (src / "reports" / "a.xml").write_text("<a/>")
        (src / "reports" / "a.log").write_text("log")
        (src / ".pipewright").mkdir()
        (src / ".pipewright" / "env").write_text("X=1")

        _, files = pack_paths(src, ["reports/*.xml", ".pipewright/env"])
        assert files == ["reports/a.xml"]

    def test_unpack_refuses_sibling_directory(self, tmp_path):
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            data = b"x"
            info = tarfile.TarInfo("../out-other/x.txt")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        with pytest.raises(ValueError):
            unpack(buf.getvalue(), tmp_path / "out")
        assert not (tmp_path / "out-other").exists()

    def test_no_match(self, tmp_path):
        _, files = pack_paths(tmp_path, ["missing/*"])
        assert files == []
