"""Tests for version information."""

from unittest.mock import patch

from rushvote.version import UNKNOWN, VersionInfo, _get_git_commit, _read_git_head, get_version_info


class TestVersionInfo:
    """Tests for VersionInfo."""

    def test_short_commit(self):
        info = VersionInfo(version="0.4.0", git_commit="abcdef1234567", build_time="now")
        assert info.git_commit_short == "abcdef1"
        assert info.to_dict()["git_commit_short"] == "abcdef1"

    def test_unknown_commit(self):
        assert VersionInfo("0.4.0").git_commit_short == UNKNOWN


class TestGitCommit:
    """Tests for commit discovery."""

    def test_commit_from_environment(self):
        with patch.dict("os.environ", {"GIT_COMMIT": "feedface"}):
            assert _get_git_commit() == "feedface"

    def test_detached_head(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("0123456789abcdef\n")
        assert _read_git_head(tmp_path) == "0123456789abcdef"

    def test_branch_ref(self, tmp_path):
        refs = tmp_path / ".git" / "refs" / "heads"
        refs.mkdir(parents=True)
        (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        (refs / "main").write_text("cafebabe\n")
        assert _read_git_head(tmp_path) == "cafebabe"

    def test_packed_ref(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        (tmp_path / ".git" / "packed-refs").write_text(
            "# pack-refs with: peeled\ndeadbeef refs/heads/main\n"
        )
        assert _read_git_head(tmp_path) == "deadbeef"

    def test_not_a_checkout(self, tmp_path):
        assert _read_git_head(tmp_path) is None


class TestGetVersionInfo:
    """Tests for get_version_info."""

    def test_app_version_override(self):
        get_version_info.cache_clear()
        try:
            with patch.dict("os.environ", {"APP_VERSION": "9.9.9", "GIT_COMMIT": "x"}):
                assert get_version_info().version == "9.9.9"
        finally:
            get_version_info.cache_clear()
