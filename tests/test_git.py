"""Tests for cascade_release.git."""

from __future__ import annotations

from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import pytest

from cascade_release.git import GitRepo, parse_log


def record(sha: str, author: str, date: str, message: str) -> str:
    return f"{sha}\x1f{author}\x1f{date}\x1f{message}\x1e"


class TestParseLog:
    def test_multiline_messages(self) -> None:
        output = record(
            "a" * 40, "Ada", "2024-05-01T10:00:00+02:00", "feat(core): x\n\nbody\n"
        ) + "\n" + record("b" * 40, "Bob", "2024-04-30T09:00:00+00:00", "fix(api): y\n")

        commits = parse_log(output)

        assert [c.hash for c in commits] == ["a" * 40, "b" * 40]
        assert commits[0].message == "feat(core): x\n\nbody"
        assert commits[0].title == "feat(core): x"
        assert commits[0].author == "Ada"
        assert commits[0].date.utcoffset().total_seconds() == 7200

    def test_empty_output(self) -> None:
        assert parse_log("") == []

    def test_malformed_record_skipped(self) -> None:
        output = "garbage\x1e" + record("c" * 40, "Cy", "", "chore: z")

        commits = parse_log(output)

        assert [c.hash for c in commits] == ["c" * 40]
        assert commits[0].date is None


@pytest.fixture
def mock_git() -> Iterator[MagicMock]:
    with patch("cascade_release.git.git", return_value="") as mock:
        yield mock


@pytest.fixture
def mock_succeeds() -> Iterator[MagicMock]:
    with patch("cascade_release.git.succeeds", return_value=True) as mock:
        yield mock


class TestGitRepo:
    """Tests for GitRepo, with the git CLI mocked out."""

    def test_commits_since_ref(self, mock_git: MagicMock) -> None:
        mock_git.return_value = record("a" * 40, "Ada", "", "fix(core): x")

        commits = GitRepo("/repo").get_commits_since("core@1.0.0")

        args = mock_git.call_args.args
        assert args[0] == "log"
        assert args[-1] == "core@1.0.0..HEAD"
        assert mock_git.call_args.kwargs["cwd"] == "/repo"
        assert [c.hash for c in commits] == ["a" * 40]

    def test_commits_in_empty_repository(
        self, mock_git: MagicMock, mock_succeeds: MagicMock
    ) -> None:
        mock_succeeds.return_value = False

        assert GitRepo().get_commits_since() == []
        mock_git.assert_not_called()

    def test_tags(self, mock_git: MagicMock) -> None:
        mock_git.return_value = "core@1.0.0\n\napi@0.1.0\n"

        assert GitRepo().get_tags() == ["core@1.0.0", "api@0.1.0"]

    def test_tag_sha_peels_annotated_tags(self, mock_git: MagicMock) -> None:
        mock_git.return_value = "f" * 40

        assert GitRepo().get_tag_sha("core@1.0.0") == "f" * 40
        assert mock_git.call_args.args == ("rev-list", "-n", "1", "refs/tags/core@1.0.0")

    def test_is_ancestor(self, mock_succeeds: MagicMock) -> None:
        assert GitRepo().is_ancestor("a", "b")
        assert mock_succeeds.call_args.args == ("git", "merge-base", "--is-ancestor", "a", "b")

    def test_commit_exists(self, mock_succeeds: MagicMock) -> None:
        mock_succeeds.return_value = False

        assert not GitRepo().commit_exists("abc1234")
        assert mock_succeeds.call_args.args == ("git", "cat-file", "-e", "abc1234^{commit}")

    def test_annotated_tag(self, mock_git: MagicMock) -> None:
        GitRepo().create_tag_at("core@1.0.0", "abc", "Release core@1.0.0")

        assert mock_git.call_args.args == (
            "tag", "-a", "core@1.0.0", "abc", "-m", "Release core@1.0.0"
        )

    def test_lightweight_tag(self, mock_git: MagicMock) -> None:
        GitRepo().create_tag_at("core@1.0.0", "abc")

        assert mock_git.call_args.args == ("tag", "core@1.0.0", "abc")

    def test_push_tag(self, mock_git: MagicMock) -> None:
        repo = GitRepo()

        repo.push_tag("core@1.0.0")
        assert mock_git.call_args.args == ("push", "origin", "refs/tags/core@1.0.0")

        repo.push_tag("core@1.0.0", "upstream", force=True)
        assert mock_git.call_args.args == ("push", "--force", "upstream", "refs/tags/core@1.0.0")

    def test_delete_tags(self, mock_git: MagicMock) -> None:
        repo = GitRepo()

        repo.delete_tag("core@1.0.0")
        assert mock_git.call_args.args == ("tag", "-d", "core@1.0.0")

        repo.delete_remote_tag("core@1.0.0", "upstream")
        assert mock_git.call_args.args == ("push", "upstream", "--delete", "refs/tags/core@1.0.0")
