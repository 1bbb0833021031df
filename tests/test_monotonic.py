"""Tests for cascade_release.monotonic."""

from __future__ import annotations

import pytest
from fakes import FakeGit

from cascade_release.monotonic import (
    ReachabilityCache,
    audit_package_history,
    get_package_tag_infos,
    validate_monotonic,
)


@pytest.fixture
def line(fake_git: FakeGit) -> dict[str, str]:
    """C1 → C2 → X → C3 with core@1.0.0, 1.1.0 and 1.2.0 on the C commits."""
    shas = {
        "c1": fake_git.commit("c1"),
        "c2": fake_git.commit("c2"),
        "x": fake_git.commit("x"),
        "c3": fake_git.commit("c3"),
    }
    fake_git.tag("core@1.0.0", shas["c1"])
    fake_git.tag("core@1.1.0", shas["c2"])
    fake_git.tag("core@1.2.0", shas["c3"])
    return shas


class TestGetPackageTagInfos:
    def test_official_tags_of_scope_highest_first(
        self, fake_git: FakeGit, line: dict[str, str]
    ) -> None:
        fake_git.tag("core@1.3.0-next.1", line["c3"])
        fake_git.tag("api@5.0.0", line["c1"])

        infos = get_package_tag_infos("core", fake_git.get_tags(), fake_git)

        assert [i.version for i in infos] == ["1.2.0", "1.1.0", "1.0.0"]
        assert infos[0].sha == line["c3"]


class TestValidateMonotonic:
    """Tests for validate_monotonic()."""

    def test_lower_version_after_higher_ancestor_rejected(
        self, fake_git: FakeGit, line: dict[str, str]
    ) -> None:
        result = validate_monotonic(line["x"], "core", "1.0.5", fake_git.get_tags(), fake_git)

        assert not result.valid
        assert [(v.tag, v.relationship) for v in result.violations] == [
            ("core@1.1.0", "ancestor")
        ]

    def test_version_between_neighbours_accepted(
        self, fake_git: FakeGit, line: dict[str, str]
    ) -> None:
        result = validate_monotonic(line["x"], "core", "1.1.5", fake_git.get_tags(), fake_git)

        assert result.valid

    def test_all_violations_collected(self, fake_git: FakeGit, line: dict[str, str]) -> None:
        result = validate_monotonic(line["x"], "core", "2.0.0", fake_git.get_tags(), fake_git)

        assert [(v.tag, v.relationship) for v in result.violations] == [
            ("core@1.2.0", "descendant")
        ]

        result = validate_monotonic(line["x"], "core", "0.9.0", fake_git.get_tags(), fake_git)

        assert sorted(v.tag for v in result.violations) == ["core@1.0.0", "core@1.1.0"]

    def test_parallel_branch_imposes_nothing(
        self, fake_git: FakeGit, line: dict[str, str]
    ) -> None:
        side = fake_git.commit("side", parents=[line["c1"]])
        fake_git.tag("core@9.0.0", side)

        result = validate_monotonic(line["x"], "core", "1.1.5", fake_git.get_tags(), fake_git)

        assert result.valid

    def test_same_commit_counts_as_ancestor(
        self, fake_git: FakeGit, line: dict[str, str]
    ) -> None:
        result = validate_monotonic(line["c2"], "core", "1.0.9", fake_git.get_tags(), fake_git)

        assert [v.tag for v in result.violations] == ["core@1.1.0"]

    def test_ignored_tags_skipped(self, fake_git: FakeGit, line: dict[str, str]) -> None:
        result = validate_monotonic(
            line["x"], "core", "1.0.5", fake_git.get_tags(), fake_git, ignore=["core@1.1.0"]
        )

        assert result.valid

    def test_prereleases_do_not_participate(
        self, fake_git: FakeGit, line: dict[str, str]
    ) -> None:
        fake_git.tag("core@5.0.0-next.1", line["c1"])

        result = validate_monotonic(line["x"], "core", "1.1.5", fake_git.get_tags(), fake_git)

        assert result.valid

    def test_shared_cache_avoids_repeat_queries(
        self, fake_git: FakeGit, line: dict[str, str]
    ) -> None:
        cache = ReachabilityCache(fake_git)
        tags = fake_git.get_tags()

        validate_monotonic(line["x"], "core", "1.1.5", tags, fake_git, cache=cache)
        queries = fake_git.ancestor_queries
        validate_monotonic(line["x"], "core", "1.1.6", tags, fake_git, cache=cache)

        assert fake_git.ancestor_queries == queries
        assert cache.lookups == queries


class TestAuditPackageHistory:
    """Tests for audit_package_history()."""

    def test_clean_history(self, fake_git: FakeGit, line: dict[str, str]) -> None:
        result = audit_package_history("core", fake_git.get_tags(), fake_git)

        assert result.valid
        assert len(result.releases) == 3

    def test_out_of_order_pair_reported(self, fake_git: FakeGit, line: dict[str, str]) -> None:
        fake_git.tag("core@1.1.5", line["c1"])

        result = audit_package_history("core", fake_git.get_tags(), fake_git)

        assert len(result.violations) == 1
        violation = result.violations[0]
        assert (violation.earlier.version, violation.later.version) == ("1.1.5", "1.1.0")

    def test_tags_sharing_a_commit_are_unordered(
        self, fake_git: FakeGit, line: dict[str, str]
    ) -> None:
        fake_git.tag("core@1.0.1", line["c1"])

        assert audit_package_history("core", fake_git.get_tags(), fake_git).valid

    def test_parallel_branches_never_violate(self, fake_git: FakeGit) -> None:
        root = fake_git.commit("root")
        left = fake_git.commit("left", parents=[root])
        right = fake_git.commit("right", parents=[root])
        fake_git.tag("core@2.0.0", left)
        fake_git.tag("core@1.5.0", right)

        assert audit_package_history("core", fake_git.get_tags(), fake_git).valid
