"""Tests for file ranking, truncation and budget fitting."""

import pytest

from autoreadme.services.context_builder import (
    FULL_SCAN_MAX_FILES,
    HARD_CUT_MARKER,
    INCREMENTAL_MAX_FILES,
    ContextBuilder,
    GenerationContext,
    SelectedFile,
    estimate_tokens,
    format_commit_diff,
    format_tree,
    is_ignored_path,
    language_for,
    should_include_file,
    truncate_lines,
    truncate_readme,
)
from autoreadme.services.github_client import CommitFile, CommitInfo, RepoTree, TreeEntry
from autoreadme.services.quality_assessor import Strategy


def _tree(*paths, truncated=False) -> RepoTree:
    entries = []
    seen_dirs = set()
    for path in paths:
        parts = path.split("/")
        for depth in range(1, len(parts)):
            directory = "/".join(parts[:depth])
            if directory not in seen_dirs:
                seen_dirs.add(directory)
                entries.append(TreeEntry(path=directory, type="tree"))
        entries.append(TreeEntry(path=path, type="blob", size=100))
    return RepoTree(sha="tree-sha", entries=entries, truncated=truncated)


def _commit(*files, message="feat: change things") -> CommitInfo:
    return CommitInfo(
        sha="a" * 40,
        message=message,
        files=list(files),
        additions=sum(f.additions for f in files),
        deletions=sum(f.deletions for f in files),
    )


class FakeFetcher:
    """Records which paths were fetched and serves canned content."""

    def __init__(self, contents=None, default="line\n"):
        self.contents = contents or {}
        self.default = default
        self.fetched = []

    def __call__(self, path):
        self.fetched.append(path)
        if path in self.contents:
            return self.contents[path]
        return self.default


class TestHelpers:
    @pytest.mark.parametrize("path,expected", [
        ("src/index.js", True),
        ("app/main.py", True),
        ("config.yaml", True),
        ("docs/guide.md", True),
        ("logo.png", False),
        ("Makefile", False),
        ("package-lock.json", False),
        ("frontend/yarn.lock", False),
    ])
    def test_should_include_file(self, path, expected):
        assert should_include_file(path) is expected

    def test_ignored_directories(self):
        assert is_ignored_path("node_modules/lodash/index.js") is True
        assert is_ignored_path("web/dist/bundle.js") is True
        assert is_ignored_path("src/build.js") is False

    def test_language_for(self):
        assert language_for("src/app.tsx") == "tsx"
        assert language_for("main.py") == "python"
        assert language_for("Dockerfile") == "dockerfile"
        assert language_for("LICENSE") == ""

    def test_truncate_lines_reports_dropped_count(self):
        text = "\n".join(str(i) for i in range(10))
        result = truncate_lines(text, 4)
        assert result.startswith("0\n1\n2\n3\n")
        assert result.endswith("... (truncated 6 lines)")

    def test_truncate_lines_short_text_unchanged(self):
        assert truncate_lines("a\nb", 5) == "a\nb"
        assert truncate_lines("", 5) == ""

    def test_long_readme_keeps_head_and_tail(self):
        readme = "\n".join(f"line {i}" for i in range(1000))
        result = truncate_readme(readme)
        lines = result.split("\n")

        assert lines[0] == "line 0"
        assert lines[499] == "line 499"
        assert "... (300 lines omitted) ..." in lines
        assert lines[-1] == "line 999"
        assert "line 500" not in lines

    def test_readme_under_threshold_unchanged(self):
        readme = "\n".join("x" for _ in range(700))
        assert truncate_readme(readme) == readme
        assert truncate_readme(None) is None

    def test_format_tree(self):
        tree = _tree("package.json", "src/index.js", "src/lib/util.js", "node_modules/x/index.js")
        rendered = format_tree(tree.entries)

        assert rendered.split("\n") == [
            "├── package.json",
            "└── src/",
            "    ├── index.js",
            "    └── lib/",
            "        └── util.js",
        ]

    def test_format_tree_depth_limit(self):
        tree = _tree("a/b/c/d/deep.js")
        rendered = format_tree(tree.entries, max_depth=3)
        assert "deep.js" not in rendered
        assert "c/" in rendered

    def test_format_commit_diff_groups_by_status(self):
        commit = _commit(
            CommitFile("src/new.js", "added", additions=10),
            CommitFile("src/index.js", "modified", additions=3, deletions=1),
            CommitFile("old.js", "removed", deletions=20),
            CommitFile("lib/b.js", "renamed", previous_filename="lib/a.js"),
            message="feat: rework",
        )
        diff = format_commit_diff(commit)

        assert diff.startswith("Commit Message: feat: rework")
        assert "Files Changed: 4" in diff
        assert "  + src/new.js (+10 lines)" in diff
        assert "  ~ src/index.js (+3/-1 lines)" in diff
        assert "  - old.js" in diff
        assert "  → lib/a.js → lib/b.js" in diff
        assert diff.endswith("Total Changes: +13 -21")

    def test_format_commit_diff_without_commit(self):
        assert format_commit_diff(None) is None


class TestRanking:
    def test_manifest_ranks_above_entry_point(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=8000)
        tree = _tree("src/index.js", "package.json")

        ranked = builder.rank_candidates(Strategy.FULL, tree, None)

        assert [c.path for c in ranked] == ["package.json", "src/index.js"]
        assert ranked[0].priority == 4
        assert ranked[1].priority == 3

    def test_full_scan_priority_order(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=8000)
        tree = _tree(
            "docs/notes.md",
            "src/services/billing.py",
            "src/helpers.py",
            "main.py",
            "pyproject.toml",
            "README.md",
            "node_modules/pkg/index.js",
            "assets/logo.png",
        )

        ranked = [c.path for c in builder.rank_candidates(Strategy.FULL, tree, None)]

        assert ranked == [
            "pyproject.toml",
            "main.py",
            "src/services/billing.py",
            "src/helpers.py",
            "docs/notes.md",
        ]

    def test_incremental_uses_changed_files_only(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=8000)
        commit = _commit(
            CommitFile("src/index.js", "modified"),
            CommitFile("gone.js", "removed"),
            CommitFile("README.md", "modified"),
            CommitFile("image.png", "added"),
        )

        ranked = builder.rank_candidates(Strategy.INCREMENTAL, _tree("src/index.js"), commit)

        assert [c.path for c in ranked] == ["src/index.js"]

    def test_incremental_caps_file_count(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=8000)
        commit = _commit(*[CommitFile(f"src/f{i}.js", "modified") for i in range(15)])

        ranked = builder.rank_candidates(Strategy.INCREMENTAL, _tree(), commit)

        assert len(ranked) == INCREMENTAL_MAX_FILES


class TestBuild:
    def test_full_scan_fetches_ranked_files(self):
        fetcher = FakeFetcher({"package.json": '{"name": "hello"}', "src/index.js": "console.log(1)"})
        builder = ContextBuilder(fetcher, budget_tokens=8000)
        tree = _tree("src/index.js", "package.json")

        context = builder.build(Strategy.FULL, "hello", "octocat", tree, None, None)

        assert [f.path for f in context.files] == ["package.json", "src/index.js"]
        assert context.files[0].language == "json"
        assert context.existing_readme is None
        assert "package.json" in context.tree_summary

    def test_full_scan_caps_file_count(self):
        fetcher = FakeFetcher()
        builder = ContextBuilder(fetcher, budget_tokens=100000)
        tree = _tree(*[f"src/m{i:02d}.py" for i in range(30)])

        context = builder.build(Strategy.FULL, "hello", "octocat", tree, None, None)

        assert len(context.files) == FULL_SCAN_MAX_FILES
        assert len(fetcher.fetched) == FULL_SCAN_MAX_FILES

    def test_incremental_fetches_only_changed_files(self):
        fetcher = FakeFetcher()
        builder = ContextBuilder(fetcher, budget_tokens=8000)
        tree = _tree("src/index.js", "src/other.js", "package.json")
        commit = _commit(CommitFile("src/index.js", "modified", additions=1))

        context = builder.build(Strategy.INCREMENTAL, "hello", "octocat", tree, commit, "# Hello")

        assert fetcher.fetched == ["src/index.js"]
        assert [f.path for f in context.files] == ["src/index.js"]
        assert "Commit Message: feat: change things" in context.diff_summary

    def test_incremental_truncates_file_content(self):
        fetcher = FakeFetcher(default="\n".join(str(i) for i in range(300)))
        builder = ContextBuilder(fetcher, budget_tokens=100000)
        commit = _commit(CommitFile("src/index.js", "modified"))

        context = builder.build(Strategy.INCREMENTAL, "hello", "octocat", _tree("src/index.js"), commit, "# Hello")

        assert "... (truncated 200 lines)" in context.files[0].content

    def test_selected_paths_prune_but_keep_rank_order(self):
        fetcher = FakeFetcher()
        builder = ContextBuilder(fetcher, budget_tokens=8000)
        tree = _tree("main.py", "pyproject.toml", "src/a.py", "src/b.py")

        context = builder.build(
            Strategy.ENHANCE, "hello", "octocat", tree, None, "# Hello",
            selected_paths=["src/a.py", "pyproject.toml"],
        )

        assert [f.path for f in context.files] == ["pyproject.toml", "src/a.py"]

    def test_unknown_selected_paths_fall_back_to_ranking(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=8000)
        tree = _tree("main.py", "pyproject.toml")

        context = builder.build(Strategy.FULL, "hello", "octocat", tree, None, None, selected_paths=["nope.py"])

        assert [f.path for f in context.files] == ["pyproject.toml", "main.py"]

    def test_file_missing_at_commit_is_skipped(self):
        fetcher = FakeFetcher({"main.py": None})
        builder = ContextBuilder(fetcher, budget_tokens=8000)

        context = builder.build(Strategy.FULL, "hello", "octocat", _tree("main.py", "pyproject.toml"), None, None)

        assert [f.path for f in context.files] == ["pyproject.toml"]

    def test_truncated_tree_is_noted(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=8000)

        context = builder.build(Strategy.FULL, "hello", "octocat", _tree("main.py", truncated=True), None, None)

        assert context.tree_summary.endswith("(tree listing truncated by GitHub)")

    def test_fetch_errors_propagate(self):
        def broken(path):
            raise RuntimeError("network down")

        builder = ContextBuilder(broken, budget_tokens=8000)
        with pytest.raises(RuntimeError):
            builder.build(Strategy.FULL, "hello", "octocat", _tree("main.py"), None, None)

    def test_rejects_non_positive_budget(self):
        with pytest.raises(ValueError):
            ContextBuilder(FakeFetcher(), budget_tokens=0)


class TestBudget:
    def _big_context(self):
        return GenerationContext(
            repo_name="hello",
            repo_owner="octocat",
            tree_summary="\n".join(f"├── file{i}.py" for i in range(400)),
            existing_readme="\n".join(f"readme line {i}" for i in range(600)),
            diff_summary="\n".join(f"  ~ f{i}.py (+1/-1 lines)" for i in range(200)),
            files=[SelectedFile(f"src/m{i}.py", "\n".join(f"code {j}" for j in range(150)), "python") for i in range(20)],
        )

    def test_context_within_budget_is_returned_unchanged(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=8000)
        context = GenerationContext(repo_name="hello", repo_owner="octocat", tree_summary="├── a.py")

        assert builder.fit_to_budget(context) is context

    @pytest.mark.parametrize("budget", [1, 50, 500, 2000, 5000, 8000])
    def test_result_always_fits(self, budget):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=budget)

        fitted = builder.fit_to_budget(self._big_context())

        assert estimate_tokens(fitted) <= budget

    def test_input_is_not_mutated(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=500)
        original = self._big_context()
        snapshot = estimate_tokens(original)

        builder.fit_to_budget(original)

        assert estimate_tokens(original) == snapshot
        assert len(original.files) == 20

    def test_files_are_shrunk_before_other_sections(self):
        context = self._big_context()
        after_files = GenerationContext(
            repo_name="hello",
            repo_owner="octocat",
            tree_summary=context.tree_summary,
            existing_readme=context.existing_readme,
            diff_summary=context.diff_summary,
            files=[SelectedFile(f.path, truncate_lines(f.content, 50), f.language) for f in context.files],
        )
        builder = ContextBuilder(FakeFetcher(), budget_tokens=estimate_tokens(after_files))

        fitted = builder.fit_to_budget(context)

        assert fitted.tree_summary == context.tree_summary
        assert fitted.existing_readme == context.existing_readme
        assert all("... (truncated 100 lines)" in f.content for f in fitted.files)

    def test_hard_pass_drops_lowest_ranked_files_first(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=1500)

        fitted = builder.fit_to_budget(self._big_context())

        kept = [f.path for f in fitted.files]
        assert 0 < len(kept) < 20
        assert kept == [f"src/m{i}.py" for i in range(len(kept))]

    def test_hard_cut_marks_the_text(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=860)

        fitted = builder.fit_to_budget(self._big_context())

        assert fitted.files == []
        assert fitted.tree_summary.endswith(HARD_CUT_MARKER)

    def test_explicit_budget_overrides_default(self):
        builder = ContextBuilder(FakeFetcher(), budget_tokens=100000)

        fitted = builder.fit_to_budget(self._big_context(), budget_tokens=300)

        assert estimate_tokens(fitted) <= 300
