"""Assemble the repository context sent to the model, within a token budget.

Files are opaque text: selection is purely by path and filename, never by
parsing source. Size is estimated as characters / 4, which is close enough
for every provider the gateway talks to.
"""

import logging
import math
import posixpath
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .github_client import CommitInfo, RepoTree, TreeEntry
from .quality_assessor import Strategy

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

INCREMENTAL_MAX_FILES = 10
INCREMENTAL_MAX_LINES = 100
FULL_SCAN_MAX_FILES = 20
FULL_SCAN_MAX_LINES = 150

README_TRUNCATE_THRESHOLD = 700
README_HEAD_LINES = 500
README_TAIL_LINES = 200

TREE_MAX_DEPTH = 3

# Progressive truncation, applied in this order when over budget.
FILES_SHRINK_LINES = 50
TREE_SHRINK_LINES = 100
README_SHRINK_LINES = 100
DIFF_SHRINK_LINES = 50

HARD_CUT_MARKER = "\n... (cut to fit context budget)"

SOURCE_EXTENSIONS = (
    ".js", ".jsx", ".ts", ".tsx",
    ".py", ".java", ".cpp", ".c", ".cs",
    ".go", ".rs", ".rb", ".php",
    ".swift", ".kt", ".scala",
    ".sh", ".bash",
    ".yml", ".yaml", ".json",
    ".md", ".sql",
)

IGNORED_DIRS = frozenset({
    "node_modules", ".git", "dist", "build", "coverage", ".next", ".cache",
    "__pycache__", "venv", ".venv", "vendor", "target", ".idea", ".vscode",
})

# Generated files that pass the extension filter but say nothing about the project.
IGNORED_FILENAMES = frozenset({
    "package-lock.json", "yarn.lock", "pnpm-lock.yaml", "composer.lock",
    "poetry.lock", "cargo.lock", "gemfile.lock",
})

# Priority 4: dependency manifests and build descriptors.
MANIFEST_FILENAMES = frozenset({
    "package.json", "pyproject.toml", "setup.py", "setup.cfg", "requirements.txt",
    "pipfile", "cargo.toml", "go.mod", "pom.xml", "build.gradle", "build.gradle.kts",
    "gemfile", "composer.json", "mix.exs", "dockerfile", "docker-compose.yml",
    "docker-compose.yaml", "makefile",
})

# Priority 3: conventional entry points (matched on the filename stem).
ENTRY_POINT_STEMS = frozenset({
    "index", "main", "app", "server", "cli", "__main__", "manage", "wsgi", "asgi", "program",
})

# Priority 2: common source directories (matched on path segments).
SOURCE_DIR_PATTERNS = (
    "api", "services", "controllers", "components", "routes", "handlers",
    "models", "core", "lib", "pkg", "cmd", "src",
)

LANGUAGE_BY_EXTENSION = {
    "js": "javascript", "jsx": "jsx", "ts": "typescript", "tsx": "tsx",
    "py": "python", "rb": "ruby", "go": "go", "rs": "rust", "java": "java",
    "kt": "kotlin", "swift": "swift", "php": "php", "cs": "csharp",
    "cpp": "cpp", "c": "c", "h": "c", "hpp": "cpp", "scala": "scala",
    "md": "markdown", "json": "json", "yaml": "yaml", "yml": "yaml",
    "toml": "toml", "xml": "xml", "html": "html", "css": "css", "scss": "scss",
    "sql": "sql", "sh": "bash", "bash": "bash", "zsh": "bash",
}


@dataclass
class SelectedFile:
    path: str
    content: str
    language: str = ""


@dataclass
class GenerationContext:
    """Everything the prompt is built from. Never persisted."""

    repo_name: str
    repo_owner: str
    tree_summary: str = ""
    existing_readme: Optional[str] = None
    diff_summary: Optional[str] = None
    files: List[SelectedFile] = field(default_factory=list)


@dataclass(frozen=True)
class FileCandidate:
    """Ranked file metadata; what the selection pass is allowed to see."""

    path: str
    size: int
    priority: int
    matches: int = 0

    @property
    def estimated_tokens(self) -> int:
        return math.ceil(self.size / CHARS_PER_TOKEN)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def should_include_file(path: str) -> bool:
    """True if the path has a source-code extension from the allow-list."""
    name = posixpath.basename(path).lower()
    if name in IGNORED_FILENAMES:
        return False
    return name.endswith(SOURCE_EXTENSIONS)


def is_ignored_path(path: str) -> bool:
    return any(part in IGNORED_DIRS for part in path.split("/")[:-1])


def language_for(path: str) -> str:
    name = posixpath.basename(path).lower()
    if name == "dockerfile":
        return "dockerfile"
    if "." not in name:
        return ""
    ext = name.rsplit(".", 1)[-1]
    return LANGUAGE_BY_EXTENSION.get(ext, ext)


def truncate_lines(text: str, max_lines: int) -> str:
    """Keep the first ``max_lines`` lines and say how many were dropped."""
    if not text:
        return text
    lines = text.split("\n")
    if len(lines) <= max_lines:
        return text
    return "\n".join(lines[:max_lines]) + f"\n\n... (truncated {len(lines) - max_lines} lines)"


def truncate_readme(readme: Optional[str]) -> Optional[str]:
    """Head and tail of a long README, so it cannot exhaust the budget alone."""
    if not readme:
        return readme
    lines = readme.split("\n")
    if len(lines) <= README_TRUNCATE_THRESHOLD:
        return readme
    omitted = len(lines) - README_HEAD_LINES - README_TAIL_LINES
    return "\n".join(
        lines[:README_HEAD_LINES]
        + ["", f"... ({omitted} lines omitted) ...", ""]
        + lines[-README_TAIL_LINES:]
    )


def format_tree(entries: Iterable[TreeEntry], max_depth: int = TREE_MAX_DEPTH) -> str:
    """Render the tree with box-drawing connectors, up to ``max_depth`` levels."""
    structure: Dict[str, Optional[dict]] = {}

    for entry in entries:
        parts = entry.path.split("/")
        if len(parts) > max_depth or is_ignored_path(entry.path) or parts[-1] in IGNORED_DIRS:
            continue
        node = structure
        for index, part in enumerate(parts):
            is_leaf = index == len(parts) - 1
            if part not in node:
                node[part] = None if (is_leaf and entry.type == "blob") else {}
            if node[part] is None:
                break
            node = node[part]

    lines: List[str] = []

    def render(node: dict, prefix: str) -> None:
        items = list(node.items())
        for index, (name, child) in enumerate(items):
            last = index == len(items) - 1
            lines.append(f"{prefix}{'└── ' if last else '├── '}{name}{'' if child is None else '/'}")
            if child is not None:
                render(child, prefix + ("    " if last else "│   "))

    render(structure, "")
    return "\n".join(lines)


def format_commit_diff(commit: Optional[CommitInfo]) -> Optional[str]:
    """Commit message, changed files grouped by status, and line totals."""
    if commit is None:
        return None

    out: List[str] = []
    if commit.message:
        out.append(f"Commit Message: {commit.message}")
        out.append("")

    if commit.files:
        out.append(f"Files Changed: {len(commit.files)}")
        out.append("")

        groups = {status: [f for f in commit.files if f.status == status]
                  for status in ("added", "modified", "removed", "renamed")}

        if groups["added"]:
            out.append(f"Added ({len(groups['added'])}):")
            out.extend(f"  + {f.filename} (+{f.additions} lines)" for f in groups["added"])
            out.append("")
        if groups["modified"]:
            out.append(f"Modified ({len(groups['modified'])}):")
            out.extend(f"  ~ {f.filename} (+{f.additions}/-{f.deletions} lines)" for f in groups["modified"])
            out.append("")
        if groups["removed"]:
            out.append(f"Removed ({len(groups['removed'])}):")
            out.extend(f"  - {f.filename}" for f in groups["removed"])
            out.append("")
        if groups["renamed"]:
            out.append(f"Renamed ({len(groups['renamed'])}):")
            out.extend(f"  → {f.previous_filename} → {f.filename}" for f in groups["renamed"])
            out.append("")

        out.append(f"Total Changes: +{commit.additions} -{commit.deletions}")

    return "\n".join(out).strip()


def payload_chars(context: GenerationContext) -> int:
    """Characters of repository payload. Repository identity is not counted."""
    total = len(context.tree_summary or "")
    total += len(context.existing_readme or "")
    total += len(context.diff_summary or "")
    total += sum(len(f.path) + len(f.content) for f in context.files)
    return total


def estimate_tokens(context: GenerationContext) -> int:
    return math.ceil(payload_chars(context) / CHARS_PER_TOKEN)


def _priority(path: str) -> tuple:
    """(priority, pattern matches) for a path, or (0, 0) if not a candidate."""
    name = posixpath.basename(path).lower()
    directories = [part.lower() for part in path.split("/")[:-1]]
    matches = sum(1 for part in directories if part in SOURCE_DIR_PATTERNS)

    if name in MANIFEST_FILENAMES:
        return 4, matches
    if not should_include_file(path):
        return 0, 0
    stem = name.rsplit(".", 1)[0]
    if stem in ENTRY_POINT_STEMS:
        return 3, matches
    if matches:
        return 2, matches
    return 1, 0


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class ContextBuilder:
    """Builds a budget-compliant GenerationContext for one pipeline run.

    Args:
        fetch_content: Returns a file's text at the triggering commit, or
            None if it no longer exists. Errors propagate.
        budget_tokens: Hard upper bound for ``estimate_tokens(context)``.
        readme_path: Excluded from file selection (it is sent separately).
    """

    def __init__(
        self,
        fetch_content: Callable[[str], Optional[str]],
        budget_tokens: int,
        readme_path: str = "README.md",
    ):
        if budget_tokens < 1:
            raise ValueError("budget_tokens must be positive")
        self.fetch_content = fetch_content
        self.budget_tokens = budget_tokens
        self.readme_path = readme_path.lower()

    def rank_candidates(self, strategy: Strategy, tree: RepoTree, commit: Optional[CommitInfo]) -> List[FileCandidate]:
        """Candidate files for ``strategy``, best first."""
        if strategy == Strategy.INCREMENTAL:
            sizes = {e.path: e.size or 0 for e in tree.entries}
            changed = []
            for f in (commit.files if commit else []):
                if f.status == "removed" or not self._eligible(f.filename):
                    continue
                changed.append(FileCandidate(path=f.filename, size=sizes.get(f.filename, 0), priority=1))
            return changed[:INCREMENTAL_MAX_FILES]

        ranked = []
        for entry in tree.entries:
            if entry.type != "blob" or is_ignored_path(entry.path):
                continue
            if entry.path.lower() == self.readme_path:
                continue
            priority, matches = _priority(entry.path)
            if priority == 0:
                continue
            ranked.append(FileCandidate(path=entry.path, size=entry.size or 0, priority=priority, matches=matches))

        ranked.sort(key=lambda c: (-c.priority, -c.matches, c.path.count("/"), c.path))
        return ranked

    def build(
        self,
        strategy: Strategy,
        repo_name: str,
        repo_owner: str,
        tree: RepoTree,
        commit: Optional[CommitInfo],
        existing_readme: Optional[str],
        selected_paths: Optional[Sequence[str]] = None,
    ) -> GenerationContext:
        """
        Assemble the context for ``strategy`` and fit it to the budget.

        Args:
            strategy: From the quality assessor.
            tree: Recursive tree of the default branch.
            commit: The triggering commit (changed files and message).
            existing_readme: Current README text, if any.
            selected_paths: Optional pruned list from the selection pass;
                only candidates in it are kept, in rank order.

        Returns:
            A context whose estimate_tokens() is within budget. Never raises
            for oversized input.
        """
        candidates = self.rank_candidates(strategy, tree, commit)
        if strategy == Strategy.INCREMENTAL:
            max_lines = INCREMENTAL_MAX_LINES
        else:
            max_lines = FULL_SCAN_MAX_LINES
            if selected_paths:
                keep = set(selected_paths)
                pruned = [c for c in candidates if c.path in keep]
                candidates = pruned or candidates
            candidates = candidates[:FULL_SCAN_MAX_FILES]

        files = []
        for candidate in candidates:
            content = self.fetch_content(candidate.path)
            if content is None:
                logger.debug(f"Skipping {candidate.path}: not found at this commit")
                continue
            files.append(SelectedFile(
                path=candidate.path,
                content=truncate_lines(content, max_lines),
                language=language_for(candidate.path),
            ))

        tree_summary = format_tree(tree.entries)
        if tree.truncated:
            tree_summary += "\n(tree listing truncated by GitHub)"

        context = GenerationContext(
            repo_name=repo_name,
            repo_owner=repo_owner,
            tree_summary=tree_summary,
            existing_readme=truncate_readme(existing_readme),
            diff_summary=format_commit_diff(commit),
            files=files,
        )
        return self.fit_to_budget(context)

    def fit_to_budget(self, context: GenerationContext, budget_tokens: Optional[int] = None) -> GenerationContext:
        """Shrink ``context`` until it fits. Returns a new object; input untouched."""
        budget = budget_tokens or self.budget_tokens
        if estimate_tokens(context) <= budget:
            return context

        before = estimate_tokens(context)
        ctx = replace(context, files=[replace(f) for f in context.files])

        steps = (
            lambda c: setattr(c, "files", [replace(f, content=truncate_lines(f.content, FILES_SHRINK_LINES)) for f in c.files]),
            lambda c: setattr(c, "tree_summary", truncate_lines(c.tree_summary, TREE_SHRINK_LINES)),
            lambda c: setattr(c, "existing_readme", truncate_lines(c.existing_readme, README_SHRINK_LINES)),
            lambda c: setattr(c, "diff_summary", truncate_lines(c.diff_summary, DIFF_SHRINK_LINES)),
        )
        for step in steps:
            step(ctx)
            if estimate_tokens(ctx) <= budget:
                self._log_shrink(before, ctx, budget)
                return ctx

        # Hard pass: drop the lowest-ranked files, then cut text outright.
        budget_chars = budget * CHARS_PER_TOKEN
        while ctx.files and payload_chars(ctx) > budget_chars:
            ctx.files.pop()

        for attr in ("tree_summary", "existing_readme", "diff_summary"):
            over = payload_chars(ctx) - budget_chars
            if over <= 0:
                break
            value = getattr(ctx, attr) or ""
            keep = len(value) - over - len(HARD_CUT_MARKER)
            setattr(ctx, attr, value[:keep] + HARD_CUT_MARKER if keep > 0 else "")

        self._log_shrink(before, ctx, budget)
        return ctx

    @staticmethod
    def _log_shrink(before: int, ctx: GenerationContext, budget: int) -> None:
        logger.info(
            "Context truncated to fit budget",
            extra={"tokens_before": before, "tokens_after": estimate_tokens(ctx), "budget": budget, "files": len(ctx.files)},
        )

    def _eligible(self, path: str) -> bool:
        if path.lower() == self.readme_path or is_ignored_path(path):
            return False
        return should_include_file(path)
