"""Prompt templates for README synthesis and file selection."""

import json
from typing import Sequence

from .context_builder import FileCandidate, GenerationContext
from .quality_assessor import QualityAssessment, Strategy, MAX_SCORE

SYSTEM_PROMPT = """You are a technical documentation architect. You write README.md files that a developer can follow to understand, install, run and extend a project.

Sections to cover, adapting depth to the size of the project:
1. Title and a two or three sentence overview of what the project does and for whom
2. Features
3. Tech stack (languages, frameworks, key dependencies and what they are used for)
4. Architecture and directory structure (non-trivial projects only)
5. Getting started: prerequisites, installation, configuration (environment variables with descriptions)
6. Usage with real examples taken from the source
7. API reference (only if the project exposes one)
8. Development and testing
9. Deployment (only if the repository shows how it is deployed)
10. Contributing and license

Quality rules:
- Only state what the provided files and tree support. Do not invent endpoints, flags, or environment variables.
- Every command and code example must be copy-paste ready.
- When updating an existing README: never remove badges, acknowledgments, contributor lists or license text; keep custom sections and the project's voice.

Output ONLY the complete README in Markdown. No preamble, no explanations, no surrounding code fence."""

_TASKS = {
    Strategy.FULL: (
        "## TASK: FULL README GENERATION\n\n"
        "Create a comprehensive, production-ready README.md from scratch using the codebase context below."
    ),
    Strategy.ENHANCE: (
        "## TASK: README ENHANCEMENT\n\n"
        "The existing README lacks depth. Significantly expand it using the codebase context while preserving existing content."
    ),
    Strategy.INCREMENTAL: (
        "## TASK: INCREMENTAL UPDATE\n\n"
        "The README is comprehensive. Only update sections affected by the recent commit. Preserve everything else."
    ),
}

_INSTRUCTIONS = {
    Strategy.FULL: """Generate a **complete README** covering every section from the system prompt that applies.
- Work out the project's purpose, architecture and usage from the files and tree
- Use real code examples from the source files
- Document configuration options found in the code
- Explain the project structure using the file tree""",
    Strategy.ENHANCE: """**Significantly enhance** the existing README:
- Keep all existing content that is still accurate
- Add missing sections from the system prompt
- Expand shallow sections with detail and examples from the source
- Make installation and usage guides complete""",
    Strategy.INCREMENTAL: """**Incrementally update** the README:
- ONLY modify sections affected by the commit changes
- Keep unaffected sections EXACTLY as they are
- Document new features introduced by the commit
- Fix documentation the changes made outdated
- Do NOT restructure or rewrite sections that were not affected""",
}


def build_user_prompt(context: GenerationContext, assessment: QualityAssessment) -> str:
    """Render the synthesis prompt for one context."""
    strategy = assessment.strategy
    parts = [
        "## ANALYSIS RESULT",
        f"**Strategy**: {strategy.value.upper()}",
        f"**Reason**: {assessment.reason}",
        f"**Depth Score**: {assessment.score}/{MAX_SCORE}",
        "",
        "---",
        "",
        _TASKS[strategy],
        "",
        f"**Repository**: {context.repo_owner}/{context.repo_name}",
        "",
    ]

    if context.tree_summary:
        parts.append(f"## REPOSITORY STRUCTURE\n```\n{context.tree_summary}\n```\n")

    if context.diff_summary:
        parts.append(f"## RECENT COMMIT CHANGES\n```diff\n{context.diff_summary}\n```\n")

    if context.files:
        if strategy == Strategy.INCREMENTAL:
            parts.append("## MODIFIED FILES (Current Content)\n")
        else:
            parts.append("## KEY SOURCE FILES\n")
        for f in context.files:
            parts.append(f"### File: `{f.path}`\n```{f.language}\n{f.content}\n```\n")

    if context.existing_readme:
        parts.append("## EXISTING README")
        if strategy == Strategy.INCREMENTAL:
            parts.append("*This README is comprehensive. Preserve structure and only update affected sections.*\n")
        else:
            parts.append("*This README needs enhancement. Use it as a base but expand considerably.*\n")
        parts.append(f"```markdown\n{context.existing_readme}\n```\n")

    parts.append("---\n\n## INSTRUCTIONS\n")
    parts.append(_INSTRUCTIONS[strategy])
    return "\n".join(parts)


SELECTION_SYSTEM_PROMPT = """You pick the files that best explain a software project for someone writing its README.
You see file paths and sizes only, never contents.
Prefer dependency manifests, entry points, public API modules and configuration.
Skip tests, fixtures, generated code and near-duplicates.
Reply with a JSON array of paths and nothing else."""


def build_selection_prompt(candidates: Sequence[FileCandidate], limit: int) -> str:
    listing = [{"path": c.path, "approx_tokens": c.estimated_tokens} for c in candidates]
    return (
        f"Choose at most {limit} files from this list, most important first.\n\n"
        f"{json.dumps(listing, indent=1)}\n\n"
        'Reply format: ["path/one", "path/two"]'
    )
