"""Instruction template given to the agent on every iteration."""

from __future__ import annotations

from dataclasses import dataclass
from string import Template

COMPLETION_SENTINEL = "<promise>COMPLETE</promise>"


@dataclass(frozen=True)
class LanguagePreset:
    name: str
    check_command: str
    test_command: str


LANGUAGES: dict[str, LanguagePreset] = {
    "bun": LanguagePreset("Bun (TypeScript)", "bun check", "bun test"),
    "node": LanguagePreset("Node.js (TypeScript)", "npx tsc --noEmit", "npm test"),
    "python": LanguagePreset("Python", "mypy .", "pytest"),
    "go": LanguagePreset("Go", "go build ./...", "go test ./..."),
    "rust": LanguagePreset("Rust", "cargo check", "cargo test"),
    "java": LanguagePreset("Java", "mvn compile", "mvn test"),
    "ruby": LanguagePreset("Ruby", "bundle exec rubocop", "bundle exec rspec"),
    "none": LanguagePreset("(none)", "echo 'no check'", "echo 'no tests'"),
}

DEFAULT_TEMPLATE = f"""\
You are an AI developer working on this project. Your task is to implement features from the PRD.

TECHNOLOGY STACK:
- Language/Runtime: $language
- Technologies: $technologies

INSTRUCTIONS:
1. Read the @.ralph/prd-tasks.json file to find the highest priority feature that has "passes": false
2. Implement that feature completely
3. Verify your changes work by running:
   - Type/build check: $checkCommand
   - Tests: $testCommand
4. Update the PRD entry to set "passes": true once verified
5. Append a brief note about what you did to @.ralph/progress.txt
6. Create a git commit with a descriptive message for this feature
7. Only work on ONE feature per execution

IMPORTANT:
- Focus on a single feature at a time
- Ensure all checks pass before marking complete
- Write clear commit messages
- If the PRD is fully complete (all items pass), output: {COMPLETION_SENTINEL}

Now, read the PRD and begin working on the highest priority incomplete feature.
"""


def resolve_variables(
    template: str,
    *,
    language: str,
    check_command: str,
    test_command: str,
    technologies: list[str] | None = None,
) -> str:
    """Substitute ``$language``, ``$technologies``, ``$checkCommand`` and ``$testCommand``.

    Unknown ``$names`` are left as written.
    """
    preset = LANGUAGES.get(language)
    return Template(template).safe_substitute(
        language=preset.name if preset else language,
        technologies=", ".join(technologies) if technologies else "(none specified)",
        checkCommand=check_command,
        testCommand=test_command,
    )
