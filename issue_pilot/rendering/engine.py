"""Secure Jinja2 template rendering engine.

Prompts and tracker comments are rendered from package templates. Issue
bodies and reviewer output are untrusted text, so rendering runs in a
sandboxed environment:

    - Sandboxed environment prevents arbitrary code execution
    - StrictUndefined catches missing variables early (fail-fast)
    - Template path validation prevents directory traversal attacks

Key Exports:
    SecureTemplateEngine: Main class for secure template rendering.

Example:
    >>> engine = SecureTemplateEngine()
    >>> text = engine.render("dependency_chain.md.j2", {"number": 20, ...})
"""

from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined, TemplateNotFound
from jinja2.sandbox import SandboxedEnvironment


def truncate_text(value: str | None, limit: int = 500) -> str:
    """Shorten ``value`` to at most ``limit`` characters, marking the cut."""
    if not value:
        return ""
    if len(value) <= limit:
        return value
    return value[:limit] + "..."


def issue_refs(numbers: list[int], separator: str = ", ") -> str:
    """Format issue numbers as ``#1, #2``."""
    return separator.join(f"#{n}" for n in numbers)


class SecureTemplateEngine:
    """Sandboxed Jinja2 environment over a template directory.

    Attributes:
        template_dir: Resolved path to the template directory.
        env: The SandboxedEnvironment instance.
    """

    def __init__(self, template_dir: Path | None = None) -> None:
        """Initialize secure template engine.

        Args:
            template_dir: Root directory for templates. If None, uses the
                package's built-in templates directory.

        Raises:
            ValueError: If template_dir doesn't exist or isn't a directory.
        """
        if template_dir is None:
            template_dir = Path(__file__).parent.parent / "templates"

        self.template_dir = template_dir.resolve()

        if not self.template_dir.exists():
            raise ValueError(f"Template directory does not exist: {self.template_dir}")
        if not self.template_dir.is_dir():
            raise ValueError(f"Template path is not a directory: {self.template_dir}")

        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters.update(
            {
                "truncate_text": truncate_text,
                "issue_refs": issue_refs,
            }
        )

    def validate_template_path(self, template_path: str) -> Path:
        """Validate template path to prevent directory traversal attacks.

        Raises:
            ValueError: If path escapes template directory.
            TemplateNotFound: If the template file doesn't exist.
        """
        requested_path = (self.template_dir / template_path).resolve()

        try:
            requested_path.relative_to(self.template_dir)
        except ValueError as e:
            raise ValueError(f"Template path escapes template directory: {template_path}") from e

        if not requested_path.exists():
            raise TemplateNotFound(template_path)

        return requested_path

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        """Render a template with the given context.

        Raises:
            TemplateNotFound: If template doesn't exist.
            ValueError: If the path escapes the template directory.
            jinja2.UndefinedError: If the template uses a missing variable.
        """
        self.validate_template_path(template_path)
        template = self.env.get_template(template_path)
        return template.render(**context)

    def list_templates(self, pattern: str = "*.j2") -> list[str]:
        """List template paths relative to the template directory."""
        return sorted(str(p.relative_to(self.template_dir)) for p in self.template_dir.glob(pattern))
