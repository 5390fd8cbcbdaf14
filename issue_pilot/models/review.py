"""Review verdict models.

The review backend returns a structured verdict: an overall pass/fail
decision, per-dimension scores and a list of findings. Blocking findings
(critical/high) are fed back into the next implementation attempt when the
review fails; non-blocking findings (medium/low) of a passing review are
collected into a follow-up issue.

Example:
    A failing verdict::

        verdict = ReviewVerdict(
            passed=False,
            summary="Pagination is off by one",
            scores={"correctness": 0.4, "spec_compliance": 0.7},
            findings=[
                ReviewFinding(
                    severity=Severity.HIGH,
                    category="correctness",
                    file="app/pager.py",
                    line=42,
                    finding="Last page is never returned",
                    suggestion="Use ceil division for the page count",
                )
            ],
        )
"""

from enum import Enum

from pydantic import BaseModel, Field


class Severity(str, Enum):
    """Severity of a single review finding."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def blocking(self) -> bool:
        """Check if findings of this severity must be fixed before completion."""
        return self in (Severity.CRITICAL, Severity.HIGH)


class ReviewFinding(BaseModel):
    """One issue reported by the reviewer."""

    severity: Severity = Field(default=Severity.MEDIUM, description="Finding severity")
    category: str = Field(default="general", description="Review dimension the finding belongs to")
    file: str | None = Field(default=None, description="File the finding refers to")
    line: int | None = Field(default=None, description="Line the finding refers to")
    finding: str = Field(..., description="What is wrong")
    suggestion: str | None = Field(default=None, description="How to fix it")

    @property
    def location(self) -> str:
        """Format ``file:line`` for display, or an empty string."""
        if not self.file:
            return ""
        return f"{self.file}:{self.line}" if self.line is not None else self.file


class ReviewVerdict(BaseModel):
    """Structured result of one independent review."""

    passed: bool = Field(..., description="Overall verdict")
    summary: str = Field(default="", description="One-paragraph summary")
    scores: dict[str, float] = Field(default_factory=dict, description="Per-dimension scores in [0, 1]")
    findings: list[ReviewFinding] = Field(default_factory=list)
    advice: str = Field(default="", description="Free-form advice for the next attempt")
    raw: str | None = Field(default=None, description="Raw reviewer output")
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    model: str | None = Field(default=None, description="Model that produced the review")

    @property
    def blocking_findings(self) -> list[ReviewFinding]:
        """Findings that must be fixed before the work can complete."""
        return [f for f in self.findings if f.severity.blocking]

    @property
    def non_blocking_findings(self) -> list[ReviewFinding]:
        """Findings that can be deferred to a follow-up issue."""
        return [f for f in self.findings if not f.severity.blocking]
