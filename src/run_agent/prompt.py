"""Prompt composition for harness runs."""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from pathlib import Path

REPORT_HEADING = "# Report"
_REPORT_MARKER = f"\n\n{REPORT_HEADING}\n\n**IMPORTANT: As your FINAL action**"


class ReportDetail(str, Enum):
    """How much the harness is asked to put in its report."""

    BRIEF = "brief"
    STANDARD = "standard"
    DETAILED = "detailed"


_DETAIL_GUIDES = {
    ReportDetail.BRIEF: (
        "Keep the report concise. Focus on: what was done, pass/fail status, any blockers."
    ),
    ReportDetail.STANDARD: (
        "Include: what was done, key decisions made, files created/modified, "
        "verification results, and any issues or blockers."
    ),
    ReportDetail.DETAILED: (
        "Be thorough: what was done, reasoning behind decisions, all files touched with "
        "descriptions, full verification results, issues found, and recommendations for "
        "next steps."
    ),
}


def build_report_instruction(report_path: Path, detail: ReportDetail) -> str:
    return (
        f"{_REPORT_MARKER}, write a report of your work to: `{report_path}`\n"
        f"\n"
        f"{_DETAIL_GUIDES[detail]}\n"
        f"\n"
        f"Use plain markdown. This file is read by the orchestrator to understand what you "
        f"did without parsing verbose logs.\n"
    )


def compose_prompt(
    *,
    prompt: str,
    report_path: Path,
    detail: ReportDetail = ReportDetail.STANDARD,
    skills: Sequence[str] = (),
    reference_files: Sequence[Path] = (),
) -> str:
    """Request text, skill and reference-file hints, then the report instruction."""

    sections = [prompt.strip()]
    if skills:
        sections.append("# Skills\n\nApply these skills: " + ", ".join(skills) + ".")
    if reference_files:
        listing = "\n".join(f"- `{path}`" for path in reference_files)
        sections.append(f"# Reference Files\n\nRead these files before starting:\n{listing}")
    return "\n\n".join(sections) + build_report_instruction(report_path, detail)


def strip_report_instruction(text: str) -> str:
    """Remove the generated report instruction so a prompt can be reused."""

    index = text.rfind(_REPORT_MARKER)
    if index == -1:
        return text.strip()
    return text[:index].rstrip()


def build_continuation_prompt(
    *,
    original_request: str,
    original_report: str,
    follow_up: str,
) -> str:
    """Self-contained prompt for harnesses that cannot resume the prior conversation."""

    return (
        "You are continuing earlier work. The previous conversation is not available, "
        "so its request and report are reproduced below.\n"
        "\n"
        "## Original Request\n"
        "\n"
        f"{original_request.strip()}\n"
        "\n"
        "## Original Report\n"
        "\n"
        f"{original_report.strip()}\n"
        "\n"
        "## Follow-up Request\n"
        "\n"
        f"{follow_up.strip()}"
    )
