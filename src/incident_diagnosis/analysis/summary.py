"""Aggregate project statistics for the analysis narrative."""

from __future__ import annotations

from collections import Counter

from incident_diagnosis.domain.models import CodebaseProject, ProjectSummary


def summarize_project(project: CodebaseProject) -> ProjectSummary:
    """Build a :class:`ProjectSummary` from pre-indexed file metadata.

    Average complexity is the mean over all indexed functions (0.0 when none).
    """

    total_lines = 0
    complexities: list[int] = []
    total_classes = 0
    distribution: Counter[str] = Counter()

    for code_file in project.files:
        total_lines += code_file.line_count
        complexities.extend(item.complexity for item in code_file.functions)
        total_classes += len(code_file.classes)
        distribution[code_file.language] += 1

    average = sum(complexities) / len(complexities) if complexities else 0.0
    return ProjectSummary(
        name=project.name,
        languages=project.languages,
        total_files=len(project.files),
        total_lines=total_lines,
        total_functions=len(complexities),
        total_classes=total_classes,
        average_complexity=round(average, 2),
        language_distribution=dict(sorted(distribution.items())),
    )


__all__ = ["summarize_project"]
