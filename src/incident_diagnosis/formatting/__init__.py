"""Report views and Markdown, summary, JSON and YAML exports of diagnosis sessions."""

from incident_diagnosis.formatting.result_formatter import (
    DiagnosisReport,
    ExportFormat,
    ResultFormatter,
    describe_session,
)

__all__ = ["DiagnosisReport", "ExportFormat", "ResultFormatter", "describe_session"]
