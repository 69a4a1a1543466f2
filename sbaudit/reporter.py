import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Any, Optional, Tuple
from dataclasses import dataclass, field

from .classifier import Finding, Severity
from .findings import FindingsAggregator, StatusMatrix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Report:
    """Terminal snapshot of a run. Built once, never mutated."""
    generated_at: str
    source: str
    options: Dict[str, Any]
    summary: Dict[str, int]
    findings: Tuple[Finding, ...]
    targets: Dict[str, int] = field(default_factory=dict)
    matrix: Tuple[Dict[str, Any], ...] = ()
    auth_settings: Optional[Dict[str, Any]] = None
    samples: Dict[str, List[Any]] = field(default_factory=dict)
    notes: Tuple[str, ...] = ()
    truncated: bool = False

    @property
    def high_count(self) -> int:
        return self.summary.get(Severity.HIGH.value, 0)

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        return {
            'generated_at_utc': self.generated_at,
            'supabase_url': self.source,
            'options': dict(self.options),
            'summary': dict(self.summary),
            'targets': dict(self.targets),
            'auth_settings': self.auth_settings,
            'matrix': [dict(row) for row in self.matrix],
            'samples': dict(self.samples),
            'notes': list(self.notes),
            'truncated': self.truncated,
            'findings': [finding.to_dict() for finding in self.findings]
        }


def utc_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


class ReportBuilder:
    """Assembles the final report from the aggregator's terminal state."""

    def build(self,
              run_metadata: Dict[str, Any],
              options: Dict[str, Any],
              aggregator: FindingsAggregator,
              matrix: Optional[StatusMatrix] = None,
              sort_findings: bool = False) -> Report:
        """
        Build the report. Pure; issues no network calls.

        Args:
            run_metadata: ``generated_at``, ``source`` and optional
                ``targets``, ``auth_settings``, ``samples``, ``notes``, ``truncated``
            options: Snapshot of the enabled-feature configuration
            aggregator: Findings aggregator after all probing completed
            matrix: Informational status matrix
            sort_findings: Re-sort findings by target (parallel runs)

        Returns:
            Immutable Report
        """
        findings = aggregator.sorted_by_target() if sort_findings else aggregator.all()

        report = Report(
            generated_at=run_metadata.get('generated_at') or utc_timestamp(),
            source=run_metadata['source'],
            options=dict(options),
            summary=aggregator.summary(),
            findings=tuple(findings),
            targets=dict(run_metadata.get('targets') or {}),
            matrix=tuple(matrix.rows()) if matrix else (),
            auth_settings=run_metadata.get('auth_settings'),
            samples=dict(run_metadata.get('samples') or {}),
            notes=tuple(run_metadata.get('notes') or ()),
            truncated=bool(run_metadata.get('truncated', False))
        )

        logger.info(
            f"Report built: {report.summary['total']} findings "
            f"(high={report.summary['high']} medium={report.summary['medium']} low={report.summary['low']})"
        )
        return report


def should_fail(report: Report, strict: bool) -> bool:
    """Strict mode fails the run if and only if there is a high finding."""
    return bool(strict) and report.high_count > 0


def write_json_report(report: Report, output_file: str) -> str:
    """Write the report as JSON and return the path."""
    path = Path(output_file)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        json.dump(report.to_dict(), f, indent=2, default=str)

    logger.info(f"JSON report written: {path}")
    return str(path)


def write_markdown_summary(report: Report, output_file: str) -> str:
    """Generate a human-readable markdown summary."""
    summary = f"""# Supabase External Audit

- **URL:** {report.source}
- **Generated:** {report.generated_at}
- **Targets:** {report.targets.get('tables', 0)} tables, {report.targets.get('rpcs', 0)} rpc, {report.targets.get('buckets', 0)} buckets

## Summary
- Total: {report.summary['total']}
- High: {report.summary['high']}
- Medium: {report.summary['medium']}
- Low: {report.summary['low']}
"""

    if report.truncated:
        summary += "\n> Run deadline reached; not every target was probed.\n"

    if report.notes:
        summary += "\n## Notes\n"
        for note in report.notes:
            summary += f"- {note}\n"

    summary += "\n## Findings\n"
    if report.findings:
        summary += "| Severity | Category | Target | Message |\n|---|---|---|---|\n"
        for finding in report.findings:
            summary += (
                f"| {finding.severity.value} | {finding.category} | "
                f"`{finding.target}` | {finding.message} |\n"
            )
    else:
        summary += "No findings.\n"

    if report.matrix:
        summary += "\n## Access matrix\n"
        for row in report.matrix:
            status = StatusMatrix.format_status(row['status'])
            summary += f"- `{row['target']}` {row['probe']}: {status}\n"

    path = Path(output_file)
    with open(path, 'w') as f:
        f.write(summary)

    logger.info(f"Markdown summary generated: {path}")
    return str(path)
