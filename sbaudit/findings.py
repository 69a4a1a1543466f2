import logging
import threading
from typing import Any, Dict, List, Optional

from .catalog import Target
from .classifier import Finding, Severity
from .identities import IdentityTier
from .prober import ProbeKind, ProbeOutcome

logger = logging.getLogger(__name__)


class FindingsAggregator:
    """Append-only store of findings. Safe to record from several workers."""

    def __init__(self):
        self._findings: List[Finding] = []
        self._lock = threading.Lock()

    def record(self, finding: Finding):
        """Append a finding. No deduplication."""
        with self._lock:
            self._findings.append(finding)
        logger.info(f"[{finding.severity.value}] {finding.category} {finding.target}: {finding.message}")

    def extend(self, findings):
        for finding in findings:
            self.record(finding)

    def all(self) -> List[Finding]:
        """Findings in insertion order."""
        with self._lock:
            return list(self._findings)

    def sorted_by_target(self) -> List[Finding]:
        """Findings ordered by target, independent of completion order."""
        order = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}
        return sorted(self.all(), key=lambda f: (f.target, f.category, order[f.severity], f.message))

    def summary(self) -> Dict[str, int]:
        findings = self.all()
        counts = {severity.value: 0 for severity in Severity}
        for finding in findings:
            counts[finding.severity.value] += 1
        return {'total': len(findings), **counts}

    def count(self, severity: Severity) -> int:
        return self.summary()[severity.value]

    def has_high(self) -> bool:
        return self.count(Severity.HIGH) > 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._findings)


class StatusMatrix:
    """Informational per-target status of each identity tier, for display only."""

    def __init__(self):
        self._rows: Dict[tuple, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def observe(self, outcome: ProbeOutcome, extra: Optional[Dict[str, Any]] = None):
        key = (outcome.target, outcome.kind)
        with self._lock:
            row = self._rows.setdefault(key, {
                'target': outcome.target.name,
                'kind': outcome.target.kind.value,
                'probe': outcome.kind.value,
                'status': {}
            })
            row['status'][outcome.tier.value] = outcome.label
            if extra:
                row.update(extra)

    def row(self, target: Target, kind: ProbeKind) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._rows.get((target, kind))
            return dict(row) if row else None

    @staticmethod
    def format_status(status: Dict[str, str]) -> str:
        """``noauth=401 anon=200 user=N/A`` in fixed tier order."""
        return ' '.join(
            f"{tier.value}={status[tier.value]}"
            for tier in IdentityTier
            if tier.value in status
        )

    def rows(self) -> List[Dict[str, Any]]:
        with self._lock:
            items = sorted(self._rows.items(), key=lambda item: (item[0][0].sort_key(), item[0][1].value))
            return [dict(row, status=dict(row['status'])) for _, row in items]
