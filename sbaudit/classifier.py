"""
Mapping of probe outcomes onto the severity taxonomy.

Everything here is pure: the same (probe kind, identity tier, outcome)
triple always classifies the same way, which keeps audits reproducible.
"""

import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern, Tuple
from dataclasses import dataclass

from .identities import IdentityTier
from .prober import OutcomeType, ProbeKind, ProbeOutcome

logger = logging.getLogger(__name__)


class Severity(Enum):
    """Finding severities, most severe first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Finding:
    """A single audit observation."""
    severity: Severity
    category: str
    target: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {
            'severity': self.severity.value,
            'category': self.category,
            'target': self.target,
            'message': self.message
        }


CATEGORIES = {
    ProbeKind.READ: 'table_read',
    ProbeKind.LIST_OBJECTS: 'storage_list',
    ProbeKind.RPC_INVOKE: 'rpc_exec',
    ProbeKind.MUTATE_PATCH: 'table_update',
    ProbeKind.MUTATE_DELETE: 'table_delete',
    ProbeKind.MUTATE_CREATE: 'table_insert',
}

_SUBJECTS = {
    ProbeKind.READ: "Table read is accessible",
    ProbeKind.LIST_OBJECTS: "Storage list endpoint is accessible",
    ProbeKind.RPC_INVOKE: "RPC appears callable",
    ProbeKind.MUTATE_PATCH: "Table update is accepted",
    ProbeKind.MUTATE_DELETE: "Table delete is accepted",
    ProbeKind.MUTATE_CREATE: "Table insert is accepted",
}

_TIER_SEVERITY = {
    IdentityTier.NO_AUTH: Severity.HIGH,
    IdentityTier.SHARED_KEY: Severity.MEDIUM,
}

_TIER_PHRASE = {
    IdentityTier.NO_AUTH: "without auth",
    IdentityTier.SHARED_KEY: "with anon key",
}


def severity_for(kind: ProbeKind,
                 tier: IdentityTier,
                 result: OutcomeType,
                 status_code: Optional[int] = None) -> Optional[Severity]:
    """
    Severity for a (probe kind, identity tier, outcome) triple.

    Only a 2xx status under the no-auth or shared-key tier for a
    classified probe kind yields a severity. User-tier access is expected
    and stays informational.
    """
    if result != OutcomeType.HTTP_STATUS or status_code is None:
        return None
    if not 200 <= status_code < 300:
        return None
    if kind not in CATEGORIES:
        return None
    return _TIER_SEVERITY.get(tier)


def classify(outcome: ProbeOutcome) -> Optional[Finding]:
    """Turn a probe outcome into zero or one finding."""
    severity = severity_for(outcome.kind, outcome.tier, outcome.result, outcome.status_code)
    if severity is None:
        return None
    return Finding(
        severity=severity,
        category=CATEGORIES[outcome.kind],
        target=outcome.target.name,
        message=f"{_SUBJECTS[outcome.kind]} {_TIER_PHRASE[outcome.tier]}"
    )


_NAME_MESSAGES = {
    'column_name': "Column name matches sensitive pattern",
    'rpc_name': "RPC name matches sensitive pattern",
    'bucket_name': "Bucket name matches sensitive pattern",
}


def sensitive_names(names: Iterable[str], pattern: Pattern) -> List[str]:
    """Names matching the sensitive pattern, in input order, without repeats."""
    seen = set()
    matches = []
    for name in names:
        if name and name not in seen and pattern.search(name):
            seen.add(name)
            matches.append(name)
    return matches


def sensitive_name_findings(names: Iterable[str],
                            category: str,
                            pattern: Pattern,
                            prefix: Optional[str] = None) -> List[Finding]:
    """
    Medium findings for metadata names that look sensitive.

    Args:
        names: Column, rpc or bucket names
        category: One of ``column_name``, ``rpc_name``, ``bucket_name``
        pattern: Compiled sensitive-name pattern
        prefix: Qualifier for the target (the table for column names)
    """
    message = _NAME_MESSAGES[category]
    return [
        Finding(
            severity=Severity.MEDIUM,
            category=category,
            target=f"{prefix}.{name}" if prefix else name,
            message=message
        )
        for name in sensitive_names(names, pattern)
    ]


def public_bucket_finding(bucket: str) -> Finding:
    """A public bucket is exposure by definition; no probe involved."""
    return Finding(
        severity=Severity.MEDIUM,
        category='storage_bucket',
        target=bucket,
        message="Bucket is public=true"
    )


def discovery_gap_finding(path: str) -> Finding:
    return Finding(
        severity=Severity.MEDIUM,
        category='openapi',
        target=path,
        message="OpenAPI discovery failed; RPC probe coverage is incomplete"
    )


def policy_table() -> List[Tuple[str, str, str]]:
    """(probe kind, tier, severity) rows for every 2xx triple that yields a finding."""
    rows = []
    for kind in CATEGORIES:
        for tier in IdentityTier:
            severity = severity_for(kind, tier, OutcomeType.HTTP_STATUS, 200)
            if severity is not None:
                rows.append((kind.value, tier.value, severity.value))
    return rows
