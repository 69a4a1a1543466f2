"""
sbaudit - External-exposure auditor for Supabase-style data APIs.

This package probes tables, RPC endpoints and storage buckets under each
credential tier (no credential, shared anon key, end-user token) and
classifies what each tier can actually do into a stable severity taxonomy.
"""

__version__ = "1.0.0"

from .config import AuditConfig, ConfigurationError, load_config, validate_config
from .identities import IdentitySet, IdentityContext, IdentityTier
from .catalog import TargetCatalog, Target, TargetKind, DiscoveryError
from .prober import ProbeExecutor, ProbeKind, ProbeOutcome, OutcomeType
from .classifier import Finding, Severity, classify, severity_for
from .findings import FindingsAggregator, StatusMatrix
from .reporter import Report, ReportBuilder, should_fail

__all__ = [
    'AuditConfig',
    'ConfigurationError',
    'load_config',
    'validate_config',
    'IdentitySet',
    'IdentityContext',
    'IdentityTier',
    'TargetCatalog',
    'Target',
    'TargetKind',
    'DiscoveryError',
    'ProbeExecutor',
    'ProbeKind',
    'ProbeOutcome',
    'OutcomeType',
    'Finding',
    'Severity',
    'classify',
    'severity_for',
    'FindingsAggregator',
    'StatusMatrix',
    'Report',
    'ReportBuilder',
    'should_fail'
]
