import asyncio
import logging
import sys
import time
from typing import Any, Dict, List, Optional, Tuple

import click
import httpx
from pythonjsonlogger import jsonlogger

from . import __version__
from .config import (
    AuditConfig, ConfigurationError, DEFAULT_MUTATION_FILTER,
    config_from_mapping, load_config, validate_config
)
from .identities import IdentitySet, IdentityTier
from .catalog import DISCOVERY_PATH, DiscoveryError, Target, TargetCatalog, TargetKind
from .prober import ProbeExecutor, ProbeKind, ProbeOutcome
from .classifier import (
    classify, discovery_gap_finding, public_bucket_finding, sensitive_name_findings
)
from .findings import FindingsAggregator, StatusMatrix
from .reporter import (
    Report, ReportBuilder, should_fail, utc_timestamp,
    write_json_report, write_markdown_summary
)
from .utils.http import HttpSession
from .utils.parser import extract_keys, masked_rows, parse_content_range, parse_json_body
from .utils.ratelimit import RateLimiter

@click.group(help="sbaudit - external-exposure audit for Supabase-style data APIs")
def app():
    """sbaudit CLI."""
    pass

logger = logging.getLogger(__name__)

AUTH_SETTINGS_PATH = '/auth/v1/settings'
AUTH_SETTINGS_KEYS = ('anonymous_login_enabled', 'disable_signup', 'mailer_autoconfirm')


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Setup structured logging."""
    loggers = [logging.getLogger(name) for name in ['sbaudit', '__main__']]

    formatter = jsonlogger.JsonFormatter(
        fmt='%(asctime)s %(name)s %(levelname)s %(message)s'
    )

    # stdout carries the human-readable audit output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    for logger_instance in loggers:
        # Repeated setup (tests, embedding) must not stack handlers
        for handler in list(logger_instance.handlers):
            logger_instance.removeHandler(handler)
        logger_instance.setLevel(getattr(logging, log_level.upper()))
        logger_instance.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        for logger_instance in loggers:
            logger_instance.addHandler(file_handler)


class ExposureAuditor:
    """Runs one audit: catalog, probes, classification, report."""

    def __init__(self,
                 config: AuditConfig,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the auditor.

        Args:
            config: Immutable audit configuration
            transport: Optional httpx transport (tests pass a MockTransport)

        Raises:
            ConfigurationError: If the configuration cannot start a run
        """
        validate_config(config)
        self.config = config
        self.identities = IdentitySet.from_config(config)
        self.aggregator = FindingsAggregator()
        self.matrix = StatusMatrix()
        self.rate_limiter = RateLimiter(config.probe.sleep_ms)
        self.session = HttpSession(
            timeout=config.probe.timeout_seconds,
            verify_ssl=config.probe.verify_ssl,
            transport=transport
        )
        self.executor = ProbeExecutor(config, self.identities, self.session, self.rate_limiter)
        self.samples: Dict[str, List[Any]] = {}
        self.notes: List[str] = []
        self.truncated = False
        self.catalog: Optional[TargetCatalog] = None
        self._deadline: Optional[float] = None

    async def run(self) -> Report:
        """Execute the complete audit and return the report."""
        logger.info(f"Starting audit of {self.config.url}")
        generated_at = utc_timestamp()
        if self.config.probe.max_runtime_seconds:
            self._deadline = time.monotonic() + self.config.probe.max_runtime_seconds

        async with self.session:
            self.catalog = await self._catalog_phase()
            auth_settings = await self._auth_settings_phase()
            await self._storage_phase()
            await self._probe_phase(self._probe_targets())

        return self._reporting_phase(generated_at, auth_settings)

    async def _catalog_phase(self) -> TargetCatalog:
        """Phase 1: build the target catalog from allowlist and discovery."""
        catalog = await TargetCatalog.build(self.config, self.executor)
        self.notes.extend(catalog.notes)

        if catalog.discovery_degraded and self.config.features.rpc_probe:
            self.aggregator.record(discovery_gap_finding(DISCOVERY_PATH))

        if catalog.rpcs:
            self.aggregator.extend(sensitive_name_findings(
                [rpc.name for rpc in catalog.rpcs], 'rpc_name', self.config.sensitive_pattern
            ))

        logger.info(f"Catalog: {catalog.counts()}")
        return catalog

    async def _auth_settings_phase(self) -> Optional[Dict[str, Any]]:
        """Phase 2: best-effort read of the auth service settings."""
        try:
            response = await self.executor.fetch(AUTH_SETTINGS_PATH, IdentityTier.SHARED_KEY)
        except httpx.RequestError as e:
            logger.warning(f"Could not read {AUTH_SETTINGS_PATH}: {e}")
            self.notes.append("auth settings unavailable: transport error")
            return None

        data = parse_json_body(response.text) if 200 <= response.status_code < 300 else None
        if not isinstance(data, dict):
            logger.info(f"Could not read {AUTH_SETTINGS_PATH} (HTTP {response.status_code})")
            self.notes.append(f"auth settings unavailable: HTTP {response.status_code}")
            return None

        return {key: data.get(key) for key in AUTH_SETTINGS_KEYS}

    async def _storage_phase(self):
        """Phase 3: list buckets and record public and sensitive-named ones."""
        listing = await TargetCatalog.list_buckets(self.executor)
        if not listing.available:
            self.notes.append(f"bucket listing unavailable: {listing.error}")
            return

        for bucket in listing.public_buckets:
            self.aggregator.record(public_bucket_finding(bucket))

        self.aggregator.extend(sensitive_name_findings(
            [bucket.name for bucket in listing.buckets], 'bucket_name', self.config.sensitive_pattern
        ))

        self.catalog = self.catalog.with_buckets(listing.buckets)

    def _probe_targets(self) -> List[Target]:
        """Targets in probe order: buckets, tables, then rpc endpoints."""
        features = self.config.features
        targets = []
        if features.storage_probe:
            targets.extend(self.catalog.buckets)
        targets.extend(self.catalog.tables)
        if features.rpc_probe:
            targets.extend(self.catalog.rpcs)
        return targets

    def probe_tiers(self) -> List[IdentityTier]:
        """Identity tiers probed for every classified probe kind."""
        features = self.config.features
        tiers = []
        if features.noauth_probe or features.auth_matrix:
            tiers.append(IdentityTier.NO_AUTH)
        tiers.append(IdentityTier.SHARED_KEY)
        if features.auth_matrix:
            tiers.append(IdentityTier.USER_TOKEN)
        return tiers

    def plan(self, target: Target) -> List[Tuple[ProbeKind, IdentityTier]]:
        """(probe kind, tier) pairs to run against `target`."""
        features = self.config.features
        tiers = self.probe_tiers()

        if target.kind == TargetKind.BUCKET:
            kinds = [ProbeKind.LIST_OBJECTS]
        elif target.kind == TargetKind.RPC:
            kinds = [ProbeKind.RPC_INVOKE]
        else:
            kinds = [ProbeKind.READ]
            if features.mutation_probe:
                kinds.extend([ProbeKind.MUTATE_PATCH, ProbeKind.MUTATE_DELETE])
            if features.create_probe:
                kinds.append(ProbeKind.MUTATE_CREATE)

        steps = [(kind, tier) for kind in kinds for tier in tiers]
        if target.kind == TargetKind.TABLE and features.sample_read:
            steps.append((ProbeKind.SAMPLE_READ, IdentityTier.SHARED_KEY))
        return steps

    async def _probe_phase(self, targets: List[Target]):
        """Phase 4: probe every target."""
        logger.info(f"Probing {len(targets)} targets")
        max_concurrent = self.config.probe.max_concurrent

        if max_concurrent <= 1:
            for target in targets:
                await self._probe_target(target)
            return

        semaphore = asyncio.Semaphore(max_concurrent)

        async def probe_with_semaphore(target):
            async with semaphore:
                await self._probe_target(target)

        await asyncio.gather(*[probe_with_semaphore(target) for target in targets])

    def _deadline_exceeded(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            if not self.truncated:
                logger.warning("Run deadline reached; no further probes will be issued")
                self.notes.append("run deadline reached before every probe was issued")
            self.truncated = True
        return self.truncated

    async def _probe_target(self, target: Target):
        for kind, tier in self.plan(target):
            if self._deadline_exceeded():
                return
            outcome = await self.executor.execute(target, tier, kind)
            self._handle_outcome(outcome)

        for kind in (ProbeKind.LIST_OBJECTS, ProbeKind.READ, ProbeKind.RPC_INVOKE):
            row = self.matrix.row(target, kind)
            if row:
                logger.info(f"{target.name} {kind.value}: {StatusMatrix.format_status(row['status'])}")

    def _handle_outcome(self, outcome: ProbeOutcome):
        extra = None
        if outcome.kind == ProbeKind.READ and outcome.tier == IdentityTier.SHARED_KEY:
            extra = self._inspect_read(outcome)
        elif outcome.kind == ProbeKind.SAMPLE_READ:
            self._capture_sample(outcome)
            return

        self.matrix.observe(outcome, extra)

        finding = classify(outcome)
        if finding is not None:
            self.aggregator.record(finding)

    def _inspect_read(self, outcome: ProbeOutcome) -> Optional[Dict[str, Any]]:
        """Metadata checks on the shared-key read; never affect classification."""
        extra = {}
        content_range = parse_content_range(outcome.headers.get('content-range'))
        if content_range:
            extra['content_range'] = content_range

        if not outcome.succeeded:
            return extra or None

        data = parse_json_body(outcome.body)
        if data is None:
            logger.info(f"{outcome.target.name}: body is not JSON, skipping key inspection")
            return extra or None

        keys = extract_keys(data)
        extra['keys'] = keys
        self.aggregator.extend(sensitive_name_findings(
            keys, 'column_name', self.config.sensitive_pattern, prefix=outcome.target.name
        ))
        return extra

    def _capture_sample(self, outcome: ProbeOutcome):
        if not outcome.succeeded:
            return
        data = parse_json_body(outcome.body)
        if data is None:
            return
        self.samples[outcome.target.name] = masked_rows(data, self.config.sensitive_pattern)

    def _reporting_phase(self, generated_at: str, auth_settings: Optional[Dict[str, Any]]) -> Report:
        """Phase 5: build the report."""
        run_metadata = {
            'generated_at': generated_at,
            'source': self.config.url,
            'targets': self.catalog.counts() if self.catalog else {},
            'auth_settings': auth_settings,
            'samples': self.samples,
            'notes': self.notes,
            'truncated': self.truncated
        }
        return ReportBuilder().build(
            run_metadata,
            self.config.options_snapshot(),
            self.aggregator,
            matrix=self.matrix,
            sort_findings=self.config.probe.max_concurrent > 1
        )


def _collect_settings(**values) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _build_config(config_file: Optional[str], settings: Dict[str, Any]) -> AuditConfig:
    if config_file:
        config = load_config(config_file, settings)
    else:
        config = config_from_mapping(settings)
    validate_config(config)
    return config


def echo_report(report: Report):
    """Print the human-readable audit summary."""
    click.echo("== Supabase external audit ==")
    click.echo(f"URL: {report.source}")
    for key, value in report.options.items():
        click.echo(f"{key}: {value}")
    click.echo()

    if report.auth_settings is not None:
        click.echo("## Auth settings")
        for key, value in report.auth_settings.items():
            click.echo(f"  {key}: {value}")
        click.echo()

    if report.matrix:
        click.echo("## Status matrix")
        for row in report.matrix:
            line = f"-- {row['target']} [{row['probe']}] {StatusMatrix.format_status(row['status'])}"
            if row.get('content_range'):
                line += f" rows={row['content_range'].get('total')}"
            click.echo(line)
        click.echo()

    for note in report.notes:
        click.echo(f"Note: {note}")

    click.echo("## Findings summary")
    click.echo(f"Total: {report.summary['total']}")
    click.echo(f"High: {report.summary['high']}")
    click.echo(f"Medium: {report.summary['medium']}")
    click.echo(f"Low: {report.summary['low']}")
    for finding in report.findings:
        click.echo(f"  [{finding.severity.value}] {finding.category} {finding.target}: {finding.message}")


def _audit_options(func):
    options = [
        click.option('--config', 'config_file', default=None, help='JSON profile with audit settings'),
        click.option('--url', envvar='SUPABASE_URL', default=None, help='Project URL, e.g. https://xxxx.supabase.co'),
        click.option('--anon', 'anon_key', envvar='SUPABASE_ANON_KEY', default=None, help='Shared anon key'),
        click.option('--user-jwt', envvar='SUPABASE_USER_JWT', default=None, help='Optional end-user JWT'),
        click.option('--tables', 'tables_file', default=None, help='File with table names, one per line'),
        click.option('--auto-tables', 'discover', is_flag=True, default=None, help='Discover tables/views from /rest/v1/'),
        click.option('--noauth-probe', is_flag=True, default=None, help='Probe without apikey/Authorization headers'),
        click.option('--auth-matrix', is_flag=True, default=None, help='Compare noauth / anon / user access'),
        click.option('--rpc-probe', is_flag=True, default=None, help='POST {} to discovered RPC endpoints'),
        click.option('--storage-probe', is_flag=True, default=None, help='Probe object/list per bucket'),
        click.option('--mutation-probe', is_flag=True, default=None, help='PATCH/DELETE scoped by --mutation-filter (risky)'),
        click.option('--mutation-filter', default=None, help=f'Filter matching no rows (default {DEFAULT_MUTATION_FILTER})'),
        click.option('--create-probe', is_flag=True, default=None, help='POST an empty insert to every table (risky)'),
        click.option('--sample-read', is_flag=True, default=None, help='Fetch a small masked sample per table (risky)'),
        click.option('--sample-rows', type=int, default=None, help='Rows fetched by --sample-read'),
        click.option('--strict', is_flag=True, default=None, help='Exit 1 when high findings are detected'),
        click.option('--sensitive', 'sensitive_regex', envvar='SENSITIVE_REGEX', default=None, help='Regex for sensitive names'),
        click.option('--sleep-ms', default=None, help='Minimum delay between requests in milliseconds'),
        click.option('--timeout', 'timeout_seconds', type=float, default=None, help='Per-request timeout in seconds'),
        click.option('--max-concurrent', type=int, default=None, help='Targets probed in parallel'),
        click.option('--max-runtime', 'max_runtime_seconds', type=float, default=None, help='Stop issuing probes after this many seconds'),
        click.option('--report-json', default=None, help='Write summary + findings JSON report'),
        click.option('--report-md', default=None, help='Write a markdown summary'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@app.command()
@_audit_options
@click.option('--log-level', default='WARNING', help='Logging level')
@click.option('--log-file', default=None, help='Log file path')
def audit(config_file, log_level, log_file, **settings):
    """Run the external-exposure audit."""

    setup_logging(log_level, log_file)

    try:
        config = _build_config(config_file, _collect_settings(**settings))
        auditor = ExposureAuditor(config)
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    if config.features.auth_matrix and not config.credentials.user_token:
        click.echo("Note: --auth-matrix enabled without --user-jwt (user= N/A).")

    try:
        report = asyncio.run(auditor.run())
    except DiscoveryError as e:
        click.echo(f"Audit aborted: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("Audit interrupted by user", err=True)
        sys.exit(1)

    echo_report(report)

    if config.output.report_json:
        click.echo(f"JSON report written: {write_json_report(report, config.output.report_json)}")
    if config.output.report_md:
        click.echo(f"Markdown summary written: {write_markdown_summary(report, config.output.report_md)}")

    if should_fail(report, config.features.strict):
        click.echo(f"Strict mode: high findings detected ({report.high_count})", err=True)
        sys.exit(1)

    click.echo("Done.")


@app.command()
@_audit_options
def validate(config_file, **settings):
    """Validate audit configuration without sending any request."""

    try:
        config = _build_config(config_file, _collect_settings(**settings))
        IdentitySet.from_config(config)
        click.echo("✓ Configuration is valid")
        click.echo(f"URL: {config.url}")
        click.echo(f"Allowlisted tables: {len(TargetCatalog.from_allowlist(config.allowlist))}")
        click.echo(f"Discovery: {config.features.discovery_enabled}")
        click.echo(f"User JWT provided: {'yes' if config.credentials.user_token else 'no'}")
    except ConfigurationError as e:
        click.echo(f"✗ Configuration validation failed: {e}", err=True)
        sys.exit(1)


@app.command()
def version():
    """Show version information."""
    click.echo(f"sbaudit v{__version__}")
    click.echo("External-exposure audit for Supabase-style data APIs")


if __name__ == "__main__":
    app()
