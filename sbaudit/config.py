import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, asdict, field

from .utils.parser import parse_row_filter

logger = logging.getLogger(__name__)

DEFAULT_SENSITIVE_REGEX = (
    "(email|password|pass|phone|tel|ssn|credit|card|token|secret"
    "|address|birth|birthday|salary|ip)"
)
DEFAULT_MUTATION_FILTER = "id=eq.00000000-0000-0000-0000-000000000000"


class ConfigurationError(ValueError):
    """Raised when the audit cannot start with the supplied configuration."""


@dataclass(frozen=True)
class Credentials:
    """Credential material for the gateway tiers."""
    shared_key: str
    user_token: Optional[str] = None


@dataclass(frozen=True)
class FeatureFlags:
    """Which probe families are enabled for a run."""
    discover: bool = False
    noauth_probe: bool = False
    auth_matrix: bool = False
    rpc_probe: bool = False
    mutation_probe: bool = False
    create_probe: bool = False
    storage_probe: bool = False
    sample_read: bool = False
    strict: bool = False

    @property
    def discovery_enabled(self) -> bool:
        # RPC targets only ever come from discovery
        return self.discover or self.rpc_probe


@dataclass(frozen=True)
class ProbeOptions:
    """Tuning for the probe executor and scheduler."""
    sensitive_regex: str = DEFAULT_SENSITIVE_REGEX
    mutation_filter: str = DEFAULT_MUTATION_FILTER
    sample_rows: int = 3
    sleep_ms: int = 0
    timeout_seconds: float = 15.0
    verify_ssl: bool = True
    max_concurrent: int = 1
    max_runtime_seconds: Optional[float] = None


@dataclass(frozen=True)
class OutputOptions:
    """Output configuration."""
    report_json: Optional[str] = None
    report_md: Optional[str] = None


@dataclass(frozen=True)
class AuditConfig:
    """Complete, immutable audit configuration."""
    url: str
    credentials: Credentials
    tables_file: Optional[str] = None
    allowlist: tuple = ()
    features: FeatureFlags = field(default_factory=FeatureFlags)
    probe: ProbeOptions = field(default_factory=ProbeOptions)
    output: OutputOptions = field(default_factory=OutputOptions)

    @property
    def sensitive_pattern(self):
        return re.compile(self.probe.sensitive_regex, re.IGNORECASE)

    def options_snapshot(self) -> Dict[str, Any]:
        """
        Enabled-feature snapshot recorded in the report. Never holds secrets.

        Keys that existing report consumers read keep their established
        names: ``auto_tables``, ``strict_mode`` and a ``yes``/``no``
        ``user_jwt_provided``.
        """
        snapshot = asdict(self.features)
        snapshot['auto_tables'] = snapshot.pop('discover')
        snapshot['strict_mode'] = snapshot.pop('strict')
        snapshot.update({
            'tables_file': self.tables_file,
            'user_jwt_provided': 'yes' if self.credentials.user_token else 'no',
            'sensitive_regex': self.probe.sensitive_regex,
            'sleep_ms': self.probe.sleep_ms,
            'max_concurrent': self.probe.max_concurrent,
        })
        if self.features.mutation_probe:
            snapshot['mutation_filter'] = self.probe.mutation_filter
        if self.features.sample_read:
            snapshot['sample_rows'] = self.probe.sample_rows
        return snapshot


def read_allowlist(tables_file: str) -> List[str]:
    """
    Read raw allowlist lines from disk.

    Raises:
        ConfigurationError: If the file does not exist
    """
    path = Path(tables_file)
    if not path.is_file():
        raise ConfigurationError(f"tables file must exist: {tables_file}")
    with open(path, 'r') as f:
        return f.read().splitlines()


def _coerce_sleep_ms(value: Any) -> int:
    if value is None or value == '':
        return 0
    if isinstance(value, bool):
        raise ConfigurationError(f"sleep_ms must be a non-negative integer, got {value!r}")
    try:
        sleep_ms = int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"sleep_ms must be a non-negative integer, got {value!r}")
    if sleep_ms < 0:
        raise ConfigurationError(f"sleep_ms must be a non-negative integer, got {value!r}")
    return sleep_ms


def _coerce_flag(name: str, value: Any) -> bool:
    """Accept JSON booleans or the literal strings ``true``/``false``."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
        return value.strip().lower() == 'true'
    raise ConfigurationError(f"{name} must be true or false, got {value!r}")


def _coerce_number(name: str, value: Any, cast: type) -> Any:
    """Convert a numeric setting with `cast`; range checks are left to validate_config."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if isinstance(value, cast):
        return value
    try:
        return cast(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _coerce_text(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ConfigurationError(f"{name} must be a string, got {value!r}")
    return value


def config_from_mapping(data: Dict[str, Any]) -> AuditConfig:
    """
    Build an AuditConfig from a flat or sectioned mapping.

    Accepts the keys produced by the CLI as well as the JSON profile layout
    (``features``, ``probe`` and ``output`` sub-objects).

    Raises:
        ConfigurationError: On malformed values
    """
    features_data = dict(data.get('features') or {})
    probe_data = dict(data.get('probe') or {})
    output_data = dict(data.get('output') or {})

    for name in FeatureFlags.__dataclass_fields__:
        if name in data and data[name] is not None:
            features_data[name] = data[name]
    for name in ProbeOptions.__dataclass_fields__:
        if name in data and data[name] is not None:
            probe_data[name] = data[name]
    for name in OutputOptions.__dataclass_fields__:
        if name in data and data[name] is not None:
            output_data[name] = data[name]

    probe_data['sleep_ms'] = _coerce_sleep_ms(probe_data.get('sleep_ms'))
    for name, cast in (('timeout_seconds', float), ('max_concurrent', int),
                       ('sample_rows', int), ('max_runtime_seconds', float)):
        if probe_data.get(name) is not None:
            probe_data[name] = _coerce_number(name, probe_data[name], cast)
    for name in ('sensitive_regex', 'mutation_filter'):
        if name in probe_data:
            probe_data[name] = _coerce_text(name, probe_data[name])
    if 'verify_ssl' in probe_data:
        probe_data['verify_ssl'] = _coerce_flag('verify_ssl', probe_data['verify_ssl'])
    # Unknown keys fall through to the dataclass and fail there
    for name in features_data:
        if name in FeatureFlags.__dataclass_fields__:
            features_data[name] = _coerce_flag(name, features_data[name])

    try:
        features = FeatureFlags(**features_data)
        probe = ProbeOptions(**probe_data)
        output = OutputOptions(**output_data)
    except TypeError as e:
        raise ConfigurationError(f"Unknown configuration field: {e}")

    tables_file = data.get('tables_file') or None
    allowlist = tuple(data.get('allowlist') or ())
    if tables_file:
        allowlist = allowlist + tuple(read_allowlist(tables_file))

    return AuditConfig(
        url=(data.get('url') or '').rstrip('/'),
        credentials=Credentials(
            shared_key=data.get('anon_key') or '',
            user_token=data.get('user_jwt') or None
        ),
        tables_file=tables_file,
        allowlist=allowlist,
        features=features,
        probe=probe,
        output=output
    )


def load_config(config_path: str, overrides: Optional[Dict[str, Any]] = None) -> AuditConfig:
    """
    Load configuration from a JSON profile file.

    Args:
        config_path: Path to the configuration JSON file
        overrides: Values (e.g. from the command line) that win over the file

    Returns:
        AuditConfig object with parsed configuration

    Raises:
        ConfigurationError: If the file is missing, not JSON, or malformed
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")

    try:
        with open(config_file, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in configuration file: {e}")
        raise ConfigurationError(f"Invalid JSON in configuration file: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError("Configuration file must contain a JSON object")

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    return config_from_mapping(data)


def validate_config(config: AuditConfig) -> bool:
    """
    Validate configuration for common issues.

    Args:
        config: Configuration to validate

    Returns:
        True if configuration is valid

    Raises:
        ConfigurationError: If configuration has validation errors
    """
    errors = []

    if not config.url:
        errors.append("SUPABASE_URL is required (--url or env SUPABASE_URL)")
    elif not config.url.startswith(('http://', 'https://')):
        errors.append(f"URL must start with http:// or https://: {config.url}")

    if not config.credentials.shared_key:
        errors.append("SUPABASE_ANON_KEY is required (--anon or env SUPABASE_ANON_KEY)")

    if not config.tables_file and not config.allowlist and not config.features.discover:
        errors.append("Either --tables <file> or --auto-tables is required")

    try:
        re.compile(config.probe.sensitive_regex, re.IGNORECASE)
    except re.error as e:
        errors.append(f"Invalid sensitive regex {config.probe.sensitive_regex!r}: {e}")

    if config.probe.sleep_ms < 0:
        errors.append("sleep_ms must be a non-negative integer")

    if config.probe.timeout_seconds <= 0:
        errors.append("timeout_seconds must be positive")

    if config.probe.max_concurrent <= 0:
        errors.append("max_concurrent must be positive")

    if config.probe.sample_rows <= 0:
        errors.append("sample_rows must be positive")

    if config.probe.max_runtime_seconds is not None and config.probe.max_runtime_seconds <= 0:
        errors.append("max_runtime_seconds must be positive")

    if config.features.mutation_probe and not config.probe.mutation_filter.strip():
        errors.append("--mutation-probe requires a non-empty --mutation-filter")
    elif config.features.mutation_probe and parse_row_filter(config.probe.mutation_filter) is None:
        errors.append(
            f"--mutation-filter must look like column=op.value[&column=op.value]: "
            f"{config.probe.mutation_filter!r}"
        )

    if errors:
        error_message = "Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors)
        logger.error(error_message)
        raise ConfigurationError(error_message)

    return True
