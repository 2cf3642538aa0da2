"""Configuration loading and validation module.

This module handles the YAML runtime configuration and the KPI definitions
file, and provides the typed, immutable Config and Query dataclasses consumed
by all other modules.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, replace
from typing import List, Optional, Any, Union
import yaml

logger = logging.getLogger(__name__)

DEFAULT_FREQUENCY_SECONDS = 60.0
DEFAULT_DURATION_SECONDS = 45 * 60.0
DEFAULT_SQLITE_PATH = "./collected-data/kpi_metrics.db"
DEFAULT_LOG_FILE = "kpi.log"

DATABASE_TYPES = ("sqlite", "postgres")
CLUSTER_TYPES = ("ran", "core", "hub")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

RESERVED_CPUS_PLACEHOLDER = "{{RESERVED_CPUS}}"
ISOLATED_CPUS_PLACEHOLDER = "{{ISOLATED_CPUS}}"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


@dataclass(frozen=True)
class ThanosConfig:
    """Metrics backend connection configuration."""
    url: str
    token: str
    insecure_tls: bool = False


@dataclass(frozen=True)
class ClusterConfig:
    """Monitored cluster identity."""
    name: str
    type: Optional[str] = None
    reserved_cpus: Optional[str] = None
    isolated_cpus: Optional[str] = None


@dataclass(frozen=True)
class SamplingConfig:
    """Sampling cadence configuration, in seconds."""
    frequency_seconds: float = DEFAULT_FREQUENCY_SECONDS
    duration_seconds: float = DEFAULT_DURATION_SECONDS


@dataclass(frozen=True)
class DatabaseConfig:
    """Storage backend configuration."""
    type: str = "sqlite"
    path: str = DEFAULT_SQLITE_PATH
    postgres_url: Optional[str] = None


@dataclass(frozen=True)
class LoggingConfig:
    """Diagnostic log configuration."""
    file: Optional[str] = DEFAULT_LOG_FILE
    level: str = "INFO"


@dataclass(frozen=True)
class Config:
    """Root configuration dataclass."""
    thanos: ThanosConfig
    cluster: ClusterConfig
    sampling: SamplingConfig = SamplingConfig()
    database: DatabaseConfig = DatabaseConfig()
    logging: LoggingConfig = LoggingConfig()


@dataclass(frozen=True)
class Query:
    """A single KPI query definition."""
    id: str
    promquery: str
    sample_frequency_seconds: Optional[float] = None

    def effective_frequency(self, default_seconds: float) -> float:
        """Return the override frequency if positive, else the default."""
        if self.sample_frequency_seconds is not None and self.sample_frequency_seconds > 0:
            return self.sample_frequency_seconds
        return default_seconds


def parse_duration(value: Union[str, int, float], field_name: str) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) or duration strings made of one or more
    number/unit pairs, e.g. "30s", "2m30s", "1.5h", "500ms".

    Args:
        value: The raw value from the configuration file
        field_name: Name of the field for error messages

    Returns:
        Duration in seconds

    Raises:
        ConfigError: If the value cannot be parsed or is not finite
    """
    if isinstance(value, bool):
        raise ConfigError(f"Field '{field_name}' must be a duration, got bool")
    if isinstance(value, (int, float)):
        return _finite(float(value), value, field_name)
    if not isinstance(value, str):
        raise ConfigError(
            f"Field '{field_name}' must be a duration, got {type(value).__name__}"
        )

    text = value.strip()
    sign = 1.0
    if text[:1] in ("-", "+"):
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    if text == "0":
        return 0.0
    if not text:
        raise ConfigError(f"Field '{field_name}' has invalid duration: {value!r}")

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text):
        raise ConfigError(f"Field '{field_name}' has invalid duration: {value!r}")

    return _finite(sign * total, value, field_name)


def _finite(seconds: float, value: Any, field_name: str) -> float:
    if not math.isfinite(seconds):
        raise ConfigError(f"Field '{field_name}' has invalid duration: {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    """Format seconds the way durations are written in config files."""
    if seconds < 1 and seconds > 0:
        return f"{seconds * 1000:g}ms"
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    result = ""
    if hours:
        result += f"{int(hours)}h"
    if hours or minutes:
        result += f"{int(minutes)}m"
    result += f"{secs:g}s"
    return result


def _get_nested(data: dict, path: str, required: bool = True, default: Any = None) -> Any:
    """Get a nested value from a dictionary using dot notation.

    Args:
        data: The dictionary to search
        path: Dot-separated path to the value (e.g., "thanos.url")
        required: If True, raises ConfigError when value is missing
        default: Default value if not required and missing

    Returns:
        The value at the path, or default if not required and missing

    Raises:
        ConfigError: If required value is missing
    """
    keys = path.split(".")
    current = data

    for key in keys:
        if not isinstance(current, dict):
            if required:
                raise ConfigError(f"Configuration path '{path}' is not a valid nested structure")
            return default
        if key not in current or current[key] is None:
            if required:
                raise ConfigError(f"Missing required configuration field: {path}")
            return default
        current = current[key]

    return current


def _validate_type(value: Any, expected_type: type, field_name: str) -> None:
    """Validate that a value is of the expected type.

    Args:
        value: The value to validate
        expected_type: The expected type
        field_name: Name of the field for error messages

    Raises:
        ConfigError: If value is not of the expected type
    """
    if expected_type is list:
        if not isinstance(value, list):
            raise ConfigError(
                f"Field '{field_name}' must be a list, got {type(value).__name__}"
            )
    elif expected_type is bool:
        if not isinstance(value, bool):
            raise ConfigError(
                f"Field '{field_name}' must be a boolean, got {type(value).__name__}"
            )
    elif expected_type is str:
        if not isinstance(value, str):
            raise ConfigError(
                f"Field '{field_name}' must be a string, got {type(value).__name__}"
            )
    else:
        if not isinstance(value, expected_type):
            raise ConfigError(
                f"Field '{field_name}' must be of type {expected_type.__name__}, got {type(value).__name__}"
            )


def _read_document(path: str, what: str) -> Any:
    """Read a YAML or JSON document from disk."""
    try:
        with open(path, 'r') as f:
            if path.endswith(".json"):
                return json.load(f)
            return yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"{what} file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {what.lower()} file: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {what.lower()} file: {e}")


def normalize_base_url(url: str) -> str:
    """Prepend https:// to a bare host and strip trailing slashes."""
    url = url.strip().rstrip("/")
    if "://" not in url:
        url = "https://" + url
    return url


def load_config(path: str) -> Config:
    """Load and validate the runtime configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Config: Validated configuration object

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid
    """
    data = _read_document(path, "Configuration")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a YAML dictionary")

    # Thanos configuration
    url = _get_nested(data, "thanos.url")
    _validate_type(url, str, "thanos.url")
    token = _get_nested(data, "thanos.token")
    _validate_type(token, str, "thanos.token")
    insecure_tls = _get_nested(data, "thanos.insecure_tls", required=False, default=False)
    _validate_type(insecure_tls, bool, "thanos.insecure_tls")

    if not url.strip():
        raise ConfigError("thanos.url must not be empty")
    if not token.strip():
        raise ConfigError("thanos.token must not be empty")

    thanos = ThanosConfig(
        url=normalize_base_url(url),
        token=token,
        insecure_tls=insecure_tls,
    )

    # Cluster configuration
    cluster_name = _get_nested(data, "cluster.name")
    _validate_type(cluster_name, str, "cluster.name")
    if not cluster_name.strip():
        raise ConfigError("cluster.name must not be empty")

    cluster_type = _get_nested(data, "cluster.type", required=False, default=None)
    if cluster_type is not None:
        _validate_type(cluster_type, str, "cluster.type")
        if cluster_type not in CLUSTER_TYPES:
            raise ConfigError(
                f"cluster.type must be one of {', '.join(CLUSTER_TYPES)}, got {cluster_type!r}"
            )

    reserved_cpus = _get_nested(data, "cluster.reserved_cpus", required=False, default=None)
    if reserved_cpus is not None:
        _validate_type(reserved_cpus, str, "cluster.reserved_cpus")

    isolated_cpus = _get_nested(data, "cluster.isolated_cpus", required=False, default=None)
    if isolated_cpus is not None:
        _validate_type(isolated_cpus, str, "cluster.isolated_cpus")

    cluster = ClusterConfig(
        name=cluster_name,
        type=cluster_type,
        reserved_cpus=reserved_cpus,
        isolated_cpus=isolated_cpus,
    )

    # Sampling configuration
    frequency_seconds = parse_duration(
        _get_nested(data, "sampling.frequency", required=False, default=DEFAULT_FREQUENCY_SECONDS),
        "sampling.frequency",
    )
    duration_seconds = parse_duration(
        _get_nested(data, "sampling.duration", required=False, default=DEFAULT_DURATION_SECONDS),
        "sampling.duration",
    )

    if frequency_seconds <= 0:
        raise ConfigError("sampling.frequency must be > 0")
    if duration_seconds <= 0:
        raise ConfigError("sampling.duration must be > 0")

    sampling = SamplingConfig(
        frequency_seconds=frequency_seconds,
        duration_seconds=duration_seconds,
    )

    # Database configuration
    db_type = _get_nested(data, "database.type", required=False, default="sqlite")
    _validate_type(db_type, str, "database.type")
    if db_type not in DATABASE_TYPES:
        raise ConfigError(f"database.type must be 'sqlite' or 'postgres', got {db_type!r}")

    db_path = _get_nested(data, "database.path", required=False, default=DEFAULT_SQLITE_PATH)
    _validate_type(db_path, str, "database.path")

    postgres_url = _get_nested(data, "database.postgres_url", required=False, default=None)
    if postgres_url is not None:
        _validate_type(postgres_url, str, "database.postgres_url")
    if db_type == "postgres" and not postgres_url:
        raise ConfigError("database.postgres_url is required when database.type is 'postgres'")

    database = DatabaseConfig(type=db_type, path=db_path, postgres_url=postgres_url)

    # Logging configuration
    log_file = _get_nested(data, "logging.file", required=False, default=DEFAULT_LOG_FILE)
    _validate_type(log_file, str, "logging.file")
    log_level = _get_nested(data, "logging.level", required=False, default="INFO")
    _validate_type(log_level, str, "logging.level")
    log_level = log_level.upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {', '.join(LOG_LEVELS)}")

    logging_cfg = LoggingConfig(file=log_file or None, level=log_level)

    return Config(
        thanos=thanos,
        cluster=cluster,
        sampling=sampling,
        database=database,
        logging=logging_cfg,
    )


def validate_kpis(queries: List[Query]) -> List[str]:
    """Check KPI definitions for configuration issues.

    Args:
        queries: Loaded KPI definitions

    Returns:
        A list of problem descriptions; empty when all KPIs are valid
    """
    problems = []
    seen_ids = set()

    for query in queries:
        if not query.id.strip():
            problems.append("KPI has empty ID")
            continue

        if query.id in seen_ids:
            problems.append(f"duplicate KPI ID: {query.id}")
        seen_ids.add(query.id)

        if not query.promquery.strip():
            problems.append(f"KPI '{query.id}': empty PromQL query")

    return problems


def load_kpis(path: str) -> List[Query]:
    """Load and validate KPI definitions from a JSON or YAML file.

    The file is shaped ``{"kpis": [{"id": ..., "promquery": ...,
    "sample-frequency": ...}]}``. ``sample-frequency`` is optional and may be
    integer seconds or a duration string. An unparsable value is logged and
    treated as no override.

    Args:
        path: Path to the KPI definitions file

    Returns:
        List of Query definitions in file order

    Raises:
        ConfigError: If the file cannot be read, is malformed, or contains
            invalid or no KPIs
    """
    data = _read_document(path, "KPIs")

    if not isinstance(data, dict):
        raise ConfigError(f"KPIs file must contain a 'kpis' list: {path}")

    entries = _get_nested(data, "kpis")
    _validate_type(entries, list, "kpis")

    queries = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigError(f"kpis[{i}] must be a mapping")

        kpi_id = entry.get("id", "")
        _validate_type(kpi_id, str, f"kpis[{i}].id")
        promquery = entry.get("promquery", "")
        _validate_type(promquery, str, f"kpis[{i}].promquery")

        frequency = entry.get("sample-frequency")
        if frequency is not None:
            try:
                frequency = parse_duration(frequency, f"kpis[{i}].sample-frequency")
            except ConfigError as e:
                logger.warning(f"{e}; KPI '{kpi_id}' uses the default frequency")
                frequency = None

        queries.append(
            Query(id=kpi_id, promquery=promquery, sample_frequency_seconds=frequency)
        )

    if not queries:
        raise ConfigError(f"No KPIs defined in {path}")

    problems = validate_kpis(queries)
    if problems:
        raise ConfigError("Invalid KPI definitions: " + "; ".join(problems))

    return queries


def requires_cpu_substitution(queries: List[Query]) -> bool:
    """Return True if any query contains a CPU placeholder."""
    for query in queries:
        if (
            RESERVED_CPUS_PLACEHOLDER in query.promquery
            or ISOLATED_CPUS_PLACEHOLDER in query.promquery
        ):
            return True
    return False


def substitute_cpu_placeholders(
    queries: List[Query], reserved: str, isolated: str
) -> List[Query]:
    """Replace CPU placeholders in every query.

    Args:
        queries: KPI definitions
        reserved: Reserved CPU ids in Prometheus regex form, e.g. "0|1|32|33"
        isolated: Isolated CPU ids in Prometheus regex form

    Returns:
        New list of Query definitions with placeholders substituted
    """
    substituted = []
    for query in queries:
        text = query.promquery.replace(RESERVED_CPUS_PLACEHOLDER, reserved)
        text = text.replace(ISOLATED_CPUS_PLACEHOLDER, isolated)
        substituted.append(replace(query, promquery=text))
    return substituted


def prepare_kpis(queries: List[Query], cluster: ClusterConfig) -> List[Query]:
    """Apply CPU substitution when the queries need it.

    Raises:
        ConfigError: If queries contain placeholders but the cluster
            configuration does not provide both CPU lists
    """
    if not requires_cpu_substitution(queries):
        return queries

    if cluster.reserved_cpus is None or cluster.isolated_cpus is None:
        raise ConfigError(
            "queries contain CPU placeholders "
            f"({RESERVED_CPUS_PLACEHOLDER}/{ISOLATED_CPUS_PLACEHOLDER}) but "
            "cluster.reserved_cpus and cluster.isolated_cpus are not both set"
        )

    return substitute_cpu_placeholders(
        queries, cluster.reserved_cpus, cluster.isolated_cpus
    )


def frequency_warnings(queries: List[Query], sampling: SamplingConfig) -> List[str]:
    """Build warnings for KPIs that will only be sampled once.

    Args:
        queries: KPI definitions
        sampling: Sampling configuration

    Returns:
        Operator-facing warning lines
    """
    warnings = []
    duration = sampling.duration_seconds

    for query in queries:
        effective = query.effective_frequency(sampling.frequency_seconds)
        if effective > duration:
            warnings.append(
                f"WARNING: KPI '{query.id}' has frequency {format_duration(effective)} "
                f"which exceeds duration {format_duration(duration)}. "
                "Only 1 sample will be collected."
            )

    if sampling.frequency_seconds > duration:
        warnings.append(
            f"WARNING: Default sampling frequency {format_duration(sampling.frequency_seconds)} "
            f"exceeds duration {format_duration(duration)}. "
            "KPIs without custom frequency will only collect 1 sample."
        )

    return warnings

