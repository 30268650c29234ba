"""
Configuration loading.

A YAML document with ``datasources``, ``state``, ``engine`` and ``jobs``
sections (plus optional ``logging``, ``metrics`` and ``tracing``).
``${VAR}`` and ``${VAR:-default}`` are expanded from the environment, and
every engine setting can be overridden with an ``ETL_SYNC_<NAME>`` variable.

Example:
    datasources:
      source:
        driver: postgresql
        params: {host: db1, port: 5432, database: app, user: etl, password: "${SRC_PASSWORD}"}
      target:
        driver: sqlserver
        params: {server: dw, database: dw, username: etl, password: "${DW_PASSWORD}"}
    state:
      datasource: target
    jobs:
      orders:
        source: {datasource: source, table: orders, schema: public}
        target: {datasource: target, table: orders, schema: dbo}
        sync_mode: INCREMENTAL
        incremental_column: updated_at
"""

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

import yaml

from .datasource import DatasourceConfig
from .errors import JobConfigurationError
from .models import ColumnMappingRule, MappingAction, SyncJob

logger = logging.getLogger(__name__)

_VARIABLE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")
ENV_PREFIX = "ETL_SYNC_"


@dataclass
class EngineSettings:
    """Engine-wide tuning knobs."""

    rows_per_bucket: int = 10000
    max_buckets: int = 10000
    parallelism: int = 4
    key_batch_size: int = 900
    run_timeout_seconds: float = 3600.0
    max_concurrent_runs: int = 4
    schema_evolution: bool = True
    prune_orphans: bool = True

    def __post_init__(self) -> None:
        for name in ("rows_per_bucket", "max_buckets", "parallelism", "key_batch_size", "max_concurrent_runs"):
            if getattr(self, name) <= 0:
                raise JobConfigurationError(f"engine.{name} must be positive")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] | None = None,
                     environ: Mapping[str, str] | None = None) -> "EngineSettings":
        """
        Build settings from a config mapping, then apply environment overrides.

        Raises:
            JobConfigurationError: On unknown keys or unparsable values
        """
        values = dict(values or {})
        environ = os.environ if environ is None else environ
        known = {f.name: f for f in fields(cls)}

        unknown = set(values) - set(known)
        if unknown:
            raise JobConfigurationError(f"Unknown engine settings: {sorted(unknown)}")

        for name in known:
            override = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if override is not None:
                values[name] = override

        converted = {}
        for name, value in values.items():
            default = known[name].default
            try:
                converted[name] = _coerce(value, type(default))
            except ValueError as e:
                raise JobConfigurationError(f"engine.{name}: {e}") from e
        return cls(**converted)


def _coerce(value: Any, kind: type) -> Any:
    if isinstance(value, kind) and not (kind is int and isinstance(value, bool)):
        return value
    if kind is bool:
        text = str(value).strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"not a boolean: {value!r}")
    return kind(value)


def expand_variables(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    """
    Recursively expand ``${VAR}`` / ``${VAR:-default}`` in strings.

    A string consisting of a single placeholder is re-read as YAML so that
    numbers and booleans keep their type.

    Raises:
        JobConfigurationError: If a variable is unset and has no default
    """
    environ = os.environ if environ is None else environ
    if isinstance(value, dict):
        return {key: expand_variables(item, environ) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_variables(item, environ) for item in value]
    if not isinstance(value, str):
        return value

    def replace(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        if name in environ:
            return environ[name]
        if default is not None:
            return default
        raise JobConfigurationError(f"Environment variable {name} is not set")

    expanded = _VARIABLE.sub(replace, value)
    if expanded != value and _VARIABLE.fullmatch(value):
        return yaml.safe_load(expanded) if expanded else expanded
    return expanded


@dataclass
class AppConfig:
    datasources: dict[str, DatasourceConfig]
    state_datasource: str
    jobs: dict[str, SyncJob]
    engine: EngineSettings = field(default_factory=EngineSettings)
    state_table_prefix: str = ""
    log_settings: dict[str, Any] = field(default_factory=dict)
    metrics_port: int | None = None
    tracing: dict[str, Any] = field(default_factory=dict)


def _section(document: Mapping[str, Any], name: str, required: bool = True) -> dict[str, Any]:
    section = document.get(name)
    if section is None:
        if required:
            raise JobConfigurationError(f"Missing '{name}' section")
        return {}
    if not isinstance(section, dict):
        raise JobConfigurationError(f"Section '{name}' must be a mapping")
    return section


def _parse_datasource(code: str, entry: Mapping[str, Any]) -> DatasourceConfig:
    if "driver" not in entry:
        raise JobConfigurationError(f"Datasource '{code}': 'driver' is required")
    return DatasourceConfig(
        code=code,
        driver=entry["driver"],
        params=dict(entry.get("params") or {}),
        module=entry.get("module"),
        product=entry.get("product"),
        url=entry.get("url"),
        pool=dict(entry.get("pool") or {}),
    )


def _parse_rule(job_id: str, index: int, entry: Mapping[str, Any]) -> ColumnMappingRule:
    try:
        return ColumnMappingRule(
            source_column=entry.get("source"),
            target_column=entry.get("target"),
            action=MappingAction(str(entry.get("action", "COPY")).upper()),
            constant_value=entry.get("value"),
            ordinal=int(entry.get("ordinal", index)),
        )
    except ValueError as e:
        raise JobConfigurationError(f"Job '{job_id}': mapping rule {index}: {e}") from e


def _parse_job(job_id: str, entry: Mapping[str, Any], datasources: Mapping[str, DatasourceConfig]) -> SyncJob:
    source = entry.get("source") or {}
    target = entry.get("target") or {}
    for side, table_ref in (("source", source), ("target", target)):
        if not table_ref.get("datasource") or not table_ref.get("table"):
            raise JobConfigurationError(f"Job '{job_id}': {side}.datasource and {side}.table are required")
        if table_ref["datasource"] not in datasources:
            raise JobConfigurationError(
                f"Job '{job_id}': unknown {side} datasource '{table_ref['datasource']}'"
            )

    try:
        sync_mode = str(entry.get("sync_mode", "FULL")).upper()
        return SyncJob(
            id=job_id,
            name=entry.get("name", job_id),
            source_datasource=source["datasource"],
            source_table=source["table"],
            source_schema=source.get("schema"),
            target_datasource=target["datasource"],
            target_table=target["table"],
            target_schema=target.get("schema"),
            sync_mode=sync_mode,
            incremental_column=entry.get("incremental_column"),
            batch_size=int(entry.get("batch_size", 1000)),
            retry_count=int(entry.get("retry_count", 3)),
            retry_interval_seconds=float(entry.get("retry_interval_seconds", 1.0)),
            concurrent_allowed=_coerce(entry.get("concurrent_allowed", False), bool),
            mapping_rules=[
                _parse_rule(job_id, i, rule) for i, rule in enumerate(entry.get("mapping") or [])
            ],
            truncate_before_full=_coerce(entry.get("truncate_before_full", False), bool),
            filter_condition=entry.get("filter_condition"),
        )
    except ValueError as e:
        raise JobConfigurationError(f"Job '{job_id}': {e}") from e


def parse_config(document: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> AppConfig:
    """
    Build an AppConfig from an already parsed document.

    Raises:
        JobConfigurationError: If the document is incomplete or inconsistent
    """
    document = expand_variables(dict(document), environ)

    datasources = {
        code: _parse_datasource(code, entry or {})
        for code, entry in _section(document, "datasources").items()
    }
    state = _section(document, "state")
    state_datasource = state.get("datasource")
    if state_datasource not in datasources:
        raise JobConfigurationError(f"state.datasource '{state_datasource}' is not a configured datasource")

    jobs = {
        str(job_id): _parse_job(str(job_id), entry or {}, datasources)
        for job_id, entry in _section(document, "jobs", required=False).items()
    }
    metrics_port = _section(document, "metrics", required=False).get("port")

    config = AppConfig(
        datasources=datasources,
        state_datasource=state_datasource,
        state_table_prefix=state.get("table_prefix", "") or "",
        jobs=jobs,
        engine=EngineSettings.from_mapping(_section(document, "engine", required=False), environ),
        log_settings=_section(document, "logging", required=False),
        metrics_port=int(metrics_port) if metrics_port is not None else None,
        tracing=_section(document, "tracing", required=False),
    )
    logger.debug(f"Loaded configuration: {len(datasources)} datasources, {len(jobs)} jobs")
    return config


def load_config(path: str, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load and validate a YAML configuration file."""
    with open(path, encoding="utf-8") as f:
        document = yaml.safe_load(f) or {}
    if not isinstance(document, dict):
        raise JobConfigurationError(f"{path}: top level must be a mapping")
    return parse_config(document, environ)
