"""
site_publisher.config — Site settings.

Settings come from a TOML site file, then environment overrides:

    AWS_REGION                      required
    SITE_PUBLISH_BUCKET             destination bucket
    SITE_PUBLISH_DISTRIBUTION_ID    CloudFront distribution id
    SITE_PUBLISH_RECORDS_TABLE      PublishRecord table
    SITE_PUBLISH_LOCKS_TABLE        site lock table
    SITE_PUBLISH_DEV_MODE           "true" to deploy the stub to deploy-live

Infrastructure is provisioned elsewhere. Bucket name, distribution id and
distribution domain left unset are read from SSM:

    /platform/sites/{site}/bucket-name
    /platform/sites/{site}/distribution-id
    /platform/sites/{site}/distribution-domain

The live pointer backend is "dynamodb" by default: the PublishRecord in
records_table is read by the distribution's origin-request function, which is
provisioned with the rest of the site infrastructure, and by status and
rollback here. Set pointer_backend = "cloudfront" to repoint the
distribution's OriginPath directly instead.
"""

from __future__ import annotations

import dataclasses
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from site_publisher.exceptions import ConfigError
from site_publisher.globs import validate_file_options
from site_publisher.models import DEFAULT_INDEX_PAGE, DEFAULT_SIZE_LIMIT_MB, FileOption
from site_publisher.pointer import DEFAULT_RECORDS_TABLE
from site_publisher.site_lock import DEFAULT_LOCKS_TABLE
from site_publisher.store import DEFAULT_ARTIFACT_PREFIX, DEFAULT_UPLOAD_CONCURRENCY

POINTER_BACKENDS: tuple[str, ...] = ("dynamodb", "cloudfront")
SSM_PARAMETER_TEMPLATES: dict[str, str] = {
    "bucket": "/platform/sites/{site}/bucket-name",
    "distribution_id": "/platform/sites/{site}/distribution-id",
    "distribution_domain": "/platform/sites/{site}/distribution-domain",
}


# ---------------------------------------------------------------------------
# Custom domain — plain name or structured settings, resolved once here
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlainDomain:
    name: str

    @property
    def domain_name(self) -> str:
        return self.name


@dataclass(frozen=True)
class StructuredDomain:
    domain_name: str
    domain_alias: str | None = None
    hosted_zone: str | None = None
    certificate_arn: str | None = None
    is_external_domain: bool = False


CustomDomain = PlainDomain | StructuredDomain


def parse_custom_domain(value: str | Mapping[str, Any] | None) -> CustomDomain | None:
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            raise ConfigError("custom_domain", "must not be empty")
        return PlainDomain(value.strip())
    if not isinstance(value, Mapping):
        raise ConfigError("custom_domain", "must be a domain name or a table")

    domain_name = str(value.get("domain_name", "")).strip()
    if not domain_name:
        raise ConfigError("custom_domain.domain_name", "is required")
    domain = StructuredDomain(
        domain_name=domain_name,
        domain_alias=value.get("domain_alias"),
        hosted_zone=value.get("hosted_zone"),
        certificate_arn=value.get("certificate_arn"),
        is_external_domain=bool(value.get("is_external_domain", False)),
    )
    if domain.is_external_domain:
        if not domain.certificate_arn:
            raise ConfigError(
                "custom_domain.certificate_arn",
                'a certificate is required when "is_external_domain" is true',
            )
        if domain.domain_alias:
            raise ConfigError(
                "custom_domain.domain_alias",
                "domain aliases are only supported for Route 53 domains; "
                'unset it when "is_external_domain" is true',
            )
        if domain.hosted_zone:
            raise ConfigError(
                "custom_domain.hosted_zone",
                "hosted zones are only supported for Route 53 domains; "
                'unset it when "is_external_domain" is true',
            )
    return domain


def custom_domain_url(domain: CustomDomain | None) -> str | None:
    if domain is None:
        return None
    return f"https://{domain.domain_name}"


# ---------------------------------------------------------------------------
# SiteSettings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SiteSettings:
    site: str
    aws_region: str
    site_path: str = "."
    build_command: str | None = None
    build_output: str = "."
    index_page: str = DEFAULT_INDEX_PAGE
    size_limit_mb: float = DEFAULT_SIZE_LIMIT_MB
    environment: dict[str, str] = field(default_factory=dict)
    replace_values: tuple[dict[str, str], ...] = ()
    file_options: tuple[FileOption, ...] = ()
    custom_domain: CustomDomain | None = None
    bucket: str | None = None
    destination_prefix: str = ""
    artifact_bucket: str | None = None
    artifact_prefix: str = DEFAULT_ARTIFACT_PREFIX
    records_table: str = DEFAULT_RECORDS_TABLE
    locks_table: str = DEFAULT_LOCKS_TABLE
    distribution_id: str | None = None
    distribution_domain: str | None = None
    pointer_backend: str = "dynamodb"
    default_cache_control: str | None = None
    dev_mode: bool = False
    skip_build: bool = False
    upload_concurrency: int = DEFAULT_UPLOAD_CONCURRENCY
    retry_attempts: int = 4
    retry_base_delay: float = 2.0
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    wait_for_invalidation: bool = False
    prune_stale: bool = False

    @property
    def build_output_path(self) -> Path:
        return Path(self.site_path) / self.build_output

    @property
    def resolved_artifact_bucket(self) -> str:
        return self.artifact_bucket or self.require("bucket")

    def require(self, name: str) -> str:
        value = getattr(self, name)
        if not value:
            raise ConfigError(name, "is not configured and could not be resolved")
        return str(value)


def require_aws_region() -> str:
    """Read AWS_REGION from environment and fail fast if missing."""
    region = os.environ.get("AWS_REGION", "").strip()
    if not region:
        raise ConfigError("AWS_REGION", "must be set")
    return region


def _env_flag(name: str) -> bool | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    return raw.strip().lower() in ("1", "true", "yes")


def _as_list(value: Any, field_name: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(field_name, "must be a list")
    return value


def _parse_file_options(raw: Any) -> tuple[FileOption, ...]:
    options = []
    for position, item in enumerate(_as_list(raw, "file_options")):
        try:
            options.append(
                FileOption.from_config(
                    exclude=item["exclude"],
                    include=item["include"],
                    cache_control=str(item["cache_control"]),
                )
            )
        except (KeyError, TypeError) as exc:
            raise ConfigError(
                f"file_options[{position}]", "requires exclude, include and cache_control"
            ) from exc
    validate_file_options(options)
    return tuple(options)


def _parse_replace_values(raw: Any) -> tuple[dict[str, str], ...]:
    values = []
    for position, item in enumerate(_as_list(raw, "replace_values")):
        if not isinstance(item, Mapping) or not {"files", "search", "replace"} <= set(item):
            raise ConfigError(f"replace_values[{position}]", "requires files, search and replace")
        values.append({key: str(item[key]) for key in ("files", "search", "replace")})
    return tuple(values)


def settings_from_mapping(data: Mapping[str, Any], *, aws_region: str) -> SiteSettings:
    """Build SiteSettings from parsed TOML tables [site], [destination], [artifacts], [publish]."""
    site = dict(data.get("site", {}))
    destination = dict(data.get("destination", {}))
    artifacts = dict(data.get("artifacts", {}))
    publish = dict(data.get("publish", {}))

    name = str(site.get("name", "")).strip()
    if not name:
        raise ConfigError("site.name", "is required")

    pointer_backend = str(destination.get("pointer", "dynamodb"))
    if pointer_backend not in POINTER_BACKENDS:
        raise ConfigError("destination.pointer", f"must be one of {', '.join(POINTER_BACKENDS)}")

    size_limit_mb = float(site.get("size_limit_mb", DEFAULT_SIZE_LIMIT_MB))
    if size_limit_mb <= 0:
        raise ConfigError("site.size_limit_mb", "must be positive")

    environment = site.get("environment", {}) or {}
    if not isinstance(environment, Mapping):
        raise ConfigError("site.environment", "must be a table of NAME = value")

    return SiteSettings(
        site=name,
        aws_region=aws_region,
        site_path=str(site.get("path", ".")),
        build_command=site.get("build_command"),
        build_output=str(site.get("build_output", ".")),
        index_page=str(site.get("index_page", DEFAULT_INDEX_PAGE)),
        size_limit_mb=size_limit_mb,
        environment={str(k): str(v) for k, v in environment.items()},
        replace_values=_parse_replace_values(site.get("replace_values")),
        file_options=_parse_file_options(site.get("file_options")),
        custom_domain=parse_custom_domain(site.get("custom_domain")),
        bucket=destination.get("bucket"),
        destination_prefix=str(destination.get("prefix", "")),
        artifact_bucket=artifacts.get("bucket"),
        artifact_prefix=str(artifacts.get("prefix", DEFAULT_ARTIFACT_PREFIX)),
        records_table=str(destination.get("records_table", DEFAULT_RECORDS_TABLE)),
        locks_table=str(destination.get("locks_table", DEFAULT_LOCKS_TABLE)),
        distribution_id=destination.get("distribution_id"),
        distribution_domain=destination.get("distribution_domain"),
        pointer_backend=pointer_backend,
        default_cache_control=destination.get("default_cache_control"),
        dev_mode=bool(publish.get("dev_mode", False)),
        skip_build=bool(publish.get("skip_build", False)),
        upload_concurrency=int(publish.get("upload_concurrency", DEFAULT_UPLOAD_CONCURRENCY)),
        retry_attempts=int(publish.get("retry_attempts", 4)),
        retry_base_delay=float(publish.get("retry_base_delay", 2.0)),
        connect_timeout=float(publish.get("connect_timeout", 10.0)),
        read_timeout=float(publish.get("read_timeout", 60.0)),
        wait_for_invalidation=bool(publish.get("wait_for_invalidation", False)),
        prune_stale=bool(publish.get("prune_stale", False)),
    )


def load_settings(path: str | os.PathLike[str], **overrides: Any) -> SiteSettings:
    """Load settings from a TOML site file, then apply env and keyword overrides."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError("config", f"site file not found: {config_path}")
    with config_path.open("rb") as fh:
        try:
            data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError("config", f"invalid TOML in {config_path}: {exc}") from exc

    settings = settings_from_mapping(data, aws_region=require_aws_region())

    env_overrides: dict[str, Any] = {}
    for env_name, field_name in (
        ("SITE_PUBLISH_BUCKET", "bucket"),
        ("SITE_PUBLISH_DISTRIBUTION_ID", "distribution_id"),
        ("SITE_PUBLISH_RECORDS_TABLE", "records_table"),
        ("SITE_PUBLISH_LOCKS_TABLE", "locks_table"),
    ):
        value = os.environ.get(env_name, "").strip()
        if value:
            env_overrides[field_name] = value
    dev_flag = _env_flag("SITE_PUBLISH_DEV_MODE")
    if dev_flag is not None:
        env_overrides["dev_mode"] = dev_flag

    env_overrides.update({k: v for k, v in overrides.items() if v is not None})
    return dataclasses.replace(settings, **env_overrides)


def resolve_infrastructure(settings: SiteSettings, ssm_client: Any) -> SiteSettings:
    """Fill bucket / distribution fields left unset from SSM parameters."""
    resolved: dict[str, str] = {}
    for field_name, template in SSM_PARAMETER_TEMPLATES.items():
        if getattr(settings, field_name):
            continue
        if field_name == "distribution_domain" and settings.custom_domain is not None:
            continue
        param_name = template.format(site=settings.site)
        try:
            response = ssm_client.get_parameter(Name=param_name)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code == "ParameterNotFound":
                raise ConfigError(
                    field_name, f"not configured and SSM parameter {param_name} not found"
                ) from exc
            raise
        resolved[field_name] = str(response["Parameter"]["Value"])
    return dataclasses.replace(settings, **resolved) if resolved else settings


def public_url(settings: SiteSettings) -> str:
    """The site's URL: custom domain when configured, else the distribution domain."""
    custom = custom_domain_url(settings.custom_domain)
    return custom or f"https://{settings.require('distribution_domain')}"
