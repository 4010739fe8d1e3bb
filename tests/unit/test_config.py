"""Unit tests for site_publisher.config."""

from __future__ import annotations

import dataclasses
from pathlib import Path

import boto3
import pytest
from moto import mock_aws

from site_publisher.config import (
    PlainDomain,
    SiteSettings,
    StructuredDomain,
    load_settings,
    parse_custom_domain,
    public_url,
    require_aws_region,
    resolve_infrastructure,
)
from site_publisher.exceptions import ConfigError, InvalidGlobPattern

_REGION = "eu-west-2"

_SITE_TOML = """
[site]
name = "docs"
path = "web"
build_command = "npm run build"
build_output = "dist"
size_limit_mb = 50

[site.environment]
API_URL = "https://api.example.com"

[[site.file_options]]
exclude = "*"
include = ["*.js", "*.css"]
cache_control = "max-age=31536000,public,immutable"

[[site.replace_values]]
files = "*.html"
search = "{{ X }}"
replace = "42"

[destination]
bucket = "site-bucket"
prefix = "sites/docs"
distribution_id = "D1"
distribution_domain = "d111.cloudfront.net"

[publish]
upload_concurrency = 8
prune_stale = true
"""


def _write(tmp_path: Path, content: str = _SITE_TOML) -> Path:
    path = tmp_path / "site.toml"
    path.write_text(content)
    return path


def test_load_settings_reads_site_file(tmp_path: Path) -> None:
    settings = load_settings(_write(tmp_path))

    assert settings.site == "docs"
    assert settings.aws_region == _REGION
    assert settings.build_output_path == Path("web") / "dist"
    assert settings.size_limit_mb == 50
    assert settings.environment == {"API_URL": "https://api.example.com"}
    assert settings.file_options[0].include == ("*.js", "*.css")
    assert settings.replace_values == ({"files": "*.html", "search": "{{ X }}", "replace": "42"},)
    assert settings.destination_prefix == "sites/docs"
    assert settings.upload_concurrency == 8
    assert settings.prune_stale is True
    assert settings.dev_mode is False
    assert settings.pointer_backend == "dynamodb"


def test_environment_and_keyword_overrides(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("SITE_PUBLISH_BUCKET", "other-bucket")
    monkeypatch.setenv("SITE_PUBLISH_DEV_MODE", "true")

    settings = load_settings(_write(tmp_path), skip_build=True, distribution_id=None)

    assert settings.bucket == "other-bucket"
    assert settings.dev_mode is True
    assert settings.skip_build is True
    assert settings.distribution_id == "D1"


def test_missing_region_fails_fast(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AWS_REGION")
    with pytest.raises(ConfigError, match="AWS_REGION"):
        require_aws_region()
    with pytest.raises(ConfigError):
        load_settings(_write(tmp_path))


def test_missing_site_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_settings(tmp_path / "nope.toml")


def test_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="invalid TOML"):
        load_settings(_write(tmp_path, "[site\nname="))


def test_site_name_required(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="site.name"):
        load_settings(_write(tmp_path, "[site]\npath = '.'\n"))


def test_unknown_pointer_backend(tmp_path: Path) -> None:
    content = "[site]\nname = 'docs'\n[destination]\npointer = 'redis'\n"
    with pytest.raises(ConfigError, match="destination.pointer"):
        load_settings(_write(tmp_path, content))


def test_invalid_file_option_pattern(tmp_path: Path) -> None:
    content = (
        "[site]\nname = 'docs'\n"
        "[[site.file_options]]\nexclude = '['\ninclude = '*'\ncache_control = 'x'\n"
    )
    with pytest.raises(InvalidGlobPattern):
        load_settings(_write(tmp_path, content))


def test_incomplete_file_option(tmp_path: Path) -> None:
    content = "[site]\nname = 'docs'\n[[site.file_options]]\nexclude = '*'\n"
    with pytest.raises(ConfigError, match="file_options"):
        load_settings(_write(tmp_path, content))


# ---------------------------------------------------------------------------
# custom domain
# ---------------------------------------------------------------------------


def test_custom_domain_string_and_table() -> None:
    assert parse_custom_domain("docs.example.com") == PlainDomain("docs.example.com")
    assert parse_custom_domain(
        {"domain_name": "docs.example.com", "domain_alias": "www.docs.example.com"}
    ) == StructuredDomain(domain_name="docs.example.com", domain_alias="www.docs.example.com")
    assert parse_custom_domain(None) is None


@pytest.mark.parametrize(
    ("value", "field"),
    [
        ({"domain_name": "a.com", "is_external_domain": True}, "certificate_arn"),
        (
            {
                "domain_name": "a.com",
                "is_external_domain": True,
                "certificate_arn": "arn:cert",
                "domain_alias": "www.a.com",
            },
            "domain_alias",
        ),
        (
            {
                "domain_name": "a.com",
                "is_external_domain": True,
                "certificate_arn": "arn:cert",
                "hosted_zone": "a.com",
            },
            "hosted_zone",
        ),
        ({"hosted_zone": "a.com"}, "domain_name"),
    ],
)
def test_external_domain_constraints(value: dict[str, object], field: str) -> None:
    with pytest.raises(ConfigError) as exc_info:
        parse_custom_domain(value)
    assert exc_info.value.field == f"custom_domain.{field}"


def test_external_domain_with_certificate_is_accepted() -> None:
    domain = parse_custom_domain(
        {"domain_name": "a.com", "is_external_domain": True, "certificate_arn": "arn:cert"}
    )
    assert isinstance(domain, StructuredDomain)
    assert domain.is_external_domain is True


def test_public_url_prefers_custom_domain() -> None:
    settings = SiteSettings(site="docs", aws_region=_REGION, distribution_domain="d1.net")
    assert public_url(settings) == "https://d1.net"
    with_domain = dataclasses.replace(settings, custom_domain=PlainDomain("docs.example.com"))
    assert public_url(with_domain) == "https://docs.example.com"


# ---------------------------------------------------------------------------
# resolve_infrastructure
# ---------------------------------------------------------------------------


@mock_aws
def test_resolve_infrastructure_reads_ssm() -> None:
    ssm = boto3.client("ssm", region_name=_REGION)
    ssm.put_parameter(Name="/platform/sites/docs/bucket-name", Value="ssm-bucket", Type="String")
    ssm.put_parameter(Name="/platform/sites/docs/distribution-id", Value="E123", Type="String")
    ssm.put_parameter(
        Name="/platform/sites/docs/distribution-domain", Value="d9.cloudfront.net", Type="String"
    )

    settings = resolve_infrastructure(
        SiteSettings(site="docs", aws_region=_REGION, bucket="configured"), ssm
    )

    assert settings.bucket == "configured"
    assert settings.distribution_id == "E123"
    assert settings.distribution_domain == "d9.cloudfront.net"


@mock_aws
def test_resolve_infrastructure_missing_parameter() -> None:
    ssm = boto3.client("ssm", region_name=_REGION)
    with pytest.raises(ConfigError) as exc_info:
        resolve_infrastructure(SiteSettings(site="docs", aws_region=_REGION), ssm)
    assert exc_info.value.field == "bucket"


@mock_aws
def test_resolve_infrastructure_skips_distribution_domain_with_custom_domain() -> None:
    ssm = boto3.client("ssm", region_name=_REGION)
    settings = SiteSettings(
        site="docs",
        aws_region=_REGION,
        bucket="b",
        distribution_id="D1",
        custom_domain=PlainDomain("docs.example.com"),
    )
    assert resolve_infrastructure(settings, ssm) == settings
