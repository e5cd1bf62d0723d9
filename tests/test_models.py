"""Tests for models and schemas."""

import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError

from certops.core.fingerprints import normalize_fingerprint
from certops.models.certificate import Certificate
from certops.schemas.base import merge_model
from certops.schemas.config import ConfigDocument, GlobalDefaults
from certops.schemas.deploy_action import (
    CopyAction,
    DockerRestartAction,
    EmailAction,
    parse_deploy_action,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_certificate(**overrides) -> Certificate:
    data = dict(
        fingerprint="AB" * 32,
        common_name="api.example.com",
        valid_from=NOW - timedelta(days=10),
        valid_to=NOW + timedelta(days=20),
        cert_path="/certs/api.crt",
    )
    data.update(overrides)
    return Certificate(**data)


class TestFingerprints:
    """Test fingerprint normalization."""

    def test_openssl_output(self):
        """Test openssl's "SHA256 Fingerprint=" output normalizes."""
        assert normalize_fingerprint("sha256 Fingerprint=ab:cd:ef") == "ABCDEF"

    def test_separators_and_case(self):
        assert normalize_fingerprint(" ab cd:EF\n01 ") == "ABCDEF01"

    def test_idempotent(self):
        value = normalize_fingerprint("SHA-256 fingerprint = 0a:1b")
        assert normalize_fingerprint(value) == value == "0A1B"

    def test_empty(self):
        assert normalize_fingerprint("") == ""


class TestCertificate:
    """Test certificate entity helpers."""

    def test_display_name(self):
        """Test display name falls back from name to CN to fingerprint prefix."""
        assert make_certificate(name="API").display_name == "API"
        assert make_certificate().display_name == "api.example.com"
        assert make_certificate(common_name=None).display_name == "AB" * 8

    def test_expiry(self):
        cert = make_certificate()

        assert cert.days_until_expiry(NOW) == 20
        assert not cert.is_expired(NOW)
        assert cert.is_expired(NOW + timedelta(days=20))

    def test_needs_renewal_uses_default_threshold(self):
        """Test the global threshold applies without a per-certificate one."""
        cert = make_certificate()

        assert cert.needs_renewal(NOW, default_days=30)
        assert not cert.needs_renewal(NOW, default_days=10)

    def test_needs_renewal_per_certificate_threshold(self):
        """Test a per-certificate threshold overrides the default."""
        cert = make_certificate(renew_days_before_expiry=5)

        assert not cert.needs_renewal(NOW, default_days=30)
        assert cert.needs_renewal(NOW + timedelta(days=15), default_days=30)

    def test_auto_renew_disabled(self):
        cert = make_certificate(auto_renew=False)

        assert not cert.needs_renewal(NOW + timedelta(days=30), default_days=30)

    def test_camel_case_serialization(self):
        """Test persisted field names are camelCase."""
        data = make_certificate(is_ca=True).to_json_dict()

        assert data["isCA"] is True
        assert data["certPath"] == "/certs/api.crt"
        assert "validTo" in data
        assert "deployActions" in data


class TestDeployActions:
    """Test the deploy action tagged union."""

    def test_parse_by_type(self):
        """Test records are parsed into their typed variant."""
        action = parse_deploy_action({"type": "copy", "destination": "/etc/ssl/api.pem", "mode": "0600"})

        assert isinstance(action, CopyAction)
        assert action.mode == "0600"
        assert action.enabled
        assert action.id

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_deploy_action({"type": "carrier-pigeon"})

    def test_invalid_mode(self):
        with pytest.raises(ValidationError):
            parse_deploy_action({"type": "copy", "destination": "/tmp/x", "mode": "rw-"})

    def test_docker_requires_container(self):
        with pytest.raises(ValidationError):
            parse_deploy_action({"type": "docker-restart"})
        action = parse_deploy_action({"type": "docker-restart", "containerId": "abc", "containerName": "proxy"})
        assert isinstance(action, DockerRestartAction)
        assert action.container == "proxy"

    def test_email_recipients_string(self):
        """Test comma separated recipient strings are split."""
        action = parse_deploy_action({"type": "email", "to": "a@example.com, b@example.com"})

        assert isinstance(action, EmailAction)
        assert action.to == ["a@example.com", "b@example.com"]

    def test_camel_case_round_trip(self):
        action = parse_deploy_action({"type": "ssh-copy", "host": "web1", "destination": "/etc/ssl/c.pem", "hostKeyPolicy": "accept-new"})

        assert action.to_json_dict()["hostKeyPolicy"] == "accept-new"
        assert parse_deploy_action(action.to_json_dict()) == action


class TestGlobalDefaults:
    """Test global defaults validation and merging."""

    def test_defaults(self):
        defaults = GlobalDefaults()

        assert defaults.renew_days_before_expiry == 30
        assert defaults.renewal_schedule == "0 0 * * *"
        assert defaults.auto_renew_by_default
        assert defaults.ca_validity_period.root_ca == 3650

    def test_invalid_cron(self):
        with pytest.raises(ValidationError):
            GlobalDefaults(renewal_schedule="every day")

    def test_merge_nested_camel_case(self):
        """Test merge_model accepts aliases and merges nested models."""
        merged = merge_model(
            GlobalDefaults(),
            {"caValidityPeriod": {"standard": 90}, "renewDaysBeforeExpiry": 14},
        )

        assert merged.ca_validity_period.standard == 90
        assert merged.ca_validity_period.root_ca == 3650
        assert merged.renew_days_before_expiry == 14

    def test_merge_unknown_field(self):
        with pytest.raises(ValueError):
            merge_model(GlobalDefaults(), {"bogus": 1})

    def test_document_from_camel_json(self):
        document = ConfigDocument.model_validate(
            {
                "globalDefaults": {"renewalSchedule": "*/5 * * * *"},
                "certificates": {"AB": {"name": "x", "passphraseIV": "00"}},
            }
        )

        assert document.global_defaults.renewal_schedule == "*/5 * * * *"
        assert document.certificates["AB"].passphrase_iv == "00"
