from datetime import datetime, timezone

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from cw_agent.config import settings


@pytest.fixture(autouse=True)
def no_api_overrides(monkeypatch):
    """Keep CW_API_KEY / CW_API_ENDPOINT from the developer's shell out of the tests."""
    monkeypatch.setattr(settings, "CW_API_KEY", None)
    monkeypatch.setattr(settings, "CW_API_ENDPOINT", None)


@pytest.fixture
def write_config(tmp_path):
    """Write a certwatch.yaml into tmp_path and return its path."""

    def _write(name="prod-1", **overrides):
        data = {
            "api": {"endpoint": "https://api.example.test", "key": "cw_test_key"},
            "agent": {"name": name, "sync_interval": "5m", "scan_interval": "1m"},
            "certificates": [{"hostname": "example.com", "port": 443, "tags": ["prod"]}],
        }
        for section, values in overrides.items():
            if isinstance(values, dict) and isinstance(data.get(section), dict):
                data[section].update(values)
            else:
                data[section] = values
        path = tmp_path / "certwatch.yaml"
        path.write_text(yaml.safe_dump(data))
        return path

    return _write


@pytest.fixture(scope="session")
def make_certificate():
    """Build a self-signed certificate (DER) for example.com with the given validity window."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    def _make(not_before: datetime, not_after: datetime, common_name: str = "example.com") -> bytes:
        name = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "CertWatch Test CA"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ])
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(0x1A2B3C)
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(common_name), x509.DNSName(f"www.{common_name}")]),
                critical=False,
            )
            .sign(key, hashes.SHA256())
        )
        return cert.public_bytes(serialization.Encoding.DER)

    return _make


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
