from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from cw_agent.agent_config import AgentConfig, CertificateTarget
from cw_agent.scanner.service import CertificateScannerService, parse_certificate


def make_config(*hosts):
    return AgentConfig.model_validate({
        "api": {"key": "cw_test_key"},
        "agent": {"name": "prod-1", "concurrency": 2},
        "certificates": [{"hostname": h, "tags": ["prod"]} for h in hosts],
    })


def test_parse_valid_certificate(make_certificate, now):
    der = make_certificate(now - timedelta(days=10), now + timedelta(days=90))
    result = parse_certificate(der, CertificateTarget(hostname="example.com", tags=["prod"]), now=now)

    assert result.status == "valid"
    assert result.days_until_expiry == 90
    assert result.subject_cn == "example.com"
    assert result.issuer == "example.com"
    assert result.serial_number == "1a2b3c"
    assert result.sans == ["example.com", "www.example.com"]
    assert len(result.fingerprint_sha256) == 64
    assert result.tags == ["prod"]
    assert result.port == 443
    assert result.scanned_at == now


def test_parse_expiring_certificate(make_certificate, now):
    der = make_certificate(now - timedelta(days=80), now + timedelta(days=10))
    result = parse_certificate(der, CertificateTarget(hostname="example.com"), now=now)

    assert result.status == "expiring"
    assert result.days_until_expiry == 10


def test_parse_expired_certificate(make_certificate, now):
    der = make_certificate(now - timedelta(days=90), now - timedelta(days=1))
    result = parse_certificate(der, CertificateTarget(hostname="example.com"), now=now)

    assert result.status == "expired"
    assert result.days_until_expiry < 0


def test_parse_garbage_raises():
    with pytest.raises(ValueError):
        parse_certificate(b"not a certificate", CertificateTarget(hostname="example.com"))


@pytest.mark.asyncio
async def test_scan_all_records_results(make_certificate):
    today = datetime.now(timezone.utc)
    good = make_certificate(today - timedelta(days=1), today + timedelta(days=200))

    def fake_fetch(hostname, port, timeout):
        if hostname == "down.example.com":
            raise ConnectionRefusedError(111, "Connection refused")
        return good

    scanner = CertificateScannerService(make_config("example.com", "down.example.com"))
    with patch("cw_agent.scanner.service.fetch_peer_certificate", side_effect=fake_fetch):
        results = await scanner.scan_all()

    by_host = {r.hostname: r for r in results}
    assert by_host["example.com"].status == "valid"
    assert by_host["down.example.com"].status == "error"
    assert "Connection refused" in by_host["down.example.com"].error
    assert by_host["down.example.com"].tags == ["prod"]
    assert len(scanner.latest_results()) == 2


@pytest.mark.asyncio
async def test_latest_results_keeps_one_entry_per_endpoint(make_certificate):
    today = datetime.now(timezone.utc)
    good = make_certificate(today - timedelta(days=1), today + timedelta(days=200))
    scanner = CertificateScannerService(make_config("example.com"))

    with patch("cw_agent.scanner.service.fetch_peer_certificate", return_value=good):
        await scanner.scan_all()
        await scanner.scan_all()

    assert len(scanner.latest_results()) == 1


@pytest.mark.asyncio
async def test_start_and_stop():
    scanner = CertificateScannerService(make_config("example.com"))
    await scanner.start()
    await scanner.stop()
    assert scanner.latest_results() == []
