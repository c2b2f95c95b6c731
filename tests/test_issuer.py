from datetime import datetime, timedelta

import pytest
import pytz
from cryptography.hazmat.primitives.asymmetric import ec
from freezegun import freeze_time

from certwarden.config_utils import ConfigurationError, SearchDir
from certwarden.crypto_utils import (
    decode_certificate,
    decode_public_key,
    fingerprint_base64,
    generic_verify,
)
from certwarden.errors import DecodeError, PolicyViolation
from certwarden.issuer import CertificateIssuer, IssuerIdentity
from certwarden.policy import evaluate_client_certificate
from tests.conftest import (
    ISSUER_KEY_PASSWORD,
    cert_pem,
    gen_rsa_key,
    private_key_pem,
    public_key_pem,
    write_issuer_files,
)

SUBJECT_DN = 'CN=Jane Doe, O=Example Corp, serialNumber=key-1'


@pytest.fixture(scope='module')
def issuer(identity):
    return CertificateIssuer(identity)


@pytest.fixture
def subject_public_key(subject_key):
    return decode_public_key(public_key_pem(subject_key))


def _issue(issuer, public_key, **kwargs):
    return issuer.issue(
        public_key, SUBJECT_DN, 'jane@example.com', 'Example Corp', **kwargs
    )


@freeze_time('2025-03-14 15:09:26.535')
def test_issue_basics(issuer, identity, subject_public_key):
    issued = _issue(issuer, subject_public_key)
    cert = issued.certificate
    assert issued.subject_dn == SUBJECT_DN
    assert cert.issuer == identity.name
    assert cert.public_key.dump() == subject_public_key.dump()
    assert cert['tbs_certificate']['version'].native == 'v3'
    assert cert['signature_algorithm']['algorithm'].native == 'sha256_rsa'

    now = datetime(2025, 3, 14, 15, 9, 26, tzinfo=pytz.utc)
    assert issued.not_before == now
    assert issued.not_after == now + timedelta(days=365)


def test_issue_extensions(issuer, subject_public_key):
    issued = _issue(
        issuer, subject_public_key,
        issued_at=datetime(2025, 1, 31, 12, 0, tzinfo=pytz.utc)
    )
    cert = issued.certificate
    extensions = {
        ext['extn_id'].native: ext
        for ext in cert['tbs_certificate']['extensions']
    }
    assert set(extensions) == {
        'basic_constraints', 'key_usage', 'subject_alt_name',
        'extended_key_usage',
    }
    assert extensions['basic_constraints']['critical'].native
    assert cert.basic_constraints_value['ca'].native is False
    assert extensions['key_usage']['critical'].native
    assert cert.key_usage_value.native == {
        'digital_signature', 'key_agreement'
    }
    assert not extensions['extended_key_usage']['critical'].native
    assert cert.extended_key_usage_value.native == ['client_auth']
    assert not extensions['subject_alt_name']['critical'].native
    assert cert.subject_alt_name_value.native == [
        'jane@example.com', 'urn:202501.Example-Corp'
    ]


def test_issued_certificate_passes_policy(issuer, subject_public_key):
    issued = _issue(issuer, subject_public_key)
    assert evaluate_client_certificate(issued.certificate) == []


def test_issued_certificate_verifies(issuer, identity, subject_public_key):
    issued = _issue(issuer, subject_public_key)
    cert = issued.certificate
    generic_verify(
        identity.public_key, cert['tbs_certificate'].dump(),
        cert['signature_value'].native, cert['signature_algorithm']
    )


def test_issued_certificate_derived_values(issuer, subject_public_key):
    issued = _issue(issuer, subject_public_key)
    assert decode_certificate(issued.pem).dump() == issued.der
    assert issued.fingerprint_base64 == fingerprint_base64(issued.certificate)
    assert issued.issuer_dn == \
        'O=Certwarden Testing, CN=Certwarden Test Issuer'
    assert issued.serial_number > 0


def test_serial_numbers_differ(issuer, subject_public_key):
    first = _issue(issuer, subject_public_key)
    second = _issue(issuer, subject_public_key)
    assert first.serial_number != second.serial_number
    assert first.fingerprint != second.fingerprint


def test_issue_ec_key(issuer):
    key = ec.generate_private_key(ec.SECP384R1())
    public_key = decode_public_key(public_key_pem(key))
    issued = _issue(issuer, public_key)
    assert issued.certificate.public_key.algorithm == 'ec'
    assert evaluate_client_certificate(issued.certificate) == []


def test_issue_weak_key_rejected(issuer):
    weak = decode_public_key(public_key_pem(gen_rsa_key(1024)))
    with pytest.raises(PolicyViolation, match='insufficient key strength'):
        _issue(issuer, weak)


def test_issue_bad_subject(issuer, subject_public_key):
    with pytest.raises(DecodeError):
        issuer.issue(
            subject_public_key, 'garbage', 'jane@example.com', 'Example Corp'
        )


def test_identity_load(issuer_dir, identity):
    loaded = IssuerIdentity.load(SearchDir(str(issuer_dir)))
    assert loaded.certificate.dump() == identity.certificate.dump()
    assert loaded.private_key.dump() == identity.private_key.dump()


def test_identity_load_encrypted(tmp_path, issuer_key, issuer_cert):
    key_dir = write_issuer_files(
        tmp_path / 'keys', issuer_key, issuer_cert,
        password=ISSUER_KEY_PASSWORD
    )
    search_dir = SearchDir(str(key_dir))
    loaded = IssuerIdentity.load(search_dir, password=ISSUER_KEY_PASSWORD)
    assert loaded.certificate.dump() == issuer_cert.dump()
    with pytest.raises(ConfigurationError, match='password'):
        IssuerIdentity.load(search_dir)


def test_identity_load_missing(tmp_path):
    with pytest.raises(ConfigurationError, match='No issuer certificate'):
        IssuerIdentity.load(SearchDir(str(tmp_path)))


def test_identity_load_ambiguous(issuer_dir, issuer_cert):
    (issuer_dir / 'issuer-cert-2.pem').write_bytes(cert_pem(issuer_cert))
    with pytest.raises(ConfigurationError, match='ambiguous'):
        IssuerIdentity.load(SearchDir(str(issuer_dir)))


def test_identity_load_custom_patterns(tmp_path, issuer_key, issuer_cert):
    (tmp_path / 'ca.crt').write_bytes(cert_pem(issuer_cert))
    (tmp_path / 'ca.key').write_bytes(private_key_pem(issuer_key))
    loaded = IssuerIdentity.load(
        SearchDir(str(tmp_path)), certificate_pattern='*.crt',
        private_key_pattern='*.key'
    )
    assert loaded.certificate.dump() == issuer_cert.dump()


def test_identity_key_mismatch(issuer_cert, subject_key):
    with pytest.raises(ConfigurationError, match='does not match'):
        IssuerIdentity.from_pem(
            cert_pem(issuer_cert), private_key_pem(subject_key)
        )


def test_identity_non_rsa_key(issuer_cert):
    key = ec.generate_private_key(ec.SECP256R1())
    with pytest.raises(ConfigurationError, match='must be an RSA key'):
        IssuerIdentity.from_pem(cert_pem(issuer_cert), private_key_pem(key))


def test_identity_undecodable(issuer_key):
    with pytest.raises(ConfigurationError, match='Failed to decode'):
        IssuerIdentity.from_pem(b'nonsense', private_key_pem(issuer_key))
