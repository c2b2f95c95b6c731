import pathlib
from datetime import datetime

import pytest
import pytz
from asn1crypto import algos, pem, x509
from cryptography import x509 as pyca_x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from certwarden.issuer import IssuerIdentity

ISSUER_CN = 'Certwarden Test Issuer'
ISSUER_ORG = 'Certwarden Testing'
ISSUER_KEY_PASSWORD = b'issuer-secret'

CLIENT_AUTH = ExtendedKeyUsageOID.CLIENT_AUTH
CODE_SIGNING = ExtendedKeyUsageOID.CODE_SIGNING
TIME_STAMPING = ExtendedKeyUsageOID.TIME_STAMPING
OCSP_SIGNING = ExtendedKeyUsageOID.OCSP_SIGNING

DEFAULT_NOT_BEFORE = datetime(2020, 1, 1, tzinfo=pytz.utc)
DEFAULT_NOT_AFTER = datetime(2040, 1, 1, tzinfo=pytz.utc)


def gen_rsa_key(key_size=2048):
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def pyca_name(cn, org=None):
    attrs = [pyca_x509.NameAttribute(NameOID.COMMON_NAME, cn)]
    if org is not None:
        attrs.append(pyca_x509.NameAttribute(NameOID.ORGANIZATION_NAME, org))
    return pyca_x509.Name(attrs)


def to_asn1(cert: pyca_x509.Certificate) -> x509.Certificate:
    return x509.Certificate.load(
        cert.public_bytes(serialization.Encoding.DER)
    )


def cert_pem(cert: x509.Certificate) -> bytes:
    return pem.armor('CERTIFICATE', cert.dump())


def public_key_pem(private_key) -> bytes:
    return private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def private_key_pem(private_key, fmt=serialization.PrivateFormat.PKCS8,
                    password=None) -> bytes:
    if password is None:
        encryption = serialization.NoEncryption()
    else:
        encryption = serialization.BestAvailableEncryption(password)
    return private_key.private_bytes(
        serialization.Encoding.PEM, fmt, encryption
    )


def make_issuer_cert(issuer_key) -> x509.Certificate:
    name = pyca_name(ISSUER_CN, ISSUER_ORG)
    cert = (
        pyca_x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(issuer_key.public_key())
        .serial_number(pyca_x509.random_serial_number())
        .not_valid_before(DEFAULT_NOT_BEFORE)
        .not_valid_after(DEFAULT_NOT_AFTER)
        .add_extension(
            pyca_x509.BasicConstraints(ca=True, path_length=None),
            critical=True
        )
        .add_extension(
            pyca_x509.KeyUsage(
                digital_signature=False, content_commitment=False,
                key_encipherment=False, data_encipherment=False,
                key_agreement=False, key_cert_sign=True, crl_sign=True,
                encipher_only=False, decipher_only=False,
            ),
            critical=True
        )
        .sign(issuer_key, hashes.SHA256())
    )
    return to_asn1(cert)


def make_leaf(subject_key, issuer_key, *, subject_cn='Jane Doe',
              subject_org='Example Corp', issuer_cn=ISSUER_CN,
              issuer_org=ISSUER_ORG, not_before=DEFAULT_NOT_BEFORE,
              not_after=DEFAULT_NOT_AFTER, ekus=(CLIENT_AUTH,),
              key_cert_sign=False, hash_algo=hashes.SHA256(),
              subject=None) -> x509.Certificate:
    """
    Build a client certificate with cryptography's builder API.
    ``ekus=None`` omits the extended key usage extension altogether, and
    ``subject`` replaces the name built from ``subject_cn``/``subject_org``.
    """
    if subject is None:
        subject = pyca_name(subject_cn, subject_org)
    builder = (
        pyca_x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(pyca_name(issuer_cn, issuer_org))
        .public_key(subject_key.public_key())
        .serial_number(pyca_x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            pyca_x509.BasicConstraints(ca=False, path_length=None),
            critical=True
        )
        .add_extension(
            pyca_x509.KeyUsage(
                digital_signature=True, content_commitment=False,
                key_encipherment=False, data_encipherment=False,
                key_agreement=False, key_cert_sign=key_cert_sign,
                crl_sign=False, encipher_only=False, decipher_only=False,
            ),
            critical=True
        )
    )
    if ekus is not None:
        builder = builder.add_extension(
            pyca_x509.ExtendedKeyUsage(list(ekus)), critical=False
        )
    return to_asn1(builder.sign(issuer_key, hash_algo))


def resign_with_sha1(cert: x509.Certificate, issuer_key) -> x509.Certificate:
    """Re-sign a certificate using sha1WithRSAEncryption."""
    sig_algo = algos.SignedDigestAlgorithm({'algorithm': 'sha1_rsa'})
    orig = cert['tbs_certificate']
    tbs = x509.TbsCertificate({
        'version': orig['version'],
        'serial_number': orig['serial_number'],
        'signature': sig_algo,
        'issuer': orig['issuer'],
        'validity': orig['validity'],
        'subject': orig['subject'],
        'subject_public_key_info': orig['subject_public_key_info'],
        'extensions': orig['extensions'],
    })
    signature = issuer_key.sign(tbs.dump(), padding.PKCS1v15(), hashes.SHA1())
    return x509.Certificate.load(x509.Certificate({
        'tbs_certificate': tbs,
        'signature_algorithm': sig_algo,
        'signature_value': signature,
    }).dump())


@pytest.fixture(scope='session')
def issuer_key():
    return gen_rsa_key()


@pytest.fixture(scope='session')
def issuer_cert(issuer_key):
    return make_issuer_cert(issuer_key)


@pytest.fixture(scope='session')
def identity(issuer_key, issuer_cert) -> IssuerIdentity:
    return IssuerIdentity.from_pem(
        cert_pem(issuer_cert), private_key_pem(issuer_key)
    )


@pytest.fixture(scope='session')
def subject_key():
    return gen_rsa_key()


@pytest.fixture(scope='session')
def other_subject_key():
    return gen_rsa_key()


@pytest.fixture(scope='session')
def client_cert(subject_key, issuer_key):
    return make_leaf(subject_key, issuer_key)


def write_issuer_files(key_dir: pathlib.Path, issuer_key, issuer_cert,
                       password=None):
    key_dir.mkdir(parents=True, exist_ok=True)
    (key_dir / 'issuer-cert.pem').write_bytes(cert_pem(issuer_cert))
    (key_dir / 'issuer-privatekey.pem').write_bytes(
        private_key_pem(issuer_key, password=password)
    )
    return key_dir


@pytest.fixture
def issuer_dir(tmp_path, issuer_key, issuer_cert):
    return write_issuer_files(tmp_path / 'keys', issuer_key, issuer_cert)
