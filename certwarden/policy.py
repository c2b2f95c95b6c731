"""
Acceptance policy for client certificates that developers upload
themselves.

There are eight rules. Each rule is a plain function that inspects the
certificate and returns a :class:`PolicyFinding` when the rule is violated,
or ``None`` otherwise. The rules always run in the same order, so "the first
finding" is well-defined.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from asn1crypto import keys, x509
from cryptography import x509 as pyca_x509
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import PolicyViolation

__all__ = [
    'PolicyFinding',
    'RULE_NOT_A_CA',
    'RULE_NOT_EXPIRED',
    'RULE_CLIENT_AUTH_EKU',
    'RULE_PROHIBITED_EKU',
    'RULE_KEY_ALGORITHM',
    'RULE_KEY_STRENGTH',
    'RULE_SIGNATURE_DIGEST',
    'RULE_NOT_SELF_SIGNED',
    'CLIENT_CERTIFICATE_RULES',
    'evaluate_client_certificate',
    'enforce_client_certificate_constraints',
    'check_public_key',
    'enforce_public_key_constraints',
    'key_strength',
]

logger = logging.getLogger(__name__)

RULE_NOT_A_CA = 'not-a-ca'
RULE_NOT_EXPIRED = 'not-expired'
RULE_CLIENT_AUTH_EKU = 'client-auth-eku'
RULE_PROHIBITED_EKU = 'prohibited-eku'
RULE_KEY_ALGORITHM = 'key-algorithm'
RULE_KEY_STRENGTH = 'key-strength'
RULE_SIGNATURE_DIGEST = 'signature-digest'
RULE_NOT_SELF_SIGNED = 'not-self-signed'

CLIENT_AUTH_OID = '1.3.6.1.5.5.7.3.2'
PROHIBITED_EKU_OIDS = frozenset({
    '1.3.6.1.5.5.7.3.3',  # codeSigning
    '1.3.6.1.5.5.7.3.8',  # timeStamping
    '1.3.6.1.5.5.7.3.9',  # OCSPSigning
})

ALLOWED_KEY_ALGORITHMS = frozenset({'rsa', 'ec'})
MIN_RSA_MODULUS_BITS = 2048
MIN_EC_ORDER_BITS = 256
ALLOWED_DIGESTS = frozenset({'sha256', 'sha384', 'sha512'})


@dataclass(frozen=True)
class PolicyFinding:
    """A violated acceptance rule."""

    rule: str
    """Identifier of the violated rule, e.g. ``'key-strength'``."""

    message: str
    """Human-readable explanation."""


def check_not_a_ca(cert: x509.Certificate, at_time) \
        -> Optional[PolicyFinding]:
    key_usage = cert.key_usage_value
    if key_usage is not None and 'key_cert_sign' in key_usage.native:
        return PolicyFinding(
            RULE_NOT_A_CA,
            "the certificate must not be usable for certificate signing"
        )


def check_not_expired(cert: x509.Certificate, at_time) \
        -> Optional[PolicyFinding]:
    # no lower bound on the validity period
    if at_time > cert.not_valid_after:
        return PolicyFinding(RULE_NOT_EXPIRED, "the certificate is expired")


def _eku_oids(cert: x509.Certificate) -> Optional[List[str]]:
    eku = cert.extended_key_usage_value
    if eku is None:
        return None
    return [purpose.dotted for purpose in eku]


def check_client_auth_eku(cert: x509.Certificate, at_time) \
        -> Optional[PolicyFinding]:
    oids = _eku_oids(cert)
    if oids is None or CLIENT_AUTH_OID not in oids:
        return PolicyFinding(
            RULE_CLIENT_AUTH_EKU,
            "the certificate is missing extended key usage (clientAuth)"
        )


def check_prohibited_eku(cert: x509.Certificate, at_time) \
        -> Optional[PolicyFinding]:
    for oid in _eku_oids(cert) or ():
        if oid in PROHIBITED_EKU_OIDS:
            return PolicyFinding(
                RULE_PROHIBITED_EKU,
                f"the certificate includes a prohibited OID for extended "
                f"key usage ({oid})"
            )


def _check_key_algorithm(public_key: keys.PublicKeyInfo) \
        -> Optional[PolicyFinding]:
    algorithm = public_key.algorithm
    if algorithm not in ALLOWED_KEY_ALGORITHMS:
        return PolicyFinding(
            RULE_KEY_ALGORITHM,
            f"the certificate uses an unsupported key type ({algorithm})"
        )


def key_strength(public_key: keys.PublicKeyInfo) -> int:
    """
    Strength of a public key in bits: the modulus size for RSA. For EC keys
    with explicit parameters this is the size of the group order, for named
    curves it is the curve size reported by ``cryptography`` (the size of the
    underlying field). On every curve ``cryptography`` knows, the two agree
    on whether the 256-bit minimum is met. Returns 0 for anything else,
    including EC keys on curves we cannot identify.
    """
    algorithm = public_key.algorithm
    if algorithm == 'rsa':
        return public_key['public_key'].parsed['modulus'].native.bit_length()
    elif algorithm == 'ec':
        params = public_key['algorithm']['parameters']
        if params.name == 'specified':
            return params.chosen['order'].native.bit_length()
        elif params.name == 'named':
            try:
                curve = ec.get_curve_for_oid(
                    pyca_x509.ObjectIdentifier(params.chosen.dotted)
                )
            except LookupError:
                logger.debug(f"Unknown named curve {params.chosen.dotted}")
                return 0
            return curve.key_size
    return 0


def _check_key_strength(public_key: keys.PublicKeyInfo) \
        -> Optional[PolicyFinding]:
    algorithm = public_key.algorithm
    if algorithm == 'rsa':
        minimum = MIN_RSA_MODULUS_BITS
    elif algorithm == 'ec':
        minimum = MIN_EC_ORDER_BITS
    else:
        return None
    strength = key_strength(public_key)
    if strength < minimum:
        return PolicyFinding(
            RULE_KEY_STRENGTH,
            f"the public key within the certificate uses an insufficient "
            f"key strength ({strength})"
        )


def check_key_algorithm(cert: x509.Certificate, at_time) \
        -> Optional[PolicyFinding]:
    return _check_key_algorithm(cert.public_key)


def check_key_strength(cert: x509.Certificate, at_time) \
        -> Optional[PolicyFinding]:
    return _check_key_strength(cert.public_key)


def check_signature_digest(cert: x509.Certificate, at_time) \
        -> Optional[PolicyFinding]:
    sd_algo = cert['signature_algorithm']
    algo_name = sd_algo['algorithm'].native
    try:
        # pure EdDSA has no separate digest
        if sd_algo.signature_algo in ('ed25519', 'ed448'):
            digest = None
        else:
            digest = sd_algo.hash_algo
    except ValueError:
        digest = None
    if digest not in ALLOWED_DIGESTS:
        return PolicyFinding(
            RULE_SIGNATURE_DIGEST,
            f"the certificate uses an unsupported signature algorithm "
            f"({algo_name})"
        )


def check_not_self_signed(cert: x509.Certificate, at_time) \
        -> Optional[PolicyFinding]:
    if cert.subject == cert.issuer:
        return PolicyFinding(
            RULE_NOT_SELF_SIGNED, "the certificate must not be self-signed"
        )


CertificateRule = Callable[
    [x509.Certificate, datetime], Optional[PolicyFinding]
]

CLIENT_CERTIFICATE_RULES: List[CertificateRule] = [
    check_not_a_ca,
    check_not_expired,
    check_client_auth_eku,
    check_prohibited_eku,
    check_key_algorithm,
    check_key_strength,
    check_signature_digest,
    check_not_self_signed,
]


def _reference_time(at_time: Optional[datetime]) -> datetime:
    if at_time is None:
        return datetime.now(tz=timezone.utc)
    elif at_time.tzinfo is None:
        # naive times are taken to be UTC
        return at_time.replace(tzinfo=timezone.utc)
    return at_time


def evaluate_client_certificate(
    cert: x509.Certificate, at_time: Optional[datetime] = None
) -> List[PolicyFinding]:
    """
    Run all eight rules against a certificate.

    :param cert:
        The certificate to check.
    :param at_time:
        Reference time for the expiry check. Defaults to the current time;
        a naive datetime is taken to be UTC.
    :return:
        All findings, in rule order. An empty list means the certificate is
        acceptable.
    """
    at_time = _reference_time(at_time)
    findings = []
    for rule in CLIENT_CERTIFICATE_RULES:
        finding = rule(cert, at_time)
        if finding is not None:
            findings.append(finding)
    return findings


def enforce_client_certificate_constraints(
    cert: x509.Certificate, at_time: Optional[datetime] = None
):
    """
    Verify that an uploaded certificate is acceptable as a client
    certificate.

    :raises PolicyViolation:
        for the first rule that fails.
    """
    at_time = _reference_time(at_time)
    for rule in CLIENT_CERTIFICATE_RULES:
        finding = rule(cert, at_time)
        if finding is not None:
            raise PolicyViolation(finding)


def check_public_key(public_key: keys.PublicKeyInfo) -> List[PolicyFinding]:
    """Apply the key algorithm and key strength rules to a bare public key."""
    findings = [
        _check_key_algorithm(public_key), _check_key_strength(public_key)
    ]
    return [f for f in findings if f is not None]


def enforce_public_key_constraints(public_key: keys.PublicKeyInfo):
    findings = check_public_key(public_key)
    if findings:
        raise PolicyViolation(findings[0])
