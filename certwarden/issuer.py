"""
Issuance of client certificates under the portal's issuer key.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from asn1crypto import algos, keys, x509
from cryptography.exceptions import InvalidSignature

from .config_utils import ConfigurationError, SearchDir
from .crypto_utils import (
    decode_certificate,
    decode_private_key,
    fingerprint,
    fingerprint_base64,
    generic_sign,
    generic_verify,
    to_pem,
)
from .errors import CertwardenError, SigningError
from .names import issuer_dn_of, parse_dn, subject_dn_of
from .policy import enforce_public_key_constraints

__all__ = [
    'IssuedCertificate',
    'IssuerIdentity',
    'CertificateIssuer',
    'CERTIFICATE_VALIDITY',
    'SIGNATURE_ALGORITHM',
]

logger = logging.getLogger(__name__)

CERTIFICATE_VALIDITY = timedelta(days=365)
SIGNATURE_ALGORITHM = 'sha256_rsa'
SERIAL_NUMBER_BITS = 160

DEFAULT_CERTIFICATE_PATTERN = 'issuer-cert*.pem'
DEFAULT_PRIVATE_KEY_PATTERN = 'issuer-*privatekey*.pem'


def _x509_dt_asn1(dt: datetime) -> x509.Time:
    return x509.Time({'utc_time' if dt.year < 2050 else 'general_time': dt})


@dataclass(frozen=True)
class IssuedCertificate:
    """
    A certificate together with the values derived from it that callers
    care about. Also used to wrap uploaded certificates.
    """

    certificate: x509.Certificate

    @property
    def der(self) -> bytes:
        return self.certificate.dump()

    @property
    def pem(self) -> str:
        return to_pem(self.certificate)

    @property
    def fingerprint(self) -> bytes:
        return fingerprint(self.certificate)

    @property
    def fingerprint_base64(self) -> str:
        return fingerprint_base64(self.certificate)

    @property
    def subject_dn(self) -> str:
        return subject_dn_of(self.certificate)

    @property
    def issuer_dn(self) -> str:
        return issuer_dn_of(self.certificate)

    @property
    def serial_number(self) -> int:
        return self.certificate.serial_number

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after


def _read_single(search_dir: SearchDir, pattern: str, what: str) -> bytes:
    matches = search_dir.glob(pattern)
    if not matches:
        raise ConfigurationError(
            f"No {what} matching '{pattern}' found in {search_dir}."
        )
    elif len(matches) > 1:
        raise ConfigurationError(
            f"Pattern '{pattern}' for the {what} is ambiguous in "
            f"{search_dir}: {', '.join(matches)}."
        )
    try:
        with open(matches[0], 'rb') as f:
            return f.read()
    except IOError as e:
        raise ConfigurationError(
            f"Failed to read {what} from {matches[0]}."
        ) from e


@dataclass(frozen=True)
class IssuerIdentity:
    """
    The issuer's certificate and private signing key.

    Built once at start-up (see :meth:`load`) and never modified afterwards,
    so a single instance can be shared between threads.
    """

    certificate: x509.Certificate
    private_key: keys.PrivateKeyInfo

    @property
    def public_key(self) -> keys.PublicKeyInfo:
        return self.certificate.public_key

    @property
    def name(self) -> x509.Name:
        return self.certificate.subject

    @classmethod
    def from_pem(cls, cert_pem, private_key_pem, password=None) \
            -> 'IssuerIdentity':
        """
        Decode and cross-check an issuer certificate and its private key.

        :raises ConfigurationError:
            if either item cannot be decoded, the key is not an RSA key, or
            the key does not belong to the certificate.
        """
        try:
            certificate = decode_certificate(cert_pem)
            key_pair = decode_private_key(private_key_pem, password)
        except CertwardenError as e:
            raise ConfigurationError(
                f"Failed to decode issuer key material: {e}"
            ) from e
        if key_pair.algorithm != 'rsa':
            raise ConfigurationError(
                f"The issuer key must be an RSA key, not "
                f"{key_pair.algorithm}."
            )
        if key_pair.public.dump() != certificate.public_key.dump():
            raise ConfigurationError(
                "The issuer private key does not match the issuer "
                "certificate."
            )
        return cls(certificate=certificate, private_key=key_pair.private)

    @classmethod
    def load(
        cls,
        search_dir: SearchDir,
        certificate_pattern: str = DEFAULT_CERTIFICATE_PATTERN,
        private_key_pattern: str = DEFAULT_PRIVATE_KEY_PATTERN,
        password=None,
    ) -> 'IssuerIdentity':
        """
        Locate the issuer certificate and private key by file name pattern
        and load them.

        :param search_dir:
            Directory holding the key material.
        :param certificate_pattern:
            Shell-style pattern for the certificate's file name.
        :param private_key_pattern:
            Shell-style pattern for the private key's file name.
        :param password:
            Password for the private key, if it is encrypted.
        :raises ConfigurationError:
            if the files cannot be found (exactly one match is required for
            each pattern), read or decoded.
        """
        cert_pem = _read_single(
            search_dir, certificate_pattern, 'issuer certificate'
        )
        key_pem = _read_single(
            search_dir, private_key_pattern, 'issuer private key'
        )
        identity = cls.from_pem(cert_pem, key_pem, password)
        logger.info(
            f"Loaded issuer identity {subject_dn_of(identity.certificate)} "
            f"from {search_dir}"
        )
        return identity


class CertificateIssuer:
    """
    Issues one-year client certificates signed by an :class:`IssuerIdentity`.

    Instances hold no mutable state; :meth:`issue` can be called from
    several threads at once.
    """

    def __init__(self, identity: IssuerIdentity):
        self.identity = identity
        self.signature_algo = algos.SignedDigestAlgorithm(
            {'algorithm': SIGNATURE_ALGORITHM}
        )

    @staticmethod
    def _extensions(email: str, organization: str, issued_at: datetime):
        urn = 'urn:%s.%s' % (
            issued_at.astimezone(timezone.utc).strftime('%Y%m'),
            organization.replace(' ', '-'),
        )
        subject_alt_names = x509.GeneralNames([
            x509.GeneralName(name='rfc822_name', value=email),
            x509.GeneralName(name='uniform_resource_identifier', value=urn),
        ])
        return [
            x509.Extension({
                'extn_id': 'basic_constraints',
                'critical': True,
                'extn_value': x509.BasicConstraints({'ca': False}),
            }),
            x509.Extension({
                'extn_id': 'key_usage',
                'critical': True,
                # asn1crypto doesn't accept a list to construct a bit string
                'extn_value': x509.KeyUsage(
                    {'digital_signature', 'key_agreement'}
                ),
            }),
            x509.Extension({
                'extn_id': 'subject_alt_name',
                'critical': False,
                'extn_value': subject_alt_names,
            }),
            x509.Extension({
                'extn_id': 'extended_key_usage',
                'critical': False,
                'extn_value': x509.ExtKeyUsageSyntax(['client_auth']),
            }),
        ]

    def issue(
        self,
        public_key: keys.PublicKeyInfo,
        subject_dn: str,
        email: str,
        organization: str,
        issued_at: Optional[datetime] = None,
    ) -> IssuedCertificate:
        """
        Issue a new client certificate.

        :param public_key:
            The subject's public key. Must be an RSA key of at least 2048 bits
            or an EC key on a curve of at least 256 bits.
        :param subject_dn:
            Subject DN, e.g. ``CN=Jane Doe, O=Example Corp, serialNumber=k1``.
        :param email:
            Principal's email address, recorded as an RFC 822 SAN.
        :param organization:
            Organization name, recorded in the URN SAN.
        :param issued_at:
            Start of the validity period. Defaults to the current time.
        :return:
            The signed certificate.
        :raises PolicyViolation:
            if the public key is unacceptable.
        :raises DecodeError:
            if the subject DN is malformed.
        :raises SigningError:
            if the certificate cannot be signed, or fails self-verification.
        """
        enforce_public_key_constraints(public_key)
        subject = parse_dn(subject_dn)

        now = issued_at or datetime.now(tz=timezone.utc)
        now = now.replace(microsecond=0)
        serial = int.from_bytes(
            secrets.token_bytes(SERIAL_NUMBER_BITS // 8), 'big'
        )
        identity = self.identity
        try:
            tbs = x509.TbsCertificate({
                'version': 'v3',
                'serial_number': serial,
                'signature': self.signature_algo,
                'issuer': identity.name,
                'validity': x509.Validity({
                    'not_before': _x509_dt_asn1(now),
                    'not_after': _x509_dt_asn1(now + CERTIFICATE_VALIDITY),
                }),
                'subject': subject,
                'subject_public_key_info': public_key,
                'extensions': self._extensions(email, organization, now),
            })
            tbs_bytes = tbs.dump()
            signature = generic_sign(
                private_key=identity.private_key,
                tbs_bytes=tbs_bytes,
                signature_algo=self.signature_algo,
            )
            cert = x509.Certificate({
                'tbs_certificate': tbs,
                'signature_algorithm': self.signature_algo,
                'signature_value': signature,
            })
            # reparse so that everything downstream sees the encoded form
            cert = x509.Certificate.load(cert.dump())
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to build certificate for {subject_dn}: {e}")
            raise SigningError("Failed to produce a certificate") from e

        self._self_check(cert)
        result = IssuedCertificate(cert)
        logger.info(
            f"Issued certificate {result.fingerprint_base64} "
            f"(serial {serial:x}) for {email}"
        )
        return result

    def _self_check(self, cert: x509.Certificate):
        try:
            generic_verify(
                self.identity.public_key,
                cert['tbs_certificate'].dump(),
                cert['signature_value'].native,
                cert['signature_algorithm'],
            )
        except InvalidSignature as e:
            logger.error(
                "Freshly issued certificate does not verify against the "
                "issuer certificate"
            )
            raise SigningError(
                "Issued certificate failed signature verification"
            ) from e
