"""
The two user-facing operations: registering a client certificate (either
issued on the spot for a submitted public key, or uploaded by the user) and
deregistering one.

Neither operation retries anything. A failure before the final write leaves
the principal's attribute list untouched.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from .crypto_utils import decode_certificate, decode_public_key
from .errors import CertwardenError, DecodeError
from .issuer import CertificateIssuer, IssuedCertificate
from .names import escape_dn_value
from .policy import enforce_client_certificate_constraints
from .registry import CertificateId, FingerprintRegistry, \
    RegisteredCertificate
from .store import Attribute

__all__ = [
    'Principal',
    'RegistrationRequest',
    'RegistrationResult',
    'RegistrationWorkflow',
    'format_instant',
]

logger = logging.getLogger(__name__)

DEFAULT_ORGANIZATION_ATTRIBUTE = 'partner-name'
DEFAULT_ORGANIZATION = 'Unknown Partner Org'


def format_instant(dt: datetime) -> str:
    """Format a timestamp as a UTC instant, e.g. ``2025-01-31T12:00:00Z``."""
    return dt.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


@dataclass(frozen=True)
class Principal:
    """An authenticated portal user."""

    email: str
    display_name: str


@dataclass(frozen=True)
class RegistrationRequest:
    """
    A registration request. Exactly one of :attr:`public_key` (together with
    :attr:`key_id`) and :attr:`certificate` is set.
    """

    public_key: Optional[str] = None
    """PEM-encoded public key to issue a certificate for."""

    key_id: Optional[str] = None
    """Caller-chosen key identifier, recorded in the subject DN."""

    certificate: Optional[str] = None
    """PEM-encoded certificate to upload."""

    def __post_init__(self):
        has_public_key = self.public_key is not None
        has_certificate = self.certificate is not None
        if has_public_key == has_certificate \
                or (has_public_key and not self.key_id):
            raise DecodeError(
                "Invalid payload: missing or inconsistent properties."
            )

    @property
    def is_generate(self) -> bool:
        return self.public_key is not None

    @classmethod
    def from_payload(cls, payload) -> 'RegistrationRequest':
        """
        Interpret a JSON request body (``{"publicKey": ..., "keyId": ...}``
        or ``{"certificate": ...}``).

        :raises DecodeError:
            if the payload does not have one of these two shapes.
        """
        if not isinstance(payload, dict):
            raise DecodeError("Payload cannot be parsed")

        def _str_or_none(key):
            value = payload.get(key)
            if value is not None and not isinstance(value, str):
                raise DecodeError(f"'{key}' must be a string")
            return value

        return cls(
            public_key=_str_or_none('publicKey'),
            key_id=_str_or_none('keyId'),
            certificate=_str_or_none('certificate'),
        )


@dataclass(frozen=True)
class RegistrationResult:
    certificate: IssuedCertificate
    certificate_id: CertificateId

    @property
    def fingerprint(self) -> str:
        return self.certificate.fingerprint_base64

    def as_json(self) -> dict:
        cert = self.certificate
        return {
            'pem': cert.pem,
            'fingerprint': self.fingerprint,
            'certificate-id': str(self.certificate_id),
            'subjectDN': cert.subject_dn,
            'notBefore': format_instant(cert.not_before),
            'notAfter': format_instant(cert.not_after),
        }


class RegistrationWorkflow:
    """
    Orchestrates decoding, issuance or validation, and registry updates.

    :param issuer:
        Issuer used for the generate path.
    :param registry:
        Registry holding the principals' certificates.
    :param organization_attribute:
        Name of the attribute holding the principal's organization name.
    :param default_organization:
        Organization name to use if the principal has none.
    """

    def __init__(self, issuer: CertificateIssuer,
                 registry: FingerprintRegistry,
                 organization_attribute: str = DEFAULT_ORGANIZATION_ATTRIBUTE,
                 default_organization: str = DEFAULT_ORGANIZATION):
        self.issuer = issuer
        self.registry = registry
        self.organization_attribute = organization_attribute
        self.default_organization = default_organization

    def organization_name(self, attributes: List[Attribute]) -> str:
        for attr in attributes:
            if attr.name == self.organization_attribute and attr.value:
                return attr.value
        return self.default_organization

    @staticmethod
    def subject_dn(principal: Principal, organization: str,
                   key_id: str) -> str:
        return 'CN=%s, O=%s, serialNumber=%s' % (
            escape_dn_value(principal.display_name),
            escape_dn_value(organization),
            escape_dn_value(key_id),
        )

    def _generate(self, principal: Principal, request: RegistrationRequest,
                  attributes: List[Attribute]) -> IssuedCertificate:
        organization = self.organization_name(attributes)
        logger.info(
            f"Using organization name '{organization}' for certificate "
            f"generation"
        )
        public_key = decode_public_key(request.public_key)
        return self.issuer.issue(
            public_key,
            self.subject_dn(principal, organization, request.key_id),
            principal.email,
            organization,
        )

    @staticmethod
    def _upload(principal: Principal, request: RegistrationRequest) \
            -> IssuedCertificate:
        cert = decode_certificate(request.certificate)
        enforce_client_certificate_constraints(cert)
        logger.info(
            f"Successfully processed uploaded certificate for "
            f"{principal.email}"
        )
        return IssuedCertificate(cert)

    def register(self, principal: Principal,
                 request: RegistrationRequest) -> RegistrationResult:
        """
        Register a certificate for a principal.

        The capacity check happens before any signing work. The attribute
        list is fetched again right before the write so that registrations
        made in the meantime are preserved.

        :raises DecodeError:
            if the public key or certificate cannot be decoded.
        :raises PolicyViolation:
            if the certificate (or public key) is unacceptable.
        :raises CapacityExceeded:
            if the principal has too many certificates.
        :raises DuplicateFingerprint:
            if the certificate is already registered.
        :raises SigningError:
            if issuance fails.
        :raises StoreError:
            if the attribute store fails.
        """
        email = principal.email
        logger.info(f"Attempting to register certificate for {email}")
        try:
            attributes = self.registry.check_capacity_and_list(email)
            if request.is_generate:
                issued = self._generate(principal, request, attributes)
            else:
                issued = self._upload(principal, request)

            fresh_attributes = self.registry.store.get(email)
            _, cert_id = self.registry.register(
                email, issued.fingerprint_base64, fresh_attributes
            )
        except CertwardenError as e:
            if e.client_fault:
                logger.warning(f"Registration for {email} rejected: {e}")
            raise
        return RegistrationResult(certificate=issued, certificate_id=cert_id)

    def deregister(self, principal: Principal, cert_id) -> List[Attribute]:
        logger.info(
            f"Deregistering certificate {cert_id} for {principal.email}"
        )
        return self.registry.deregister(principal.email, cert_id)

    def list_certificates(self, principal: Principal) \
            -> List[RegisteredCertificate]:
        return self.registry.list_certificates(principal.email)
