"""
Bookkeeping of a principal's registered certificates.

Each registered certificate is one ``cert-<timestamp>`` attribute in the
principal's attribute list, whose value is the certificate's unpadded base64
SHA-256 fingerprint. All other attributes belong to someone else and are
passed through untouched.

.. warning::
    Updates are read-modify-write cycles on a remote list without any
    concurrency control. Two registrations running at the same time for the
    same principal can both pass the capacity check.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from .config_utils import LabelString
from .errors import CapacityExceeded, DuplicateFingerprint
from .store import Attribute, AttributeStore

__all__ = [
    'CertificateId',
    'RegisteredCertificate',
    'FingerprintRegistry',
    'CERT_ATTRIBUTE_PREFIX',
    'DEFAULT_MAX_CERTIFICATES',
    'is_certificate_attribute',
    'partition_attributes',
    'new_certificate_id',
]

logger = logging.getLogger(__name__)

CERT_ATTRIBUTE_PREFIX = 'cert-'
CERT_ID_TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'
DEFAULT_MAX_CERTIFICATES = 6


class CertificateId(LabelString):
    """Identifier of a registered certificate (``cert-YYYYMMDD-HHMMSS``)."""
    pass


@dataclass(frozen=True)
class RegisteredCertificate:
    id: CertificateId
    fingerprint: str

    def as_json(self):
        return {'id': str(self.id), 'fingerprint': self.fingerprint}


def is_certificate_attribute(attr: Attribute) -> bool:
    return attr.name.startswith(CERT_ATTRIBUTE_PREFIX)


def partition_attributes(attributes: Iterable[Attribute]) \
        -> Tuple[List[Attribute], List[Attribute]]:
    """
    Split an attribute list into certificate attributes and everything else,
    preserving order within each part.
    """
    certs, others = [], []
    for attr in attributes:
        (certs if is_certificate_attribute(attr) else others).append(attr)
    return certs, others


def new_certificate_id(existing: Iterable[Attribute],
                       at_time: Optional[datetime] = None) -> CertificateId:
    """
    Derive an identifier for a certificate registered at ``at_time``.

    The identifier is ``cert-YYYYMMDD-HHMMSS`` in UTC. If that is already
    taken (two registrations in the same second), a monotonic numeric suffix
    is appended: ``cert-YYYYMMDD-HHMMSS-2``, ``-3`` and so on.
    """
    at_time = at_time or datetime.now(tz=timezone.utc)
    base = CERT_ATTRIBUTE_PREFIX + at_time.astimezone(timezone.utc).strftime(
        CERT_ID_TIMESTAMP_FORMAT
    )
    taken = {attr.name for attr in existing}
    candidate = base
    counter = 1
    while candidate in taken:
        counter += 1
        candidate = f'{base}-{counter}'
    if candidate != base:
        logger.warning(
            f"Certificate identifier {base} already in use, using {candidate}"
        )
    return CertificateId(candidate)


class FingerprintRegistry:
    """
    Capacity- and uniqueness-constrained view of the certificates registered
    to a principal.

    :param store:
        The attribute store holding the principal's attribute lists.
    :param max_certificates:
        Maximal number of certificates a principal may register.
    """

    def __init__(self, store: AttributeStore,
                 max_certificates: int = DEFAULT_MAX_CERTIFICATES):
        if max_certificates < 1:
            raise ValueError("max_certificates must be positive")
        self.store = store
        self.max_certificates = max_certificates

    @staticmethod
    def count_certificates(attributes: Iterable[Attribute]) -> int:
        return sum(1 for attr in attributes if is_certificate_attribute(attr))

    def check_capacity(self, email: str, attributes: List[Attribute]):
        count = self.count_certificates(attributes)
        if count >= self.max_certificates:
            logger.warning(
                f"Principal {email} already has {count} certificates "
                f"(limit is {self.max_certificates})."
            )
            raise CapacityExceeded(self.max_certificates)
        return count

    def check_capacity_and_list(self, email: str) -> List[Attribute]:
        """
        Fetch the principal's attributes and make sure there is room for
        another certificate.

        :return:
            The current attribute list.
        :raises CapacityExceeded:
            if the principal is at the limit.
        :raises StoreError:
            if the attributes cannot be fetched.
        """
        attributes = self.store.get(email)
        count = self.check_capacity(email, attributes)
        logger.info(
            f"Principal {email} has {count} certificates, proceeding with "
            f"registration."
        )
        return attributes

    @staticmethod
    def verify_fingerprint_uniqueness(fingerprint: str,
                                      attributes: Iterable[Attribute]):
        """
        :raises DuplicateFingerprint:
            if some certificate attribute already carries this fingerprint.
        """
        for attr in attributes:
            if is_certificate_attribute(attr) and attr.value == fingerprint:
                raise DuplicateFingerprint(fingerprint, attr.name)

    def register(self, email: str, fingerprint: str,
                 current_attributes: List[Attribute],
                 at_time: Optional[datetime] = None) \
            -> Tuple[List[Attribute], CertificateId]:
        """
        Append a certificate attribute to the principal's attribute list and
        write the list back.

        :param email:
            The principal.
        :param fingerprint:
            Base64 fingerprint of the certificate to register.
        :param current_attributes:
            The principal's attribute list, as recently fetched from the
            store. All entries are preserved in the write.
        :param at_time:
            Registration time, used for the identifier.
        :return:
            The attribute list echoed by the store, and the new identifier.
        :raises CapacityExceeded:
            if ``current_attributes`` is at the limit already.
        :raises DuplicateFingerprint:
            if the fingerprint is already registered.
        :raises StoreError:
            if the write fails.
        """
        self.check_capacity(email, current_attributes)
        self.verify_fingerprint_uniqueness(fingerprint, current_attributes)
        # same-second registrations get a -2, -3, ... suffix instead of
        # overwriting the earlier attribute
        cert_id = new_certificate_id(current_attributes, at_time)
        updated = list(current_attributes)
        updated.append(Attribute(name=str(cert_id), value=fingerprint))
        result = self.store.put(email, updated)
        logger.info(
            f"Registered certificate {cert_id} for {email}"
        )
        return result, cert_id

    def deregister(self, email: str, cert_id,
                   current_attributes: Optional[List[Attribute]] = None) \
            -> List[Attribute]:
        """
        Remove a certificate attribute. Removing an identifier that is not
        present is not an error, and does not write anything. Identifiers
        without the ``cert-`` prefix never match.

        :param email:
            The principal.
        :param cert_id:
            Identifier of the certificate to remove.
        :param current_attributes:
            The principal's attribute list. Fetched from the store if
            omitted.
        :return:
            The resulting attribute list.
        """
        if current_attributes is None:
            current_attributes = self.store.get(email)
        cert_id = str(cert_id)
        # only certificate attributes are ever removed
        remaining = [
            attr for attr in current_attributes
            if not (is_certificate_attribute(attr) and attr.name == cert_id)
        ]
        if len(remaining) == len(current_attributes):
            logger.info(
                f"No certificate {cert_id} registered for {email}; "
                f"nothing to remove"
            )
            return list(current_attributes)
        result = self.store.put(email, remaining)
        logger.info(f"Deregistered certificate {cert_id} for {email}")
        return result

    def list_certificates(self, email: str) -> List[RegisteredCertificate]:
        certs, _ = partition_attributes(self.store.get(email))
        return [
            RegisteredCertificate(CertificateId(attr.name), attr.value)
            for attr in certs
        ]
