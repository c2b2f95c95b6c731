"""
Conversion between textual distinguished names
(``CN=Jane Doe, O=Example Corp, serialNumber=key-1``) and ``asn1crypto``
name objects.

Parsing, escaping and formatting follow RFC 4514 and are delegated to
``cryptography``. The textual form lists the most specific RDN first, so the
encoded RDN sequence is in reverse textual order. RDNs are separated by
``', '`` in the output, and whitespace after a separator is accepted on input.
"""

import re

from asn1crypto import x509
from cryptography import x509 as pyca_x509
from cryptography.x509.oid import NameOID

from .errors import DecodeError

__all__ = [
    'parse_dn', 'format_dn', 'escape_dn_value', 'subject_dn_of',
    'issuer_dn_of',
]

# OID -> (RFC 4514 keyword, asn1crypto attribute type)
_ATTRIBUTES = {
    NameOID.COMMON_NAME: ('CN', 'common_name'),
    NameOID.ORGANIZATION_NAME: ('O', 'organization_name'),
    NameOID.ORGANIZATIONAL_UNIT_NAME: ('OU', 'organizational_unit_name'),
    NameOID.COUNTRY_NAME: ('C', 'country_name'),
    NameOID.LOCALITY_NAME: ('L', 'locality_name'),
    NameOID.STATE_OR_PROVINCE_NAME: ('ST', 'state_or_province_name'),
    NameOID.SERIAL_NUMBER: ('serialNumber', 'serial_number'),
    NameOID.EMAIL_ADDRESS: ('emailAddress', 'email_address'),
}

# keywords cryptography doesn't know about by itself
_KEYWORD_OVERRIDES = {
    NameOID.SERIAL_NUMBER: 'serialNumber',
    NameOID.EMAIL_ADDRESS: 'emailAddress',
}

_PARSE_OVERRIDES = {
    variant: oid
    for oid, (keyword, _) in _ATTRIBUTES.items()
    for variant in (keyword, keyword.lower(), keyword.upper())
}
_PARSE_OVERRIDES.update(E=NameOID.EMAIL_ADDRESS, e=NameOID.EMAIL_ADDRESS)

# an unescaped ',' or '+' followed by whitespace
_SEPARATOR_SPACE = re.compile(r'(?<!\\)((?:\\\\)*[,+])\s+')

_PRINTABLE_TYPES = frozenset({'country_name', 'serial_number'})
_PRINTABLE_CHARS = frozenset(
    'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789'
    " '()+,-./:=?"
)


def escape_dn_value(value: str) -> str:
    """Escape a value so it can be embedded in a DN string."""
    attr = pyca_x509.NameAttribute(NameOID.ORGANIZATION_NAME, value)
    return attr.rfc4514_string().partition('=')[2]


def _attribute(attr: pyca_x509.NameAttribute) -> x509.NameTypeAndValue:
    try:
        _, attr_type = _ATTRIBUTES[attr.oid]
    except KeyError:
        raise DecodeError(
            f"Unsupported attribute '{attr.rfc4514_attribute_name}' in "
            f"distinguished name."
        )
    value = attr.value
    if not value:
        raise DecodeError(
            f"Empty value for '{attr.rfc4514_attribute_name}' in "
            f"distinguished name."
        )
    # fall back to UTF8String for values PrintableString can't represent
    if attr_type in _PRINTABLE_TYPES and _PRINTABLE_CHARS.issuperset(value):
        encoded = x509.DirectoryString(name='printable_string', value=value)
    elif attr_type == 'email_address':
        encoded = x509.EmailAddress(value)
    else:
        encoded = x509.DirectoryString(name='utf8_string', value=value)
    return x509.NameTypeAndValue({'type': attr_type, 'value': encoded})


def parse_dn(text: str) -> x509.Name:
    """
    Parse a textual DN.

    :raises DecodeError:
        if the DN is malformed or uses an unsupported attribute keyword.
    """
    if not text or not text.strip():
        raise DecodeError("Distinguished name must not be empty.")
    normalised = _SEPARATOR_SPACE.sub(r'\1', text.lstrip())
    try:
        name = pyca_x509.Name.from_rfc4514_string(
            normalised, _PARSE_OVERRIDES
        )
    except ValueError as e:
        raise DecodeError(f"Malformed distinguished name '{text}'.") from e

    rdns = [
        x509.RelativeDistinguishedName([_attribute(attr) for attr in rdn])
        for rdn in name.rdns
    ]
    return x509.Name(name='', value=x509.RDNSequence(rdns))


def format_dn(name: pyca_x509.Name) -> str:
    """Render a name as a DN string, most specific RDN first."""
    return ', '.join(
        rdn.rfc4514_string(_KEYWORD_OVERRIDES) for rdn in reversed(name.rdns)
    )


def _load(cert: x509.Certificate) -> pyca_x509.Certificate:
    return pyca_x509.load_der_x509_certificate(cert.dump())


def subject_dn_of(cert: x509.Certificate) -> str:
    return format_dn(_load(cert).subject)


def issuer_dn_of(cert: x509.Certificate) -> str:
    return format_dn(_load(cert).issuer)
