import pytest
from cryptography import x509 as pyca_x509
from cryptography.x509.oid import NameOID

from certwarden.errors import DecodeError
from certwarden.names import (
    escape_dn_value,
    format_dn,
    issuer_dn_of,
    parse_dn,
    subject_dn_of,
)
from tests.conftest import make_leaf


def test_parse_dn_order():
    name = parse_dn('CN=Jane Doe, O=Example Corp, serialNumber=key-1')
    rdns = list(name.chosen)
    # least specific RDN comes first in the encoding
    assert rdns[0][0]['type'].native == 'serial_number'
    assert rdns[-1][0]['type'].native == 'common_name'
    assert name.native == {
        'common_name': 'Jane Doe',
        'organization_name': 'Example Corp',
        'serial_number': 'key-1',
    }


def test_format_dn():
    name = pyca_x509.Name([
        pyca_x509.NameAttribute(NameOID.SERIAL_NUMBER, 'key-1'),
        pyca_x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'Example Corp'),
        pyca_x509.NameAttribute(NameOID.COMMON_NAME, 'Jane Doe'),
    ])
    assert format_dn(name) == \
        'CN=Jane Doe, O=Example Corp, serialNumber=key-1'


@pytest.mark.parametrize(
    'dn',
    [
        'cn=abc,o=def,serialnumber=1',
        'CN=abc, O=def, SERIALNUMBER=1',
        'CN=abc,  O=def,\tserialNumber=1',
    ],
)
def test_parse_dn_keywords_and_separators(dn):
    assert dict(parse_dn(dn).native) == {
        'common_name': 'abc',
        'organization_name': 'def',
        'serial_number': '1',
    }


def test_parse_dn_hex_escape():
    name = parse_dn('CN=a\\2Cb, O=Org')
    assert name.native['common_name'] == 'a,b'


def test_parse_dn_multi_valued_rdn():
    name = parse_dn('CN=Jane+OU=Dev, O=Org')
    rdns = list(name.chosen)
    assert len(rdns) == 2
    assert rdns[0][0]['type'].native == 'organization_name'
    assert {tv['type'].native for tv in rdns[1]} == {
        'common_name', 'organizational_unit_name'
    }


@pytest.mark.parametrize(
    'value',
    [
        'Doe, Jane',
        'a+b',
        'quote"d',
        'back\\slash',
        'ends with backslash\\',
        '<angle>',
        'semi;colon',
        'x=y',
        ' leading space',
        '#hash',
        'trailing space ',
    ],
)
def test_escape_roundtrip(value):
    name = parse_dn(f'CN={escape_dn_value(value)}, O=Org')
    assert name.native['common_name'] == value
    assert name.native['organization_name'] == 'Org'


def test_escaped_space_at_end_of_dn():
    name = parse_dn(f'O=Org, CN={escape_dn_value("Jane ")}')
    assert name.native['common_name'] == 'Jane '


def test_escape_dn_value():
    assert escape_dn_value('Doe, Jane') == 'Doe\\, Jane'
    assert escape_dn_value('#1') == '\\#1'
    assert escape_dn_value('plain') == 'plain'


def test_serial_number_encoding():
    name = parse_dn('CN=x, serialNumber=key-1')
    printable = [
        tv['value'] for rdn in name.chosen for tv in rdn
        if tv['type'].native == 'serial_number'
    ][0]
    assert printable.name == 'printable_string'
    # underscores are not allowed in PrintableString
    name = parse_dn('CN=x, serialNumber=key_1')
    utf8 = [
        tv['value'] for rdn in name.chosen for tv in rdn
        if tv['type'].native == 'serial_number'
    ][0]
    assert utf8.name == 'utf8_string'
    assert utf8.native == 'key_1'


def test_email_address():
    name = parse_dn('CN=x, emailAddress=jane@example.com')
    assert name.native['email_address'] == 'jane@example.com'


@pytest.mark.parametrize(
    'dn',
    [
        '',
        '   ',
        'CN',
        'CN=',
        'O=',
        'XYZ=abc',
        'STREET=Main Street',
        'CN=abc, O=def\\',
        'CN=abc,,O=def',
    ],
)
def test_parse_dn_errors(dn):
    with pytest.raises(DecodeError):
        parse_dn(dn)


def test_certificate_dns(client_cert):
    assert subject_dn_of(client_cert) == 'O=Example Corp, CN=Jane Doe'
    assert issuer_dn_of(client_cert) == \
        'O=Certwarden Testing, CN=Certwarden Test Issuer'


def test_multi_valued_rdn_survives_formatting(subject_key, issuer_key):
    subject = pyca_x509.Name([
        pyca_x509.RelativeDistinguishedName([
            pyca_x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'Org'),
        ]),
        pyca_x509.RelativeDistinguishedName([
            pyca_x509.NameAttribute(NameOID.COMMON_NAME, 'Jane'),
            pyca_x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, 'Dev'),
        ]),
    ])
    cert = make_leaf(subject_key, issuer_key, subject=subject)
    dn = subject_dn_of(cert)
    first, _, rest = dn.partition(', ')
    assert rest == 'O=Org'
    assert sorted(first.split('+')) == ['CN=Jane', 'OU=Dev']

    reparsed = parse_dn(dn)
    assert len(list(reparsed.chosen)) == 2
    assert dict(reparsed.native) == dict(cert.subject.native)
