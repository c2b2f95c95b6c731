"""
Decoding of PEM-encoded key material and certificates, plus the handful of
low-level signing primitives the issuer needs.

Decoded values are ``asn1crypto`` structures; whenever actual cryptography is
involved (decrypting a protected private key, signing, verifying), the work is
delegated to ``pyca/cryptography``.
"""

import base64
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from asn1crypto import algos, keys, pem, x509
from cryptography import x509 as pyca_x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from .errors import KeyParseError

__all__ = [
    'KeyPair',
    'KeyMaterial',
    'RawPrivateKey',
    'EncryptedPrivateKey',
    'EncryptedKeyPair',
    'PlainKeyPair',
    'reform_indents',
    'classify_key_material',
    'decode_private_key',
    'decode_public_key',
    'decode_certificate',
    'to_pem',
    'fingerprint',
    'fingerprint_base64',
    'load_public_key_object',
    'generic_sign',
    'generic_verify',
]

logger = logging.getLogger(__name__)

PemInput = Union[str, bytes]

CERTIFICATE_PEM_TYPES = frozenset({'CERTIFICATE', 'X509 CERTIFICATE'})
KEY_PAIR_PEM_TYPES = frozenset(
    {'RSA PRIVATE KEY', 'EC PRIVATE KEY', 'DSA PRIVATE KEY'}
)


@dataclass(frozen=True)
class KeyPair:
    """A decoded asymmetric key pair."""

    public: keys.PublicKeyInfo
    private: Optional[keys.PrivateKeyInfo] = None

    @property
    def algorithm(self) -> str:
        """Key algorithm, as a string (e.g. ``'rsa'``, ``'ec'``)."""
        return self.public.algorithm


def reform_indents(text: PemInput) -> str:
    """
    Undo the damage that copy-pasting tends to do to PEM text: surrounding
    whitespace is stripped and indentation after line breaks is removed.
    """
    if isinstance(text, bytes):
        text = text.decode('ascii', errors='replace')
    text = text.strip().replace('\r\n', '\n')
    return re.sub(r'[\r\n]+[ \t]+', '\n', text)


def _unarmor(text: PemInput, what: str):
    normalised = reform_indents(text)
    if not normalised:
        raise KeyParseError(f"unable to read anything when decoding {what}")
    try:
        return pem.unarmor(normalised.encode('ascii'), multiple=False)
    except (ValueError, UnicodeEncodeError) as e:
        raise KeyParseError(
            f"no PEM-encoded object found when decoding {what}"
        ) from e


def _normalise_password(password) -> Optional[bytes]:
    if password is None:
        return None
    if isinstance(password, str):
        password = password.encode('utf8')
    return password or None


def _derive_public_key(private_key):
    if isinstance(private_key, rsa.RSAPrivateKey):
        # the CRT form always carries the modulus and the public exponent
        return private_key.private_numbers().public_numbers.public_key()
    return private_key.public_key()


def _as_key_pair(private_key) -> KeyPair:
    priv_key_info = keys.PrivateKeyInfo.load(
        private_key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    pub_key_info = keys.PublicKeyInfo.load(
        _derive_public_key(private_key).public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    return KeyPair(public=pub_key_info, private=priv_key_info)


def _load_pem_private_key(pem_block: bytes, password: Optional[bytes]):
    try:
        return serialization.load_pem_private_key(pem_block, password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyParseError(f"cannot decode private key: {e}") from e


class KeyMaterial:
    """
    Private key material found in a single PEM block.

    There are exactly four concrete shapes, see :func:`classify_key_material`.
    Each one knows how to turn itself into a :class:`KeyPair`.
    """

    pem_block: bytes
    encrypted = False

    def to_key_pair(self, password: Optional[bytes]) -> KeyPair:
        if self.encrypted and password is None:
            raise KeyParseError(
                "a password is required to decode this private key"
            )
        # unencrypted material never needs the password, so ignore it
        private_key = _load_pem_private_key(
            self.pem_block, password if self.encrypted else None
        )
        return _as_key_pair(private_key)


@dataclass(frozen=True)
class RawPrivateKey(KeyMaterial):
    """Unencrypted PKCS#8 ``PRIVATE KEY``."""

    pem_block: bytes


@dataclass(frozen=True)
class EncryptedPrivateKey(KeyMaterial):
    """Password-protected PKCS#8 ``ENCRYPTED PRIVATE KEY``."""

    pem_block: bytes
    encrypted = True


@dataclass(frozen=True)
class EncryptedKeyPair(KeyMaterial):
    """Legacy OpenSSL key pair with ``Proc-Type: 4,ENCRYPTED``."""

    pem_block: bytes
    encrypted = True


@dataclass(frozen=True)
class PlainKeyPair(KeyMaterial):
    """Legacy OpenSSL key pair without encryption."""

    pem_block: bytes


def classify_key_material(pem_text: PemInput) -> KeyMaterial:
    """
    Figure out which kind of private key material a PEM block holds.

    :param pem_text:
        PEM text. Leading junk and stray indentation are tolerated; only the
        first PEM block is considered.
    :return:
        A :class:`RawPrivateKey`, :class:`EncryptedPrivateKey`,
        :class:`EncryptedKeyPair` or :class:`PlainKeyPair`.
    :raises KeyParseError:
        if there is no PEM block, or it holds something other than a
        private key.
    """
    type_name, headers, der_bytes = _unarmor(pem_text, 'private key')
    block = pem.armor(type_name, der_bytes, headers=headers or None)
    if type_name == 'PRIVATE KEY':
        return RawPrivateKey(block)
    elif type_name == 'ENCRYPTED PRIVATE KEY':
        return EncryptedPrivateKey(block)
    elif type_name in KEY_PAIR_PEM_TYPES:
        proc_type = (headers or {}).get('Proc-Type', '')
        if proc_type.upper().endswith('ENCRYPTED'):
            return EncryptedKeyPair(block)
        return PlainKeyPair(block)
    raise KeyParseError(
        f"unknown object type when decoding private key ({type_name})"
    )


def decode_private_key(pem_text: PemInput, password=None) -> KeyPair:
    """
    Decode a private key in any of the supported PEM shapes, and derive
    the matching public key.

    :param pem_text:
        PEM text containing a PKCS#8 (possibly encrypted) private key or
        a legacy OpenSSL key pair (possibly encrypted).
    :param password:
        Password for encrypted material, as ``str`` or ``bytes``.
        ``None`` and the empty string both mean "no password".
    :return:
        A :class:`KeyPair` with both halves populated.
    :raises KeyParseError:
        if the key cannot be decoded.
    """
    material = classify_key_material(pem_text)
    logger.debug(
        f"Decoding private key material of type {type(material).__name__}"
    )
    return material.to_key_pair(_normalise_password(password))


def decode_public_key(pem_text: PemInput) -> keys.PublicKeyInfo:
    """
    Decode a PEM-encoded public key (``PUBLIC KEY`` or ``RSA PUBLIC KEY``).

    :raises KeyParseError:
        if the text does not hold a decodable public key.
    """
    type_name, _, der_bytes = _unarmor(pem_text, 'public key')
    try:
        if type_name == 'PUBLIC KEY':
            public_key = keys.PublicKeyInfo.load(der_bytes)
        elif type_name == 'RSA PUBLIC KEY':
            public_key = keys.PublicKeyInfo.wrap(
                keys.RSAPublicKey.load(der_bytes), 'rsa'
            )
        else:
            raise KeyParseError(
                f"unknown object type when decoding public key ({type_name})"
            )
        # force a full parse, asn1crypto is lazy
        public_key.native
    except KeyParseError:
        raise
    except (ValueError, TypeError, KeyError) as e:
        raise KeyParseError("cannot instantiate public key") from e
    return public_key


def decode_certificate(cert_data: PemInput) -> x509.Certificate:
    """
    Decode an X.509 certificate.

    :param cert_data:
        PEM text, or raw DER bytes.
    :raises KeyParseError:
        if no certificate can be read.
    """
    if isinstance(cert_data, bytes) and not pem.detect(cert_data):
        der_bytes = cert_data
    else:
        type_name, _, der_bytes = _unarmor(cert_data, 'certificate')
        if type_name not in CERTIFICATE_PEM_TYPES:
            raise KeyParseError(
                f"unknown object type when decoding certificate ({type_name})"
            )
    try:
        cert = x509.Certificate.load(der_bytes)
        cert.native
        # names are rendered through cryptography later on
        pyca_x509.load_der_x509_certificate(der_bytes)
    except (ValueError, TypeError, KeyError) as e:
        raise KeyParseError(
            "cannot instantiate public key from certificate"
        ) from e
    return cert


def to_pem(cert: x509.Certificate) -> str:
    """PEM-encode a certificate (64-column base64, no trailing newline)."""
    return pem.armor('CERTIFICATE', cert.dump()).decode('ascii').rstrip('\n')


def fingerprint(cert: x509.Certificate) -> bytes:
    """SHA-256 digest of the certificate's DER encoding."""
    return hashlib.sha256(cert.dump()).digest()


def fingerprint_base64(cert: x509.Certificate) -> str:
    """Base64 form of :func:`fingerprint`, without padding."""
    return base64.b64encode(fingerprint(cert)).decode('ascii').rstrip('=')


def load_public_key_object(public_key: keys.PublicKeyInfo):
    """Turn an ``asn1crypto`` public key into a ``cryptography`` key object."""
    return serialization.load_der_public_key(public_key.dump())


def _hash_algo(sd_algo: algos.SignedDigestAlgorithm):
    return getattr(hashes, sd_algo.hash_algo.upper())()


def generic_sign(
    private_key: keys.PrivateKeyInfo,
    tbs_bytes: bytes,
    signature_algo: algos.SignedDigestAlgorithm,
) -> bytes:
    priv_key = serialization.load_der_private_key(
        private_key.dump(), password=None
    )
    sig_algo = signature_algo.signature_algo
    if sig_algo == 'rsassa_pkcs1v15':
        assert isinstance(priv_key, rsa.RSAPrivateKey)
        return priv_key.sign(
            tbs_bytes, padding.PKCS1v15(), _hash_algo(signature_algo)
        )
    elif sig_algo == 'ecdsa':
        assert isinstance(priv_key, ec.EllipticCurvePrivateKey)
        return priv_key.sign(
            tbs_bytes, ec.ECDSA(_hash_algo(signature_algo))
        )
    else:  # pragma: nocover
        raise NotImplementedError(
            f"The signature algorithm {sig_algo} is unsupported"
        )


def generic_verify(
    public_key: keys.PublicKeyInfo,
    signed_bytes: bytes,
    signature: bytes,
    signature_algo: algos.SignedDigestAlgorithm,
):
    """
    Verify a signature.

    :raises cryptography.exceptions.InvalidSignature:
        if the signature does not check out.
    """
    pub_key = load_public_key_object(public_key)
    sig_algo = signature_algo.signature_algo
    if sig_algo == 'rsassa_pkcs1v15':
        assert isinstance(pub_key, rsa.RSAPublicKey)
        pub_key.verify(
            signature, signed_bytes, padding.PKCS1v15(),
            _hash_algo(signature_algo)
        )
    elif sig_algo == 'ecdsa':
        assert isinstance(pub_key, ec.EllipticCurvePublicKey)
        pub_key.verify(
            signature, signed_bytes, ec.ECDSA(_hash_algo(signature_algo))
        )
    else:  # pragma: nocover
        raise NotImplementedError(
            f"The signature algorithm {sig_algo} is unsupported"
        )
