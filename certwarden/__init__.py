from .config import CertwardenConfig
from .issuer import CertificateIssuer, IssuedCertificate, IssuerIdentity
from .policy import (
    PolicyFinding,
    enforce_client_certificate_constraints,
    evaluate_client_certificate,
)
from .registry import CertificateId, FingerprintRegistry
from .store import (
    Attribute,
    AttributeStore,
    FileAttributeStore,
    InMemoryAttributeStore,
    ManagementApiAttributeStore,
)
from .workflow import (
    Principal,
    RegistrationRequest,
    RegistrationResult,
    RegistrationWorkflow,
)

__all__ = [
    'CertwardenConfig',
    'CertificateIssuer',
    'IssuedCertificate',
    'IssuerIdentity',
    'PolicyFinding',
    'evaluate_client_certificate',
    'enforce_client_certificate_constraints',
    'CertificateId',
    'FingerprintRegistry',
    'Attribute',
    'AttributeStore',
    'InMemoryAttributeStore',
    'FileAttributeStore',
    'ManagementApiAttributeStore',
    'Principal',
    'RegistrationRequest',
    'RegistrationResult',
    'RegistrationWorkflow',
]
