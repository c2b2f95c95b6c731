"""
Exception hierarchy for certwarden.

Every error knows whether it is the caller's fault (bad input, policy
rejection, registry limits) or a server-side problem (signing, attribute
store). Front ends translate :attr:`CertwardenError.http_status` directly.
"""

__all__ = [
    'CertwardenError',
    'DecodeError',
    'KeyParseError',
    'PolicyViolation',
    'CapacityExceeded',
    'DuplicateFingerprint',
    'SigningError',
    'StoreError',
]


class CertwardenError(Exception):
    """Base class for all errors raised by certwarden operations."""

    http_status = 500
    client_fault = False


class _ClientFault(CertwardenError):
    http_status = 400
    client_fault = True


class DecodeError(_ClientFault):
    """Malformed or unsupported input (PEM content, request payload)."""
    pass


class KeyParseError(DecodeError):
    """PEM text did not contain a usable key or certificate."""
    pass


class PolicyViolation(_ClientFault):
    """
    A certificate (or public key) failed one of the acceptance rules.

    :param finding:
        The :class:`~certwarden.policy.PolicyFinding` describing the first
        rule that failed.
    """

    def __init__(self, finding):
        self.finding = finding
        super().__init__(finding.message)

    @property
    def rule(self) -> str:
        return self.finding.rule


class CapacityExceeded(_ClientFault):
    def __init__(self, maximum: int):
        self.maximum = maximum
        super().__init__(
            f"Maximum number of certificates ({maximum}) already registered."
        )


class DuplicateFingerprint(_ClientFault):
    def __init__(self, fingerprint: str, attribute_name: str):
        self.fingerprint = fingerprint
        self.attribute_name = attribute_name
        super().__init__(
            f"Certificate with fingerprint '{fingerprint}' already exists "
            f"(attribute name: {attribute_name})."
        )


class SigningError(CertwardenError):
    """Issuing or self-verifying a certificate failed."""
    pass


class StoreError(CertwardenError):
    """The attribute store could not be reached or returned garbage."""
    pass
