import logging
import os
from dataclasses import dataclass
from typing import Optional

import yaml

from .config_utils import (
    ConfigurableMixin,
    ConfigurationError,
    SearchDir,
    check_config_keys,
)
from .issuer import (
    DEFAULT_CERTIFICATE_PATTERN,
    DEFAULT_PRIVATE_KEY_PATTERN,
    CertificateIssuer,
    IssuerIdentity,
)
from .registry import DEFAULT_MAX_CERTIFICATES, FingerprintRegistry
from .store import (
    AttributeStore,
    FileAttributeStore,
    InMemoryAttributeStore,
    ManagementApiAttributeStore,
)
from .workflow import (
    DEFAULT_ORGANIZATION,
    DEFAULT_ORGANIZATION_ATTRIBUTE,
    RegistrationWorkflow,
)

__all__ = [
    'IssuerSettings', 'RegistrySettings', 'AttributeStoreSettings',
    'CertwardenConfig',
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuerSettings(ConfigurableMixin):
    """Location of the issuer's certificate and private key."""

    key_dir: str = '.'
    """
    Directory holding the issuer key material, relative to the configuration
    file's directory.
    """

    certificate_pattern: str = DEFAULT_CERTIFICATE_PATTERN
    private_key_pattern: str = DEFAULT_PRIVATE_KEY_PATTERN

    password: Optional[str] = None
    """Password for the issuer private key, if it is encrypted."""


@dataclass(frozen=True)
class RegistrySettings(ConfigurableMixin):
    max_certificates: int = DEFAULT_MAX_CERTIFICATES
    organization_attribute: str = DEFAULT_ORGANIZATION_ATTRIBUTE
    default_organization: str = DEFAULT_ORGANIZATION

    @classmethod
    def process_entries(cls, config_dict):
        super().process_entries(config_dict)
        try:
            max_certs = config_dict['max_certificates']
        except KeyError:
            return
        if isinstance(max_certs, bool) or not isinstance(max_certs, int) \
                or max_certs < 1:
            raise ConfigurationError(
                f"max-certificates must be a positive integer, not "
                f"{max_certs!r}."
            )


@dataclass(frozen=True)
class AttributeStoreSettings(ConfigurableMixin):
    """Where principals' attribute lists are kept."""

    BACKENDS = ('management-api', 'file', 'memory')

    backend: str = 'memory'
    base_url: Optional[str] = None
    token: Optional[str] = None
    timeout: float = 30
    path: Optional[str] = None

    @classmethod
    def process_entries(cls, config_dict):
        super().process_entries(config_dict)
        backend = config_dict.get('backend', 'memory')
        if backend not in cls.BACKENDS:
            raise ConfigurationError(
                f"Unknown attribute store backend '{backend}'; expected one "
                f"of {', '.join(cls.BACKENDS)}."
            )
        if backend == 'management-api' and not config_dict.get('base_url'):
            raise ConfigurationError(
                "The management-api backend requires a base-url."
            )
        if backend == 'file' and not config_dict.get('path'):
            raise ConfigurationError("The file backend requires a path.")
        timeout = config_dict.get('timeout', 30)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) \
                or timeout <= 0:
            raise ConfigurationError(
                f"timeout must be a positive number, not {timeout!r}."
            )

    def build_store(self, base_dir: str) -> AttributeStore:
        if self.backend == 'management-api':
            return ManagementApiAttributeStore(
                self.base_url, token=self.token, timeout=self.timeout
            )
        elif self.backend == 'file':
            return FileAttributeStore(os.path.join(base_dir, self.path))
        else:
            return InMemoryAttributeStore()


class CertwardenConfig:
    """
    Interpret a certwarden configuration and build the objects it describes.

    The issuer identity is loaded as soon as the configuration is read, so
    a broken key setup is reported at start-up.

    :param config:
        Configuration dictionary.
    :param config_dir:
        Directory against which relative paths are resolved.
    """

    SECTIONS = ('issuer', 'registry', 'attribute-store')

    @classmethod
    def from_yaml(cls, yaml_str, config_dir='.') -> 'CertwardenConfig':
        try:
            config_dict = yaml.safe_load(yaml_str)
        except yaml.YAMLError as e:
            raise ConfigurationError("Failed to parse configuration") from e
        return CertwardenConfig(config_dict, config_dir=config_dir)

    @classmethod
    def from_file(cls, cfg_path) -> 'CertwardenConfig':
        config_dir = os.path.dirname(os.path.abspath(cfg_path))
        with open(cfg_path, 'r') as inf:
            try:
                config_dict = yaml.safe_load(inf)
            except yaml.YAMLError as e:
                raise ConfigurationError(
                    f"Failed to parse configuration file {cfg_path}"
                ) from e
        return CertwardenConfig(config_dict, config_dir=config_dir)

    def __init__(self, config, config_dir: str = '.'):
        check_config_keys('certwarden', self.SECTIONS, config)
        self.config_dir = os.path.abspath(config_dir)

        try:
            issuer_cfg = config['issuer']
        except KeyError as e:
            raise ConfigurationError(
                "'issuer' must be present in configuration"
            ) from e
        self.issuer_settings = IssuerSettings.from_config(issuer_cfg)
        self.registry_settings = RegistrySettings.from_config(
            config.get('registry')
        )
        self.store_settings = AttributeStoreSettings.from_config(
            config.get('attribute-store')
        )

        settings = self.issuer_settings
        self.identity = IssuerIdentity.load(
            SearchDir(os.path.join(self.config_dir, settings.key_dir)),
            certificate_pattern=settings.certificate_pattern,
            private_key_pattern=settings.private_key_pattern,
            password=settings.password,
        )
        self.store = self.store_settings.build_store(self.config_dir)
        logger.debug(
            f"Using attribute store backend {self.store_settings.backend}"
        )

    def build_issuer(self) -> CertificateIssuer:
        return CertificateIssuer(self.identity)

    def build_registry(self) -> FingerprintRegistry:
        return FingerprintRegistry(
            self.store,
            max_certificates=self.registry_settings.max_certificates
        )

    def build_workflow(self) -> RegistrationWorkflow:
        settings = self.registry_settings
        return RegistrationWorkflow(
            self.build_issuer(), self.build_registry(),
            organization_attribute=settings.organization_attribute,
            default_organization=settings.default_organization,
        )
