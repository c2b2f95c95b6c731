import json
import logging
from contextlib import contextmanager

import click
from dateutil.parser import parse as parse_dt

from .config import CertwardenConfig
from .config_utils import ConfigurationError
from .crypto_utils import decode_certificate, decode_public_key, \
    fingerprint_base64
from .errors import CertwardenError
from .policy import evaluate_client_certificate
from .registry import CertificateId
from .version import __version__
from .workflow import Principal, RegistrationRequest

DEFAULT_CONFIG_FILE = 'certwarden.yml'
logger = logging.getLogger(__name__)


def _log_config():
    _logger = logging.getLogger('certwarden')
    _logger.setLevel(logging.INFO)
    handler = logging.StreamHandler()
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    handler.setFormatter(formatter)
    _logger.addHandler(handler)


@contextmanager
def exception_manager():
    msg = exc = None
    try:
        yield
    except click.ClickException:
        raise
    except ConfigurationError as e:
        msg = f"Configuration problem: {str(e)}"
        exc = e
    except CertwardenError as e:
        if e.client_fault:
            msg = f"Rejected: {str(e)}"
        else:
            msg = f"Service problem: {str(e)}"
        exc = e

    if exc is not None:
        logger.error(msg, exc_info=exc)
        raise click.ClickException(msg)


def _lazy_cfg(config):
    config = config or DEFAULT_CONFIG_FILE
    try:
        cfg = CertwardenConfig.from_file(config)
    except IOError as e:
        raise click.ClickException(
            f"I/O Error processing config from {config}: {e}",
        ) from e

    while True:
        yield cfg


def _read_file(path) -> bytes:
    with open(path, 'rb') as inf:
        return inf.read()


def _echo_json(obj):
    click.echo(json.dumps(obj, indent=2))


@click.group()
@click.version_option(prog_name='certwarden', version=__version__)
@click.option('--config',
              help=('YAML file to load configuration from '
                    f'[default: {DEFAULT_CONFIG_FILE}]'),
              required=False, type=click.Path(readable=True, dir_okay=False))
@click.pass_context
@exception_manager()
def cli_root(ctx, config):
    _log_config()
    ctx.ensure_object(dict)
    ctx.obj['config'] = _lazy_cfg(config)


@cli_root.command(help='print the base64 SHA-256 fingerprint of a certificate')
@click.argument('cert_file', type=click.Path(exists=True, dir_okay=False),
                metavar='CERT_FILE')
@exception_manager()
def fingerprint(cert_file):
    cert = decode_certificate(_read_file(cert_file))
    click.echo(fingerprint_base64(cert))


@cli_root.command(help='check a client certificate against the upload policy')
@click.argument('cert_file', type=click.Path(exists=True, dir_okay=False),
                metavar='CERT_FILE')
@click.option('--at-time', type=str, required=False,
              help='ISO 8601 time at which to evaluate the certificate '
                   '[default: now]')
@exception_manager()
def check(cert_file, at_time):
    cert = decode_certificate(_read_file(cert_file))
    if at_time is not None:
        try:
            at_time = parse_dt(at_time)
        except (ValueError, OverflowError) as e:
            raise click.ClickException(
                f"Could not parse time '{at_time}'"
            ) from e
    findings = evaluate_client_certificate(cert, at_time=at_time)
    for finding in findings:
        click.echo(f"{finding.rule}: {finding.message}")
    if findings:
        raise click.ClickException(
            f"Certificate violates {len(findings)} "
            f"{'rule' if len(findings) == 1 else 'rules'}"
        )
    click.echo("Certificate is acceptable")


@cli_root.command(help='issue a client certificate for a public key')
@click.pass_context
@click.argument('public_key_file',
                type=click.Path(exists=True, dir_okay=False),
                metavar='PUBLIC_KEY_FILE')
@click.argument('output', type=click.Path(writable=True), required=False)
@click.option('--name', type=str, required=True, help='subject common name')
@click.option('--email', type=str, required=True, help='subject email')
@click.option('--organization', type=str, required=True,
              help='subject organization')
@click.option('--key-id', type=str, required=True,
              help='key identifier, recorded as the subject serial number')
@exception_manager()
def issue(ctx, public_key_file, output, name, email, organization, key_id):
    cfg: CertwardenConfig = next(ctx.obj['config'])
    workflow = cfg.build_workflow()
    public_key = decode_public_key(_read_file(public_key_file))
    principal = Principal(email=email, display_name=name)
    issued = workflow.issuer.issue(
        public_key,
        workflow.subject_dn(principal, organization, key_id),
        email, organization
    )
    data = issued.pem + '\n'
    if output is None:
        click.echo(data, nl=False)
    else:
        with open(output, 'w') as outf:
            outf.write(data)


@cli_root.command(help='register a certificate for a principal')
@click.pass_context
@click.option('--email', type=str, required=True, help='principal email')
@click.option('--name', type=str, required=True,
              help='principal display name')
@click.option('--public-key', 'public_key_file', required=False,
              type=click.Path(exists=True, dir_okay=False),
              help='public key to issue a certificate for')
@click.option('--key-id', type=str, required=False,
              help='key identifier (with --public-key)')
@click.option('--certificate', 'certificate_file', required=False,
              type=click.Path(exists=True, dir_okay=False),
              help='certificate to upload')
@exception_manager()
def register(ctx, email, name, public_key_file, key_id, certificate_file):
    cfg: CertwardenConfig = next(ctx.obj['config'])

    def _maybe_read(path):
        return None if path is None else _read_file(path).decode('ascii')

    try:
        request = RegistrationRequest(
            public_key=_maybe_read(public_key_file), key_id=key_id,
            certificate=_maybe_read(certificate_file),
        )
    except UnicodeDecodeError as e:
        raise click.ClickException("Input files must be PEM-encoded") from e
    result = cfg.build_workflow().register(
        Principal(email=email, display_name=name), request
    )
    _echo_json(result.as_json())


@cli_root.command(help='remove a registered certificate')
@click.pass_context
@click.argument('cert_id', type=str, metavar='CERT_ID')
@click.option('--email', type=str, required=True, help='principal email')
@exception_manager()
def deregister(ctx, cert_id, email):
    cfg: CertwardenConfig = next(ctx.obj['config'])
    # display name plays no role in deregistration
    principal = Principal(email=email, display_name=email)
    remaining = cfg.build_workflow().deregister(
        principal, CertificateId(cert_id)
    )
    _echo_json({'attribute': [attr.to_json() for attr in remaining]})


@cli_root.command(name='list', help='list registered certificates')
@click.pass_context
@click.option('--email', type=str, required=True, help='principal email')
@exception_manager()
def list_certs(ctx, email):
    cfg: CertwardenConfig = next(ctx.obj['config'])
    principal = Principal(email=email, display_name=email)
    certs = cfg.build_workflow().list_certificates(principal)
    _echo_json([cert.as_json() for cert in certs])
