"""OpenCTI provisioner CLI (octi-provision).

Usage:
    octi-provision provision                     # Provision everything, print report
    octi-provision provision --outputs out.json  # Also write secrets/variables
    octi-provision certificate --tenant-id T --client-id C
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .config import DEFAULT_ISSUER_HOST, DEFAULT_METADATA_TIMEOUT_SECONDS
from .main import EXIT_FAILURE, main, setup_logging
from .metadata import FederationMetadataExtractor, MetadataExtractionError


@click.group()
@click.version_option(version="0.1.0", prog_name="octi-provision")
def cli() -> None:
    """OpenCTI Azure provisioner.

    Provisions the identity and access resources for an OpenCTI deployment
    and extracts the SAML signing certificate. Requires 'az login'.

    \b
    Quick Start:
        az login
        export AZURE_SUBSCRIPTION_ID=... AZURE_LOCATION=westeurope \\
               RESOURCE_GROUP_NAME=rg-opencti-001 OPENCTI_BASE_URL=https://cti.example.com
        octi-provision provision --outputs outputs.json
    """
    pass


@cli.command()
@click.option(
    "--spec",
    "spec_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Provisioning spec (YAML); overrides SPEC_FILE",
)
@click.option(
    "--outputs",
    "outputs_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write deployment secrets and variables (JSON, mode 0600)",
)
def provision(spec_file: Path | None, outputs_file: Path | None) -> None:
    """Provision all resources and configure SAML SSO."""
    sys.exit(asyncio.run(main(spec_file=spec_file, outputs_file=outputs_file)))


@cli.command()
@click.option("--tenant-id", required=True, help="Entra ID tenant ID")
@click.option("--client-id", required=True, help="Application (client) ID of the SAML app")
@click.option("--issuer-host", default=DEFAULT_ISSUER_HOST, show_default=True)
@click.option(
    "--timeout",
    type=click.IntRange(1, 300),
    default=DEFAULT_METADATA_TIMEOUT_SECONDS,
    show_default=True,
    help="Metadata request timeout in seconds",
)
@click.option("--pem", "as_pem", is_flag=True, help="Print PEM instead of single-line base64")
def certificate(
    tenant_id: str, client_id: str, issuer_host: str, timeout: int, as_pem: bool
) -> None:
    """Extract the SAML signing certificate from federation metadata."""
    setup_logging(json_output=False)
    extractor = FederationMetadataExtractor(issuer_host=issuer_host, timeout=timeout)

    try:
        payload = asyncio.run(extractor.extract_certificate(tenant_id, client_id))
    except MetadataExtractionError as e:
        click.secho(
            f"✗ Certificate extraction failed ({e.kind.value}): {e.detail}", fg="red", err=True
        )
        click.echo(e.remediation, err=True)
        sys.exit(EXIT_FAILURE)

    click.echo(payload.pem if as_pem else payload.base64_single, nl=not as_pem)


if __name__ == "__main__":
    cli()
