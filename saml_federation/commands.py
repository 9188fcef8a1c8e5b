import json
import time

import click
from flask import current_app
from flask.cli import AppGroup

from .config import IdpConfig, format_cert, normalize_fingerprint
from .errors import ConfigurationError, TenantError

saml2_cli = AppGroup("saml2", help="Manage SAML2 tenants.")


def _repository():
    return current_app.extensions["saml2"].repository


def _row(tenant):
    return {
        "key": tenant.key,
        "uuid": tenant.uuid,
        "entity_id": tenant.idp.entity_id,
        "sso_url": tenant.idp.sso_url,
        "slo_url": tenant.idp.slo_url,
        "created_at": time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(tenant.created_at)),
        "deleted_at": (time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(tenant.deleted_at))
                       if tenant.deleted else None),
    }


@saml2_cli.command("create-tenant")
@click.option("--key", required=True, help="Tenant key used in SAML URLs.")
@click.option("--entity-id", required=True, help="IdP entity ID.")
@click.option("--login-url", required=True, help="IdP single sign-on URL.")
@click.option("--logout-url", default=None, help="IdP single logout URL.")
@click.option("--x509cert", default=None, help="IdP signing certificate (PEM or base64 body).")
@click.option("--fingerprint", default=None, help="IdP certificate fingerprint.")
@click.option("--metadata-url", default=None, help="IdP metadata URL for certificate refresh.")
@click.option("--alias", "aliases", multiple=True, help="Extra hint (e.g. host) for this tenant.")
@click.option("--name-id-format", default=None)
@click.option("--relay-state-url", default=None)
def create_tenant(key, entity_id, login_url, logout_url, x509cert, fingerprint, metadata_url,
                  aliases, name_id_format, relay_state_url):
    """Create a tenant."""
    if not (x509cert or fingerprint or metadata_url):
        raise click.UsageError("One of --x509cert, --fingerprint or --metadata-url is required")
    idp = IdpConfig(
        key=key,
        entity_id=entity_id,
        sso_url=login_url,
        slo_url=logout_url,
        certificate=format_cert(x509cert),
        cert_fingerprint=normalize_fingerprint(fingerprint),
        metadata_url=metadata_url,
        aliases=tuple(aliases),
        name_id_format=name_id_format,
        relay_state_url=relay_state_url,
    )
    try:
        tenant = _repository().create(idp)
    except TenantError as e:
        raise click.ClickException(str(e))
    click.echo(f"The tenant #{tenant.key} ({tenant.uuid}) was successfully created.")


@saml2_cli.command("delete-tenant")
@click.argument("key")
@click.option("--force", is_flag=True, help="Remove the tenant instead of soft-deleting it.")
def delete_tenant(key, force):
    """Delete a tenant (soft delete unless --force)."""
    try:
        _repository().delete(key, force=force)
    except TenantError as e:
        raise click.ClickException(str(e))
    click.echo(f"The tenant #{key} was {'removed' if force else 'deleted'}.")


@saml2_cli.command("restore-tenant")
@click.argument("key")
def restore_tenant(key):
    """Restore a soft-deleted tenant."""
    try:
        _repository().restore(key)
    except TenantError as e:
        raise click.ClickException(str(e))
    click.echo(f"The tenant #{key} was restored.")


@saml2_cli.command("list-tenants")
@click.option("--with-deleted", is_flag=True)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
def list_tenants(with_deleted, as_json):
    """List tenants."""
    rows = [_row(t) for t in _repository().all(with_deleted=with_deleted)]
    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        click.echo("No tenants found.")
        return
    for row in rows:
        status = f" (deleted {row['deleted_at']})" if row["deleted_at"] else ""
        click.echo(f"{row['key']}\t{row['entity_id']}\t{row['sso_url']}{status}")


@saml2_cli.command("refresh-metadata")
@click.argument("key", required=False)
@click.pass_context
def refresh_metadata(ctx, key):
    """Fetch IdP metadata for tenants that publish a metadata URL."""
    ext = current_app.extensions["saml2"]
    tenants = [t for t in ext.repository.all() if t.idp.metadata_url and (key is None or t.key == key)]
    if not tenants:
        click.echo("No tenants with a metadata URL.")
        return
    failed = False
    for tenant in tenants:
        try:
            descriptor = ext.metadata_cache.refresh(tenant.idp.metadata_url)
        except ConfigurationError as e:
            failed = True
            click.echo(f"{tenant.key}: {e}", err=True)
            continue
        click.echo(f"{tenant.key}: {len(descriptor.certificates)} signing certificate(s)")
    if failed:
        ctx.exit(1)
