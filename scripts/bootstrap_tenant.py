#!/usr/bin/env python3
"""Seed a tenant with the records needed to log in and call the management API.

Usage:
    # Using environment variables:
    TENANT_ID=acme CALLBACK_URL=http://localhost:3000/callback python scripts/bootstrap_tenant.py

    # Or with command line args:
    python scripts/bootstrap_tenant.py --tenant acme --callback http://localhost:3000/callback \\
        --user-email admin@example.com --user-password 'SecurePassword123!'

Creates (skipping anything that already exists):
    * the tenant
    * the management API resource server ({ISSUER}api/v2/)
    * a machine-to-machine client granted the management API via client_credentials
    * a first-party application client with the given callback
    * optionally a database user with a password

Environment Variables:
    STORAGE_BACKEND, DATABASE_URL, REDIS_URL, ISSUER, JWT_SECRET: see authkernel.config
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
import uuid

MANAGEMENT_SCOPES = [
    "read:users",
    "create:users",
    "update:users",
    "delete:users",
    "read:clients",
    "create:clients",
    "update:clients",
    "delete:clients",
    "read:flows",
    "create:flows",
    "update:flows",
    "delete:flows",
    "read:resource_servers",
    "create:resource_servers",
    "read:roles",
    "create:roles",
    "read:organizations",
    "create:organizations",
]


def bootstrap_tenant(
    tenant_id: str,
    *,
    friendly_name: str,
    callback: str | None,
    user_email: str | None = None,
    user_password: str | None = None,
) -> dict:
    """Create the tenant records and return the generated client credentials."""
    from authkernel.service.runtime import get_runtime
    from authkernel.storage.models import (
        Client,
        ClientGrant,
        Password,
        ResourceServer,
        ResourceServerScope,
        Tenant,
        User,
    )
    from authkernel.storage.postgres import PostgresStore

    runtime = get_runtime()
    store = runtime.store
    if isinstance(store, PostgresStore):
        store.ensure_schema()

    result: dict = {"tenant_id": tenant_id}
    if store.tenants.get(tenant_id, tenant_id) is None:
        store.tenants.create(tenant_id, Tenant(id=tenant_id, friendly_name=friendly_name))
        print(f"Created tenant {tenant_id}")

    audience = f"{runtime.settings.issuer}api/v2/"
    if runtime.tokens.find_resource_server(tenant_id, audience) is None:
        store.resource_servers.create(
            tenant_id,
            ResourceServer(
                id=uuid.uuid4().hex,
                tenant_id=tenant_id,
                identifier=audience,
                name="Management API",
                scopes=[ResourceServerScope(value=s) for s in MANAGEMENT_SCOPES],
                allow_offline_access=False,
            ),
        )
        print(f"Created management API {audience}")

    m2m = Client(
        client_id=secrets.token_urlsafe(24),
        tenant_id=tenant_id,
        name="Management client",
        client_secret=secrets.token_urlsafe(48),
        grant_types=["client_credentials"],
    )
    store.clients.create(tenant_id, m2m)
    store.client_grants.create(
        tenant_id,
        ClientGrant(
            id=f"cgr_{uuid.uuid4().hex[:22]}",
            tenant_id=tenant_id,
            client_id=m2m.client_id,
            audience=audience,
            scope=list(MANAGEMENT_SCOPES),
        ),
    )
    result["management_client_id"] = m2m.client_id
    result["management_client_secret"] = m2m.client_secret

    if callback:
        app_client = Client(
            client_id=secrets.token_urlsafe(24),
            tenant_id=tenant_id,
            name="Application",
            client_secret=secrets.token_urlsafe(48),
            callbacks=[callback],
        )
        store.clients.create(tenant_id, app_client)
        result["client_id"] = app_client.client_id
        result["client_secret"] = app_client.client_secret

    if user_email and user_password:
        email = user_email.strip().lower()
        existing = store.users.list(tenant_id, q=f'email:"{email}"', per_page=1).items
        if existing:
            result["user_id"] = existing[0].user_id
        else:
            user = store.users.create(
                tenant_id,
                User(user_id=f"auth0|{uuid.uuid4().hex}", tenant_id=tenant_id, email=email),
            )
            store.passwords.create(
                tenant_id,
                Password(
                    user_id=user.user_id,
                    tenant_id=tenant_id,
                    password_hash=runtime.password_hasher.hash(user_password),
                ),
            )
            result["user_id"] = user.user_id
            print(f"Created user {email} (id: {user.user_id})")
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant for authkernel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant", default=os.environ.get("TENANT_ID", "default"))
    parser.add_argument("--name", default=os.environ.get("TENANT_NAME"))
    parser.add_argument(
        "--callback",
        default=os.environ.get("CALLBACK_URL"),
        help="Callback URL for the application client (or set CALLBACK_URL)",
    )
    parser.add_argument("--user-email", default=os.environ.get("USER_EMAIL"))
    parser.add_argument("--user-password", default=os.environ.get("USER_PASSWORD"))
    args = parser.parse_args()

    if bool(args.user_email) != bool(args.user_password):
        print("Error: --user-email and --user-password must be given together")
        sys.exit(1)
    if os.environ.get("STORAGE_BACKEND", "memory") == "memory":
        print("Note: using the in-memory store; records vanish when this process exits")

    try:
        result = bootstrap_tenant(
            args.tenant,
            friendly_name=args.name or args.tenant,
            callback=args.callback,
            user_email=args.user_email,
            user_password=args.user_password,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("\nTenant ready:")
    for key, value in result.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
