#!/usr/bin/env python3
"""
CertChain Management CLI

Commands for operating the certificate system:
- generate-keypair: Generate an Ed25519 issuing keypair
- issue-token: Mint a signed actor token for the HTTP API
- init-schema: Create the governance tables in PostgreSQL
- list-blocked: Show currently blocked verification clients
- unblock: Remove a durable client block (counters live in the server process)
- verify-cert: Check a certificate's hash and signature
- health-check: Check ledger and store connectivity

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage generate-keypair
    python -m tools.manage issue-token --address 0xabc --role admin
    python -m tools.manage verify-cert --file certificate.json --public-key <b64>
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_generate_keypair(args):
    """Generate an Ed25519 keypair for signing certificates."""
    from certchain.core import Signer

    private_key, public_key = Signer.generate_keypair()
    print("\n  Public key (publish for verifiers):")
    print(f"  {public_key}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set these environment variables:")
    print(f"  CERTCHAIN_SIGNING_PRIVATE_KEY={private_key}")
    print(f"  CERTCHAIN_SIGNING_PUBLIC_KEY={public_key}")


def cmd_issue_token(args):
    """Mint an actor token (bootstrap / testing; login normally does this)."""
    from certchain.api.auth import create_actor_token
    from certchain.schemas import Actor, ActorRole

    actor = Actor(address=args.address, name=args.name or "", role=ActorRole(args.role))
    print(create_actor_token(actor))


def cmd_init_schema(args):
    """Create governance tables."""
    from certchain.db import DatabaseConfig, PostgresGovernanceStore, get_database_url

    if get_database_url() is None:
        print("Error: No database configured. Set DATABASE_URL or DATABASE_HOST.")
        return 1

    async def run():
        store = await PostgresGovernanceStore.connect(DatabaseConfig.from_env())
        try:
            await store.init_schema()
        finally:
            await store.close()

    asyncio.run(run())
    print("[OK] Governance schema ready")


def cmd_list_blocked(args):
    """List active verification blocks."""
    from certchain.core import AbuseRateLimiter
    from certchain.db import create_store

    async def run():
        store = await create_store()
        try:
            return await AbuseRateLimiter(store).list_blocked()
        finally:
            await store.close()

    blocks = asyncio.run(run())
    if not blocks:
        print("No active blocks.")
        return
    for block in blocks:
        print(f"{block.ip:<40} until {block.blocked_until.isoformat()}  by {block.blocked_by}")
        print(f"  {block.reason}")


COUNTER_NOTE = (
    "Attempt counters held by a running server are not cleared; "
    "use DELETE /api/verification/blocked/{ip} for a clean slate."
)


def cmd_unblock(args):
    """
    Remove a durable block.

    Attempt counters live inside the running server, so they are not reset
    here; DELETE /api/verification/blocked/{ip} clears both.
    """
    from certchain.core import AbuseRateLimiter
    from certchain.db import create_store

    async def run():
        store = await create_store()
        try:
            return await AbuseRateLimiter(store).unblock(args.ip)
        finally:
            await store.close()

    if asyncio.run(run()):
        print(f"[OK] Unblocked {args.ip}")
        print(COUNTER_NOTE)
    else:
        print(f"No block found for {args.ip}")


def cmd_verify_cert(args):
    """
    Verify a certificate.

    With --file, works offline from an exported record.
    Otherwise fetches the record by hash from the configured ledger.
    """
    from certchain.core import CertificateVersionChain, Hasher, Signer, create_ledger_client
    from certchain.schemas import CertificateRecord

    if args.file:
        with open(args.file) as f:
            record = CertificateRecord.model_validate(json.load(f))
    elif args.hash:
        async def fetch():
            ledger = create_ledger_client()
            try:
                return await ledger.get_record(args.hash)
            finally:
                await ledger.close()
        record = asyncio.run(fetch())
    else:
        print("Error: provide --hash or --file")
        return 2

    recomputed = CertificateVersionChain.recompute_hash(record)
    hash_ok = Hasher.hashes_equal(recomputed, record.cert_hash)

    print(f"Certificate: {record.cert_hash}")
    print(f"  Student: {record.student_name} ({record.student_id}), version {record.version}")
    print(f"  Status: {'REVOKED' if record.is_revoked else 'ACTIVE'}")
    print(f"  Hash: {'[OK] matches content' if hash_ok else '[FAIL] content was altered'}")

    public_key = args.public_key or os.environ.get("CERTCHAIN_SIGNING_PUBLIC_KEY", "")
    sig_ok = True
    if public_key:
        sig_ok = Signer.verify_certificate(record.cert_hash, record.signature, public_key)
        print(f"  Signature: {'[OK] valid' if sig_ok else '[FAIL] invalid'}")
    else:
        print("  Signature: [SKIP] no public key given")

    return 0 if hash_ok and sig_ok else 1


def cmd_health_check(args):
    """Check ledger and store connectivity."""
    from certchain.core import create_ledger_client
    from certchain.db import create_store
    from certchain.observability import check_health

    async def run():
        ledger = create_ledger_client()
        store = await create_store()
        try:
            return await check_health(ledger=ledger, store=store)
        finally:
            await ledger.close()
            await store.close()

    print("=== CertChain Health Check ===\n")
    status = asyncio.run(run())
    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {name}: {marker} {details}")

    print("\nEnvironment:")
    secret = os.environ.get("CERTCHAIN_TOKEN_SECRET", "")
    print(f"  Token secret: {'[OK] Set' if len(secret) >= 16 else '[WARN] Using default (development)'}")
    key = os.environ.get("CERTCHAIN_SIGNING_PRIVATE_KEY", "")
    print(f"  Signing key: {'[OK] Set' if key else '[WARN] Using ephemeral (development)'}")

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="CertChain Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("generate-keypair", help="Generate an Ed25519 issuing keypair")

    p_token = subparsers.add_parser("issue-token", help="Mint an actor token")
    p_token.add_argument("--address", required=True, help="Actor address")
    p_token.add_argument("--name", help="Display name")
    p_token.add_argument("--role", choices=["admin", "staff"], default="staff")

    subparsers.add_parser("init-schema", help="Create governance tables in PostgreSQL")

    subparsers.add_parser("list-blocked", help="List active verification blocks")

    p_unblock = subparsers.add_parser(
        "unblock",
        help="Remove a durable verification block",
        description="Remove a durable verification block. " + COUNTER_NOTE,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_unblock.add_argument("ip", help="Client IP address")

    p_verify = subparsers.add_parser("verify-cert", help="Verify a certificate's hash and signature")
    p_verify.add_argument("--hash", help="Certificate hash to fetch from the ledger")
    p_verify.add_argument("--file", help="Exported certificate JSON (offline)")
    p_verify.add_argument("--public-key", help="Issuer public key (default: CERTCHAIN_SIGNING_PUBLIC_KEY)")

    subparsers.add_parser("health-check", help="Check ledger and store connectivity")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "generate-keypair": cmd_generate_keypair,
        "issue-token": cmd_issue_token,
        "init-schema": cmd_init_schema,
        "list-blocked": cmd_list_blocked,
        "unblock": cmd_unblock,
        "verify-cert": cmd_verify_cert,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
