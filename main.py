#!/usr/bin/env python3
"""
SimpleAuth -- operations CLI.

Scheduled maintenance and bootstrap tasks that run outside the API process.
Every command builds the same services the API uses (auth/container.py) from
the same environment, so DATABASE_URL, SECRET_KEY and the feature flags must
match the API's.

Usage:
  python main.py prune-audit
  python main.py prune-audit --days 30
  python main.py purge-sessions
  python main.py purge-tokens
  python main.py init-roles
  python main.py create-admin admin@example.com

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: sqlite:///simpleauth.db)
  SECRET_KEY    Required outside DEBUG mode; must match the API's key.
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.container import AuthServices, build_services
from auth.errors import AuthError, ErrorCode
from auth.service import validate_email, validate_password
from auth.store import utcnow
from auth.tokens import hash_password
from core.config import get_settings


def _prune_audit(services: AuthServices, args: argparse.Namespace) -> int:
    if not services.audit.enabled:
        print("  [!] Audit logging is not enabled (AUDIT__ENABLED=false).")
        return 1
    deleted = services.audit.prune(args.days)
    print(f"  Deleted {deleted} audit entr{'y' if deleted == 1 else 'ies'}.")
    return 0


def _purge_sessions(services: AuthServices, args: argparse.Namespace) -> int:
    print(f"  Deleted {services.sessions.purge_expired()} expired session(s).")
    return 0


def _purge_tokens(services: AuthServices, args: argparse.Namespace) -> int:
    print(f"  Deleted {services.ledger.purge_expired()} expired single-use token(s).")
    return 0


def _init_roles(services: AuthServices, args: argparse.Namespace) -> int:
    if not services.rbac.enabled:
        print("  [!] RBAC is not enabled (RBAC__ENABLED=false).")
        return 1
    created = services.rbac.initialize_default_roles()
    if created:
        print(f"  Created role(s): {', '.join(r.name for r in created)}")
    else:
        print("  Default roles already present.")
    return 0


def _create_admin(services: AuthServices, args: argparse.Namespace) -> int:
    """Create a verified user holding the super-admin role -- the first-run bootstrap.

    User, verification and role assignment commit together: a failed
    assignment leaves no account behind, so the command can simply be re-run.
    """
    if not services.rbac.enabled:
        print("  [!] RBAC is not enabled (RBAC__ENABLED=false).")
        return 1
    settings = services.settings
    role = settings.rbac.super_admin_role
    password = args.password or getpass.getpass("Password: ")
    try:
        email = validate_email(args.email)
        validate_password(password, settings.security.min_password_length)
        hashed = hash_password(password, settings.security.bcrypt_work_factor)
        now = utcnow()
        with services.store.transaction() as conn:
            if services.store.get_user_by_email(email, conn=conn) is not None:
                raise AuthError(ErrorCode.DUPLICATE_USER, "An account with this email already exists.")
            # Bootstrap accounts are trusted; do not leave them locked behind verification.
            user = services.store.create_user(
                email, hashed, name=args.name, verified_at=now, verification_method="manual", now=now, conn=conn
            )
            services.rbac.assign_default_role(user.id, conn=conn)
            assigned = services.rbac.assign_role(user.id, role, conn=conn)
            if not assigned.success:
                raise AuthError(assigned.error, f"Role '{role}' not assigned: {assigned.message}")
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    except IntegrityError:
        print("  [!] An account with this email already exists.")
        return 1

    services.audit.record("register.success", user_id=user.id, details={"method": "cli"})
    print(f"  Created user {user.id} ({user.email}) with role '{role}'.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="simpleauth",
        description="SimpleAuth maintenance and bootstrap commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py prune-audit --days 30
  python main.py purge-sessions
  DATABASE_URL=postgresql://... python main.py purge-tokens
  python main.py create-admin admin@example.com
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log service activity to stderr",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    prune = sub.add_parser("prune-audit", help="Delete audit entries older than the retention window")
    prune.add_argument(
        "--days",
        type=int,
        default=None,
        metavar="N",
        help="Retention in days (default: AUDIT__RETENTION_DAYS)",
    )
    prune.set_defaults(handler=_prune_audit)

    sub.add_parser("purge-sessions", help="Delete expired sessions").set_defaults(handler=_purge_sessions)
    sub.add_parser("purge-tokens", help="Delete expired single-use tokens").set_defaults(handler=_purge_tokens)
    sub.add_parser("init-roles", help="Create the default and super-admin roles").set_defaults(handler=_init_roles)

    admin = sub.add_parser("create-admin", help="Create a verified user holding the super-admin role")
    admin.add_argument("email", help="Email address of the new administrator")
    admin.add_argument("--name", default=None, help="Display name")
    admin.add_argument(
        "--password",
        default=None,
        help="Password (prompted when omitted; avoid passing it on the command line)",
    )
    admin.set_defaults(handler=_create_admin)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "prune-audit" and args.days is not None and args.days <= 0:
        parser.error("--days must be a positive integer")

    services = build_services(get_settings())
    try:
        return args.handler(services, args)
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
