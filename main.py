#!/usr/bin/env python3
"""
TokenWarden operator CLI -- local administration without going through HTTP.

Usage:
  python main.py create-admin --email admin@example.com
  python main.py create-admin --email admin@example.com --password 'Str0ng!Passw0rd'
  python main.py unlock --email user@example.com
  python main.py unlock --user-id 6c1f0e2a-...
  python main.py rotate-key
  python main.py purge-keys

The CLI reads the same settings as the API (environment variables and .env):
DATABASE_URL, SECRET_KEY, JWT_ALGORITHM, REDIS_URL, ...

Commands run as the local operator: no access token is needed, and every
change is still written to the audit trail.
"""

import argparse
import logging
import sys

from auth.errors import AuthError
from auth.service import AuthService
from auth.store import normalize_email
from core.config import get_settings

logger = logging.getLogger("tokenwarden.cli")


def _create_admin(service: AuthService, args: argparse.Namespace) -> int:
    user, password = service.create_admin(args.email, args.password)
    print(f"  Created administrator {user.email} (id {user.id}).")
    if not args.password:
        # Shown once; it is never stored in plain text.
        print(f"  Temporary password: {password}")
        print("  Change it after the first login.")
    return 0


def _unlock(service: AuthService, args: argparse.Namespace) -> int:
    user_id = args.user_id
    if args.email:
        user = service.store.find_by_email(normalize_email(args.email))
        if user is None:
            print(f"  [!] No account for '{args.email}'.")
            return 1
        user_id = user.id
    service.unlock(None, user_id)
    print(f"  Unlocked account {user_id}; failed-attempt counter reset.")
    return 0


def _rotate_key(service: AuthService, args: argparse.Namespace) -> int:
    new_key = service.rotate_keys(None)
    print(f"  Active signing key is now {new_key.kid} ({new_key.algorithm}).")
    print(f"  The previous key keeps verifying for {service.settings.key_grace_seconds}s.")
    return 0


def _purge_keys(service: AuthService, args: argparse.Namespace) -> int:
    purged = service.purge_expired()
    print(f"  Purged {len(purged['keys'])} expired signing key(s).")
    for kid in purged["keys"]:
        print(f"    {kid}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tokenwarden",
        description="Operator commands for the TokenWarden authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@example.com
  python main.py unlock --email user@example.com
  python main.py rotate-key
  SECRET_KEY=... DATABASE_URL=sqlite:////var/lib/tokenwarden.db python main.py purge-keys
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = commands.add_parser("create-admin", help="Create an administrator account")
    create.add_argument("--email", required=True, help="Email address of the new administrator")
    create.add_argument(
        "--password",
        default=None,
        help="Initial password. When omitted a temporary password is generated and printed once.",
    )
    create.set_defaults(handler=_create_admin)

    unlock = commands.add_parser("unlock", help="Clear the lockout and failed-attempt counter of an account")
    target = unlock.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", help="Account id")
    target.add_argument("--email", help="Account email address")
    unlock.set_defaults(handler=_unlock)

    rotate = commands.add_parser("rotate-key", help="Retire the active signing key and activate a new one")
    rotate.set_defaults(handler=_rotate_key)

    purge = commands.add_parser("purge-keys", help="Delete signing keys whose grace window has passed")
    purge.set_defaults(handler=_purge_keys)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        service = AuthService.from_settings(get_settings())
    except (ValueError, AuthError) as e:
        print(f"  [!] Could not start: {e}")
        return 2

    try:
        return args.handler(service, args)
    except AuthError as e:
        detail = f" ({e.detail})" if e.detail else ""
        print(f"  [!] {e.public_message}{detail}")
        logger.debug("Command %s failed: %s", args.command, e)
        return 1
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
