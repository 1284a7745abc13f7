from __future__ import annotations

import argparse
import asyncio
import sys

from pydantic import EmailStr, TypeAdapter

from cinevault.core.errors import CinevaultError
from cinevault.domain.models import ROLE_SUPERVISOR
from cinevault.persistence.db import SessionLocal
from cinevault.services.identity import RegistrationRequest, find_identity_by_email, register_identity


def _build_parser() -> argparse.ArgumentParser:
    # Supervisors curate the catalog; public sign-up never grants the role.
    parser = argparse.ArgumentParser(description="Create a supervisor identity or promote an existing one")
    parser.add_argument("--email", required=True, type=TypeAdapter(EmailStr).validate_python)
    parser.add_argument("--password", default=None, help="Required when creating a new identity")
    parser.add_argument("--first-name", default="Catalog")
    parser.add_argument("--last-name", default="Supervisor")
    parser.add_argument("--mobile-number", default=None, help="E.164, required when creating")
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        user = await find_identity_by_email(session, args.email)
        if user is not None:
            user.role = ROLE_SUPERVISOR
            await session.commit()
            print(f"promoted_user_id={user.id}")
            return 0
        if not args.password or not args.mobile_number:
            print("error=--password and --mobile-number are required for new identities", file=sys.stderr)
            return 2
        try:
            user = await register_identity(
                session,
                RegistrationRequest(
                    email=args.email,
                    password=args.password,
                    first_name=args.first_name,
                    last_name=args.last_name,
                    mobile_number=args.mobile_number,
                    role=ROLE_SUPERVISOR,
                ),
            )
        except CinevaultError as exc:
            print(f"error={exc.code} message={exc.message}", file=sys.stderr)
            return 1
        print(f"created_user_id={user.id}")
        return 0


def main() -> None:
    args = _build_parser().parse_args()
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
