#!/usr/bin/env python3
"""
Keygate management commands.

Usage:
  keygate-manage init-db
  keygate-manage create-admin --username alice --password s3cret
  keygate-manage hash-password s3cret      # value for ADMIN_PASSWORD_HASH
  keygate-manage serve --host 0.0.0.0 --port 8000

Configuration comes from the same environment variables as the server
(DATABASE_URL, SECRET_KEY, ...).
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from .auth import hash_password
from .config import Settings
from .model import Storage, create_schema, open_database


async def init_db(settings: Settings) -> None:
    db = open_database(settings)
    try:
        await create_schema(db)
    finally:
        await db.dispose()
    print("✅ tables existing / created")


async def create_admin(settings: Settings, username: str, password: str,
                       email: Optional[str]) -> bool:
    db = open_database(settings)
    try:
        await create_schema(db)
        async with db.sessionmaker() as session:
            storage = Storage(session=session, gated=db.gated)
            async with storage.transaction():
                if await storage.admins.get_by_username(username):
                    print(f"admin {username!r} already exists",
                          file=sys.stderr)
                    return False
                await storage.admins.create(
                    username=username,
                    password_hash=hash_password(password),
                    email=email,
                )
    finally:
        await db.dispose()
    print(f"✅ admin {username!r} created")
    return True


def serve(settings: Settings, host: str, port: int) -> None:
    import uvicorn
    from .server import create_app

    uvicorn.run(create_app(settings), host=host, port=port)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="keygate-manage",
                                 description="Keygate management")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db", help="create database tables")

    ca = sub.add_parser("create-admin", help="add a row to admin_users")
    ca.add_argument("--username", required=True)
    ca.add_argument("--password", required=True)
    ca.add_argument("--email", default=None)

    hp = sub.add_parser("hash-password", help="print a bcrypt hash")
    hp.add_argument("password")

    sv = sub.add_parser("serve", help="run the HTTP server")
    sv.add_argument("--host", default="127.0.0.1")
    sv.add_argument("--port", type=int, default=8000)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "hash-password":
        print(hash_password(args.password))
        return 0

    settings = Settings.from_env()
    if args.cmd == "init-db":
        asyncio.run(init_db(settings))
        return 0
    if args.cmd == "create-admin":
        ok = asyncio.run(create_admin(settings, args.username.strip(),
                                      args.password, args.email))
        return 0 if ok else 1
    if args.cmd == "serve":
        serve(settings, args.host, args.port)
        return 0
    return 2


if __name__ == "__main__":
    sys.exit(main())
