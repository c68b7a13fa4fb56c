"""Create a profile (reporter, agent or administrator) and print a JWT for it.

Usage:
    python fastapi-backend/scripts/create_profile.py --email admin@example.com --password secret123 --role administrator
"""

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.append(str(ROOT / "fastapi-backend"))

from civicfix.database import get_session, init_db
from civicfix.errors import ValidationError
from civicfix.models import Role
from civicfix import auth


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--name")
    parser.add_argument("--role", default=Role.REPORTER.value, choices=[r.value for r in Role])
    args = parser.parse_args()

    print("Initializing DB...")
    await init_db()

    async for session in get_session():
        try:
            profile = await auth.create_profile(
                session,
                email=args.email,
                password=args.password,
                full_name=args.name,
                role=Role(args.role),
            )
        except ValidationError as exc:
            print(f"Could not create profile: {exc.message}", file=sys.stderr)
            sys.exit(1)
        token = auth.create_access_token(subject=profile.id, role=profile.role, email=profile.email)
        print(f"Created profile id={profile.id} email={profile.email} role={profile.role}")
        print(token)
        break  # Use one session then exit


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
