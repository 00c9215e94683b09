from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

import jwt


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate an admin JWT for the Charter Desk API.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--email", required=True, help="Admin email, recorded as changed_by.")
    parser.add_argument("--roles", default="admin", help="Comma-separated roles.")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    if "@" not in args.email:
        parser.error("--email must be an email address")

    payload = {
        "sub": args.email.strip().lower(),
        "roles": [item.strip() for item in args.roles.split(",") if item.strip()],
        "exp": datetime.now(timezone.utc) + timedelta(hours=args.hours),
    }
    token = jwt.encode(payload, args.secret, algorithm=args.algorithm)
    print(token)


if __name__ == "__main__":
    main()
