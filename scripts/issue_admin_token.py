#!/usr/bin/env python3
"""
fleet-deploy - Operator token issuer

Prints a signed operator JWT. Uses the same JWT_SECRET_KEY as the API, so run
it with the server's environment loaded.

Usage:
    JWT_SECRET_KEY=... python scripts/issue_admin_token.py --subject alice --role operator
    JWT_SECRET_KEY=... python scripts/issue_admin_token.py --role admin --minutes 15
"""

import argparse
import os
from datetime import timedelta


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue an operator JWT for fleet-deploy.")
    parser.add_argument("--subject", default="ops", help="Operator name recorded in the audit trail")
    parser.add_argument("--role", choices=["viewer", "operator", "admin"], default="operator")
    parser.add_argument("--minutes", type=int, default=60, help="Token lifetime")
    args = parser.parse_args()

    if not os.environ.get("JWT_SECRET_KEY", "").strip():
        raise SystemExit("JWT_SECRET_KEY is required")

    from auth import AdminRole, AuthService

    token = AuthService.create_access_token(
        args.subject,
        AdminRole(args.role),
        expires_delta=timedelta(minutes=args.minutes),
    )
    print(token)


if __name__ == "__main__":
    main()
