#!/usr/bin/env python3
"""Print a strength report for a password, or generate a strong one.

Usage:
    # Prompt for the password without echoing it:
    python scripts/check_password.py --email jane@example.com --name "Jane Doe"

    # Pass it explicitly (visible in shell history):
    python scripts/check_password.py --password 'Tr1cky!Passphrase'

    # Generate a random password and report on it:
    python scripts/check_password.py --generate 20

Environment Variables:
    CHECK_PASSWORD: Password to check when --password is not given
    PASSWORD_MIN_LENGTH, PASSWORD_REQUIRE_*: Policy overrides (see sessionguard/config.py)
"""
from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def build_report(password: str, email: str | None = None, name: str | None = None) -> dict:
    """Evaluate ``password`` with the configured policy.

    Returns:
        dict with the strength result fields plus a strength label
    """
    # Import here to avoid loading config before env vars are set
    from sessionguard.service.passwords import PasswordContext, strength_label
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()
    result = runtime.passwords.evaluate_strength(password, PasswordContext(email=email, name=name))
    return {
        "is_valid": result.is_valid,
        "score": result.score,
        "label": strength_label(result.score),
        "errors": result.errors,
        "warnings": result.warnings,
        "suggestions": result.suggestions,
        "estimated_crack_time": result.estimated_crack_time,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Check a password against the sessionguard policy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("CHECK_PASSWORD"),
        help="Password to check (or set CHECK_PASSWORD env var; prompted if absent)",
    )
    parser.add_argument("--email", help="Account email, used for personal-info checks")
    parser.add_argument("--name", help="Account holder name, used for personal-info checks")
    parser.add_argument(
        "--generate",
        type=int,
        metavar="LENGTH",
        help="Generate a random password of LENGTH characters instead of checking one",
    )

    args = parser.parse_args()

    # Hashing is not exercised here, so keep the pool cheap
    os.environ.setdefault("TEST_MODE", "true")
    os.environ.setdefault("USE_MEMORY_STORE", "true")
    os.environ.setdefault("LOG_LEVEL", "WARNING")

    from sessionguard.service.passwords import generate_secure_password

    password = args.password
    if args.generate is not None:
        try:
            password = generate_secure_password(args.generate)
        except ValueError as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(f"Generated password: {password}")
    elif not password:
        password = getpass.getpass("Password: ")

    if not password:
        print("Error: no password given")
        sys.exit(1)

    try:
        report = build_report(password, args.email, args.name)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = "valid" if report["is_valid"] else "INVALID"
    print(f"\nPassword is {status}")
    print(f"  Score: {report['score']}/100 ({report['label']})")
    print(f"  Estimated crack time: {report['estimated_crack_time']}")
    for heading, key in (("Errors", "errors"), ("Warnings", "warnings"), ("Suggestions", "suggestions")):
        if report[key]:
            print(f"  {heading}:")
            for line in report[key]:
                print(f"    - {line}")

    sys.exit(0 if report["is_valid"] else 2)


if __name__ == "__main__":
    main()
