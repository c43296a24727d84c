#!/usr/bin/env python3
"""Print an argon2id hash for seeding faculty/admin rows by hand.

Usage:
    python scripts/hash_password.py            # prompts for the password
    FACULTY_PASSWORD=... python scripts/hash_password.py
"""
from __future__ import annotations

import getpass
import os
import sys

from argon2 import PasswordHasher, Type


def main() -> int:
    password = os.environ.get("FACULTY_PASSWORD") or getpass.getpass("Password: ")
    if len(password) < 8:
        print("Error: password must be at least 8 characters", file=sys.stderr)
        return 1
    print(PasswordHasher(type=Type.ID).hash(password))
    return 0


if __name__ == "__main__":
    sys.exit(main())
