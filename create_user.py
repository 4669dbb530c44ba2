#!/usr/bin/env python3
"""
Create (or reset the password of) a roadmap user.
Run this once to bootstrap the first admin account.

Usage:
    python create_user.py admin@example.com "Jane Doe" --role admin
"""

import argparse
import getpass
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from database import init_db as init_roadmap_db
from auth.db import init_db, create_user, set_user_password, get_user_by_email, ROLES


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create a roadmap user")
    parser.add_argument("email")
    parser.add_argument("username")
    parser.add_argument("--role", choices=ROLES, default="regular")
    args = parser.parse_args(argv)

    init_roadmap_db()
    init_db()

    password = getpass.getpass("Password: ")
    if len(password) < 8:
        print("Password must be at least 8 characters.")
        return 1

    existing = get_user_by_email(args.email)
    if existing:
        print(f"User {args.email} already exists!")
        print(f"  Role: {existing['role']}")
        response = input("\nReset password? (y/n): ")
        if response.lower() == 'y':
            set_user_password(existing['id'], password)
            print("Password reset.")
        return 0

    user = create_user(email=args.email, username=args.username, role=args.role, password=password)
    if not user:
        print("Failed to create user. Check logs for errors.")
        return 1

    print("\nUser created successfully!")
    print(f"  Email: {user['email']}")
    print(f"  Role: {user['role']}")
    print("\nYou can now log in at /login")
    return 0


if __name__ == "__main__":
    sys.exit(main())
