#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Script to generate the RSA key pair used to sign access and refresh tokens.
Without JWT_PRIVATE_KEY/JWT_PUBLIC_KEY every process gets its own key pair,
so tokens stop validating after a restart or on another instance.
"""

import argparse
import os
import sys

# Add the parent directory to the path so we can import from api
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.auth import AuthService


def to_env_lines(private_key: str, public_key: str) -> str:
    """Render the key pair as single-line environment variables."""
    newline = "\\n"
    return (
        f'JWT_PRIVATE_KEY="{private_key.strip().replace(chr(10), newline)}"\n'
        f'JWT_PUBLIC_KEY="{public_key.strip().replace(chr(10), newline)}"\n'
    )


def main():
    parser = argparse.ArgumentParser(description="Generate RS256 keys for the auth API")
    parser.add_argument("--env-file", help="Append the variables to this .env file instead of printing them")
    args = parser.parse_args()

    private_key, public_key = AuthService.generate_key_pair()
    env_lines = to_env_lines(private_key, public_key)

    if args.env_file:
        with open(args.env_file, "a", encoding="utf-8") as env_file:
            env_file.write(env_lines)
        print(f"JWT keys appended to {args.env_file}")
        return

    print("=== JWT PRIVATE KEY ===")
    print(private_key)
    print("=== JWT PUBLIC KEY ===")
    print(public_key)
    print("=== Environment Variables ===")
    print(env_lines, end="")


if __name__ == "__main__":
    main()
