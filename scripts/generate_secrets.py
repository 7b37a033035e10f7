#!/usr/bin/env python3
"""
Generate production secrets for the SalesIntel API.

Usage:
    python scripts/generate_secrets.py
    python scripts/generate_secrets.py --output .env.production
"""
import re
import secrets
import sys


def generate_secrets() -> dict[str, str]:
    """Generate all required production secrets."""
    return {
        "SECRET_KEY": secrets.token_urlsafe(48),
        "REFRESH_SECRET_KEY": secrets.token_urlsafe(48),
        "POSTGRES_PASSWORD": secrets.token_urlsafe(32),
    }


def patch_env(content: str, generated: dict[str, str]) -> tuple[str, int]:
    """Fill empty ``KEY=`` lines in an env file. Returns (content, replacements)."""
    replacements = 0
    for key, value in generated.items():
        pattern = rf"^({key}=)\s*(#.*)?$"
        new_content = re.sub(pattern, rf"\g<1>{value}", content, flags=re.MULTILINE)
        if new_content != content:
            replacements += 1
            content = new_content
    return content, replacements


def main():
    generated = generate_secrets()

    # If --output specified, patch the file in-place
    if len(sys.argv) >= 3 and sys.argv[1] == "--output":
        target = sys.argv[2]
        try:
            with open(target, "r", encoding="utf-8") as f:
                content = f.read()
        except FileNotFoundError:
            print(f"File not found: {target}")
            sys.exit(1)

        content, replacements = patch_env(content, generated)
        with open(target, "w", encoding="utf-8") as f:
            f.write(content)

        print(f"✅ Patched {replacements} secrets into {target}")
        print("\n⚠️  Remember to also set:")
        print("   - API_BASE_URL (public HTTPS origin registered with identity providers)")
        print("   - REDIS_URL")
        print("   - BACKEND_CORS_ORIGINS")
        return

    # Default: just print the secrets
    print("=" * 60)
    print("  SalesIntel API: Generated Production Secrets")
    print("=" * 60)
    for key, value in generated.items():
        print(f"{key}={value}")
    print("=" * 60)


if __name__ == "__main__":
    main()
