"""Script to register a provider API key in the credential pool."""

import argparse
import asyncio

from speakeval.db.models import ApiCredential
from speakeval.db.session import dispose_engine, get_session_maker, init_db


async def main(label: str, secret: str, provider: str):
    """Add one credential to the pool."""
    print("Initializing database...")
    await init_db()

    print("Adding credential...")
    async with get_session_maker()() as db:
        credential = ApiCredential(
            provider=provider,
            label=label,
            secret=secret,
            is_active=True,
            error_count=0,
            consecutive_rate_limits=0,
        )
        db.add(credential)
        await db.commit()

        print("\n" + "=" * 60)
        print("CREDENTIAL ADDED")
        print("=" * 60)
        print(f"\nID:       {credential.id}")
        print(f"Label:    {credential.label}")
        print(f"Provider: {credential.provider}")
        print(f"Secret:   {credential.masked_secret}")
        print("=" * 60)

    await dispose_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("label", help="Human-readable name for the key")
    parser.add_argument("secret", help="Provider API key")
    parser.add_argument("--provider", default="gemini")
    args = parser.parse_args()
    asyncio.run(main(args.label, args.secret, args.provider))
