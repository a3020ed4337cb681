#!/usr/bin/env python3
"""Validate stored tokens and report missing scopes."""

import asyncio
import os
import sys
from pathlib import Path

import asyncpg
import httpx
from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).parent.parent))
load_dotenv(Path(__file__).parent.parent / ".env")

from core.config import BOT_SCOPES, BROADCASTER_SCOPES  # noqa: E402

VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"


def identify_role(user_id: str, scopes: set[str]) -> str:
    if user_id == os.getenv("BOT_ID") or "user:bot" in scopes:
        return "Bot"
    if user_id == os.getenv("BROADCASTER_ID") or "channel:bot" in scopes:
        return "Broadcaster"
    return "Unknown"


def missing_scopes(role: str, scopes: set[str]) -> set[str]:
    if role == "Bot":
        return set(BOT_SCOPES) - scopes
    if role == "Broadcaster":
        return set(BROADCASTER_SCOPES) - scopes
    return set()


async def main() -> None:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("ERROR: DATABASE_URL not found")
        return

    conn = await asyncpg.connect(db_url)
    try:
        rows = await conn.fetch("SELECT user_id, token FROM tokens ORDER BY user_id")
    finally:
        await conn.close()

    print(f"=== Tokens ({len(rows)}) ===\n")
    async with httpx.AsyncClient(timeout=10.0) as client:
        for row in rows:
            uid = row["user_id"]
            try:
                r = await client.get(
                    VALIDATE_URL, headers={"Authorization": f"OAuth {row['token']}"}
                )
            except httpx.HTTPError as e:
                print(f"{uid} - exception: {e}\n")
                continue

            if r.status_code == 401:
                print(f"{uid} - EXPIRED (401), refreshed on next Helix call\n")
                continue
            if r.status_code != 200:
                print(f"{uid} - ERROR ({r.status_code})\n")
                continue

            d = r.json()
            scopes = set(d.get("scopes", []))
            role = identify_role(uid, scopes)
            print(f"{d.get('login', '?')} ({uid}) - {role}, expires in {d.get('expires_in', '?')}s")
            missing = missing_scopes(role, scopes)
            if missing:
                print(f"  WARNING - MISSING: {', '.join(sorted(missing))}")
            print()


if __name__ == "__main__":
    asyncio.run(main())
