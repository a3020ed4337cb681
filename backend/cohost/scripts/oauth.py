#!/usr/bin/env python3
"""Print the authorize URLs for the bot and broadcaster accounts.

Open each URL logged in as the matching account; twitchio's built-in
adapter stores the resulting tokens through ``Bot.add_token``.
"""

import os
import sys
from pathlib import Path
from urllib.parse import quote

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).parent.parent))
load_dotenv(Path(__file__).parent.parent / ".env")

from core.config import BOT_SCOPES, BROADCASTER_SCOPES  # noqa: E402


def gen_url(cid: str, uri: str, scopes: list[str]) -> str:
    s = "+".join(s.replace(":", "%3A") for s in scopes)
    return (
        f"https://id.twitch.tv/oauth2/authorize?client_id={cid}"
        f"&redirect_uri={quote(uri, safe='')}&response_type=code&scope={s}"
    )


def main() -> None:
    cid = os.getenv("CLIENT_ID")
    if not cid:
        print("ERROR: CLIENT_ID not found")
        sys.exit(1)

    uri = os.getenv("OAUTH_REDIRECT_URI", "http://localhost:4343/oauth/callback")

    print("Bot account:")
    print(gen_url(cid, uri, BOT_SCOPES))
    print()
    print("Broadcaster account:")
    print(gen_url(cid, uri, BROADCASTER_SCOPES))


if __name__ == "__main__":
    main()
