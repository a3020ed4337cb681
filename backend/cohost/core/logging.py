import logging

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

# (normal level, debug level) for chatty third-party loggers
NOISY_LOGGERS: dict[str, tuple[int, int]] = {
    "twitchio": (logging.INFO, logging.DEBUG),
    "twitchio.http": (logging.WARNING, logging.INFO),
    "twitchio.websockets": (logging.WARNING, logging.INFO),
    "httpx": (logging.WARNING, logging.INFO),
    "asyncpg": (logging.WARNING, logging.WARNING),
    "openai": (logging.WARNING, logging.INFO),
    "aiohttp": (logging.WARNING, logging.INFO),
    "botocore": (logging.WARNING, logging.WARNING),
    "boto3": (logging.WARNING, logging.WARNING),
    "asyncio": (logging.ERROR, logging.WARNING),
}


class TagHighlighter(RegexHighlighter):
    """Colour the [RULE]/[HATE]/[MUSIC]... prefixes and @mentions."""

    base_style = "cohost."
    highlights = [
        r"(?P<moderation>\[(RULE|HATE|MOD|BLOCK)\])",
        r"(?P<reward>\[(REDEEM|REWARD|LOVE|PRESET)\])",
        r"(?P<media>\[(MUSIC|SPEECH|NEURO)\])",
        r"(?P<system>\[(LLM|HISTORY|SUPERVISOR|NOTIFY|CONFIG|STATUS)\])",
        r"(?P<user>@\w+)",
    ]


THEME = Theme(
    {
        "cohost.moderation": "bold red",
        "cohost.reward": "bold magenta",
        "cohost.media": "bold cyan",
        "cohost.system": "bold blue",
        "cohost.user": "green",
    }
)


def setup_logging(log_level: str = "INFO") -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    debug = level == logging.DEBUG

    # Chat text is user controlled, so rich markup stays off
    handler = RichHandler(
        console=Console(width=120, theme=THEME),
        highlighter=TagHighlighter(),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
        tracebacks_width=120,
    )
    handler.setFormatter(logging.Formatter(fmt="%(name)s: %(message)s", datefmt="[%X]"))
    logging.basicConfig(level=level, format="%(message)s", handlers=[handler], force=True)

    for name, (normal, verbose) in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(verbose if debug else normal)

    logging.getLogger("Cohost").info(f"Logging ready (level={logging.getLevelName(level)})")
