from dataclasses import dataclass
from typing import Optional

TOGGLE_PREFIX = "//"
COMMAND_PREFIX = "/"


@dataclass(frozen=True)
class ParsedCommand:
    prefix: str
    name: str
    args: str = ""


def parse_command(content: Optional[str]) -> Optional[ParsedCommand]:
    """Split "/name arg words" into its parts. None for plain text."""
    text = (content or "").strip()
    if text.startswith(TOGGLE_PREFIX):
        prefix = TOGGLE_PREFIX
    elif text.startswith(COMMAND_PREFIX):
        prefix = COMMAND_PREFIX
    else:
        return None

    tokens = text[len(prefix):].split()
    if not tokens:
        return None
    return ParsedCommand(prefix=prefix, name=tokens[0].lower(), args=" ".join(tokens[1:]))
