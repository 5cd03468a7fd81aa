"""
Locate and read the notmuch configuration file to find the database path.
"""
import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from rich.console import Console
from rich.markup import escape

from lock_errors import ConfigFieldError, ConfigLocationError, ConfigParseError

CONFIG_ENV = "NOTMUCH_CONFIG"
DEFAULT_CONFIG_NAME = ".notmuch-config"

console = Console(stderr=True, soft_wrap=True)


@dataclass(frozen=True)
class Configuration:
    """Settings read once from the notmuch config file."""

    database_path: str
    new_mail_tags: Tuple[str, ...] = field(default_factory=tuple)
    source: Optional[str] = None


def locate_config(environ: Optional[Mapping[str, str]] = None) -> Path:
    """
    Find the config file path.

    NOTMUCH_CONFIG wins; otherwise ~/.notmuch-config under HOME.

    Raises:
        ConfigLocationError: if neither variable is set
    """
    env = os.environ if environ is None else environ
    if env.get(CONFIG_ENV):
        return Path(env[CONFIG_ENV])
    if env.get("HOME"):
        return Path(env["HOME"]) / DEFAULT_CONFIG_NAME
    raise ConfigLocationError(f"Neither {CONFIG_ENV} nor HOME set")


def _unescape(value: str) -> str:
    """Undo GKeyFile string escapes (\\s, \\n, \\t, \\r, \\\\)."""
    out = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        out.append({"s": " ", "n": "\n", "t": "\t", "r": "\r", "\\": "\\"}.get(nxt, "\\" + nxt))
    return "".join(out)


def _split_list(value: str) -> Tuple[str, ...]:
    """Split a GKeyFile string list; ';' separates, '\\;' is a literal."""
    items = []
    current = []
    chars = iter(value)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            current.append(";" if nxt == ";" else _unescape("\\" + nxt))
        elif ch == ";":
            items.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    items.append("".join(current).strip())
    return tuple(item for item in items if item)


def _expand_db_path(raw: str, environ: Mapping[str, str]) -> str:
    path = _unescape(raw.strip())
    home = environ.get("HOME")
    if path.startswith("~") and home:
        path = home + path[1:]
    if not os.path.isabs(path) and home:
        # notmuch treats relative database paths as relative to $HOME
        path = os.path.join(home, path)
    return path


def load_config(path, environ: Optional[Mapping[str, str]] = None) -> Configuration:
    """
    Parse a notmuch key file.

    Args:
        path: Path to the config file
        environ: Environment used to expand the database path

    Returns:
        The parsed Configuration

    Raises:
        ConfigParseError: if the file is missing or malformed
        ConfigFieldError: if database.path is absent
    """
    env = os.environ if environ is None else environ
    parser = configparser.ConfigParser(
        interpolation=None,
        strict=False,
        comment_prefixes=("#",),
        inline_comment_prefixes=None,
        default_section="\x00",
    )
    parser.optionxform = str  # GKeyFile keys are case-sensitive

    try:
        with open(path, encoding="utf-8") as fh:
            parser.read_file(fh, source=str(path))
    except OSError as e:
        raise ConfigParseError(f"Failed to parse `{path}': {e.strerror or e}") from e
    except (configparser.Error, UnicodeDecodeError) as e:
        raise ConfigParseError(f"Failed to parse `{path}': {e}") from e

    raw_path = parser.get("database", "path", fallback=None)
    if raw_path is None or not raw_path.strip():
        raise ConfigFieldError(f"Failed to parse database.path from `{path}'")

    # Informational only; never an error.
    raw_tags = parser.get("new", "tags", fallback=None)
    tags = _split_list(raw_tags) if raw_tags else ()

    return Configuration(
        database_path=_expand_db_path(raw_path, env),
        new_mail_tags=tags,
        source=str(path),
    )


def resolve(environ: Optional[Mapping[str, str]] = None, verbose: bool = True) -> Configuration:
    """Locate the config file and load it. One shot, no retries."""
    path = locate_config(environ)
    if verbose:
        console.print(f"[cyan]Parsing configuration from `{escape(str(path))}'[/cyan]")
    return load_config(path, environ)
