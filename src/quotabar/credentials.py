import json
import os
from pathlib import Path
from typing import Protocol

import structlog

logger = structlog.get_logger()

DEFAULT_AUTH_FILE = Path.home() / ".local" / "share" / "opencode" / "auth.json"


class CredentialStore(Protocol):
    """
    read-only lookup of bearer credentials by service name.
    Returns an empty string when nothing is stored.
    """

    def lookup(self, name: "str") -> "str": ...


class AuthFileCredentialStore:
    """
    reads keys from an opencode-style auth file, shaped as
    {"<name>": {"key": "..."}}. The file is read on every lookup, so a
    rotated key is used on the next fetch. A provider disabled for a
    missing key stays disabled until restart.
    """

    def __init__(self, path: "Path" = DEFAULT_AUTH_FILE) -> "None":
        self._path = path

    def lookup(self, name: "str") -> "str":
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return ""
        except (OSError, ValueError):
            logger.warning("auth_file_unreadable", path=str(self._path))
            return ""

        entry = data.get(name) if isinstance(data, dict) else None
        if not isinstance(entry, dict):
            return ""
        return str(entry.get("key") or "")


class EnvCredentialStore:
    """
    reads QUOTABAR_<NAME>_KEY from the environment.
    """

    def lookup(self, name: "str") -> "str":
        return os.environ.get(f"QUOTABAR_{name.upper()}_KEY", "")


class ChainCredentialStore:
    """
    returns the first non-empty value from a list of stores.
    """

    def __init__(self, *stores: "CredentialStore") -> "None":
        self._stores = stores

    def lookup(self, name: "str") -> "str":
        for store in self._stores:
            value = store.lookup(name)
            if value:
                return value
        return ""
