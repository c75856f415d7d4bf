import os
from collections.abc import Callable, Iterable

from .errors import ConfigurationError


def _parse_env_file(env_path: str) -> dict[str, str]:
    """Parse a simple .env file into a dict without modifying os.environ.

    Supports basic KEY=VALUE pairs, ignoring comments and blank lines.
    Surrounding single/double quotes are stripped if present.
    """
    values: dict[str, str] = {}
    try:
        with open(env_path) as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" not in line:
                    continue
                key, val = line.split("=", 1)
                key = key.strip()
                val = val.strip().strip('"').strip("'")
                if key:
                    values[key] = val
    except FileNotFoundError:
        # Silently ignore missing file to make the helper easy to use
        pass
    return values


def env_map(env_path: str | None = None) -> dict[str, str]:
    """Actual environment layered over the optional .env file."""
    file_env = _parse_env_file(env_path) if env_path else {}
    return {**file_env, **os.environ}


def parse_key_lines(text: str) -> list[str]:
    """One credential per line; blank lines and '#' comments are dropped."""
    keys = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        keys.append(line)
    return keys


def load_credentials_from_file(path: str) -> list[str]:
    try:
        with open(path, encoding="utf-8") as f:
            return parse_key_lines(f.read())
    except FileNotFoundError:
        return []
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Cannot read keys file {path}: {e}") from e


def load_credentials_from_env(
    names: Iterable[str] | None = None,
    prefix: str | None = None,
    env_path: str | None = None,
    split_commas: bool = True,
) -> list[str]:
    """Collect credentials from environment variables.

    - If 'names' is provided, look up each explicit env var name, in order.
    - If 'prefix' is provided, every env var whose name starts with the prefix
        contributes, in sorted name order so the pool order is stable.
    - If 'env_path' is provided, variables from the .env file augment lookups
        (without mutating the process environment). Values in the actual
        environment take precedence over the file.
    - With 'split_commas', a value like "k1, k2" yields two credentials.
    """
    values = env_map(env_path)

    raw: list[str] = []
    if names:
        for var in names:
            token = values.get(var)
            if token:
                raw.append(token)
    if prefix:
        for var in sorted(values):
            if var.startswith(prefix) and values[var]:
                raw.append(values[var])

    results: list[str] = []
    for token in raw:
        if split_commas and "," in token:
            results.extend(t.strip() for t in token.split(",") if t.strip())
        else:
            results.append(token.strip())
    return results


def make_loader(
    keys_file: str | None = "keys.txt",
    env_names: Iterable[str] | None = None,
    env_path: str | None = None,
) -> Callable[[], list[str]]:
    """Build the zero-argument loader a KeyPool calls on start and on reload.

    The keys file wins when it holds at least one key; otherwise the listed
    environment variables are consulted. An empty result is a ConfigurationError.
    """
    names = list(env_names or [])

    def load() -> list[str]:
        keys = load_credentials_from_file(keys_file) if keys_file else []
        if not keys and names:
            keys = load_credentials_from_env(names=names, env_path=env_path)
        if not keys:
            raise ConfigurationError(
                "No API keys found in keys file or environment variables"
            )
        return keys

    return load
