"""
core/env_loader.py
Minimal .env file loader.
Loads KEY=VALUE pairs into os.environ at startup so WeCom secrets can be
referenced from config through ``*_env`` keys.
"""

import os


def load_dotenv(path: str = ".env") -> int:
    """
    Load KEY=VALUE pairs from a .env file into os.environ.
    - Skips blank lines, comments and an optional ``export `` prefix
    - Strips surrounding quotes (' or ") from values
    - Never overwrites a variable already in the environment
    Returns the number of keys newly set.
    """
    if not os.path.exists(path):
        return 0

    loaded = 0
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            if line.startswith("export "):
                line = line[len("export "):]
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
                value = value[1:-1]
            if key and key not in os.environ:
                os.environ[key] = value
                loaded += 1
    return loaded
