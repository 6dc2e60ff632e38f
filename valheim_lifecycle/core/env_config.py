"""KEY=VALUE config loader layered under the process environment."""

import os
from pathlib import Path

_TRUE_WORDS = {"1", "true", "yes", "on", "y"}
_FALSE_WORDS = {"0", "false", "no", "off", "n"}


class EnvConfig:
    """Read settings from the environment, then a dotenv-like file."""

    def __init__(self, config_path=None, base_dir=None, environ=None):
        self.config_path = Path(config_path) if config_path else None
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.environ = dict(os.environ if environ is None else environ)
        self.values = self._load()

    def _load(self):
        """Parse config lines and return a key/value mapping."""
        values = {}
        if self.config_path is None:
            return values
        try:
            lines = self.config_path.read_text(encoding="utf-8").splitlines()
        except OSError:
            return values
        for raw in lines:
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            if key.startswith("export "):
                key = key[len("export "):].strip()
            value = value.strip()
            if not key:
                continue
            if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                value = value[1:-1]
            values[key] = value
        return values

    def raw(self, name):
        """Return the raw value for ``name``; the environment wins over the file."""
        if name in self.environ:
            return self.environ[name]
        return self.values.get(name)

    def get_str(self, name, default):
        """Read a string setting and fall back when missing/blank."""
        value = self.raw(name)
        if value is None:
            return default
        value = value.strip()
        return value if value else default

    def get_raw_str(self, name, default=""):
        """Read a string setting where blank is a meaningful value."""
        value = self.raw(name)
        if value is None:
            return default
        return value.strip()

    def get_int(self, name, default, minimum=None):
        """Read an integer setting with optional lower-bound clamping."""
        raw = self.raw(name)
        if raw is None:
            return default
        try:
            parsed = int(str(raw).strip())
        except (TypeError, ValueError):
            return default
        if minimum is not None and parsed < minimum:
            return minimum
        return parsed

    def get_float(self, name, default, minimum=None):
        """Read a float setting with optional lower-bound clamping."""
        raw = self.raw(name)
        if raw is None:
            return default
        try:
            parsed = float(str(raw).strip())
        except (TypeError, ValueError):
            return default
        if minimum is not None and parsed < minimum:
            return minimum
        return parsed

    def get_bool(self, name, default):
        """Read a boolean flag; unrecognised words keep the default."""
        raw = self.raw(name)
        if raw is None:
            return default
        word = str(raw).strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        return default

    def get_path(self, name, default):
        """Read a path setting and resolve relative values from ``base_dir``."""
        raw = self.raw(name)
        if raw is None:
            return Path(default)
        candidate = Path(str(raw).strip())
        if not str(raw).strip():
            return Path(default)
        if candidate.is_absolute():
            return candidate
        return self.base_dir / candidate
