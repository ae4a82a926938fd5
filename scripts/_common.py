"""Shared configuration and SSH key handling for boot-config generation."""

import os
import re
from dataclasses import dataclass
from pathlib import Path

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
REQUIRED_KEYS = [
    "USER_NAME",
    "DEVICE_HOSTNAME",
    "REPO_URL",
    "CLOUDFLARE_TUNNEL_TOKEN",
    "SSH_PUBLIC_KEY_LINE",
]
KEY_PATH_VAR = "SSH_PUBLIC_KEY_PATH"

# Template token -> variable it is filled from.  The templates say
# {{CLOUDFLARE_TOKEN}}; the operator-facing variable is CLOUDFLARE_TUNNEL_TOKEN.
PLACEHOLDER_ALIASES = {
    "CLOUDFLARE_TOKEN": "CLOUDFLARE_TUNNEL_TOKEN",
}

PUBKEY_SUFFIX = ".pub"
SSH_KEY_PREFIXES = ("ssh-", "ecdsa-", "sk-ssh-", "sk-ecdsa-")
SSH_KEY_RE = re.compile(r"^(?:%s)" % "|".join(re.escape(p) for p in SSH_KEY_PREFIXES))


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------
class BootConfigError(Exception):
    """Raised when boot configuration cannot be generated."""


class UsageError(BootConfigError):
    """Raised on a bad command-line invocation."""


class EnvFileError(BootConfigError):
    """Raised when the .env file exists but cannot be read."""


class DestinationMissingError(BootConfigError):
    """Raised when the destination directory does not exist."""


class MissingVariableError(BootConfigError):
    """Raised when one or more required variables are empty."""

    def __init__(self, names: list[str]):
        self.names = list(names)
        super().__init__(
            f"Missing required variables: {', '.join(self.names)}. "
            f"Define them in .env or your environment."
        )


class KeyNotFoundError(BootConfigError):
    """Raised when the configured SSH public key file does not exist."""


class InvalidKeyFormatError(BootConfigError):
    """Raised when key content does not look like an SSH public key."""


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class BootConfig:
    user_name: str
    device_hostname: str
    repo_url: str
    cloudflare_tunnel_token: str
    ssh_public_key_line: str

    def as_env(self) -> dict:
        """Return the values keyed by their variable names."""
        return {
            "USER_NAME": self.user_name,
            "DEVICE_HOSTNAME": self.device_hostname,
            "REPO_URL": self.repo_url,
            "CLOUDFLARE_TUNNEL_TOKEN": self.cloudflare_tunnel_token,
            "SSH_PUBLIC_KEY_LINE": self.ssh_public_key_line,
        }

    def placeholders(self) -> dict:
        """Map every template token name to its substitution value."""
        values = self.as_env()
        for token, var in PLACEHOLDER_ALIASES.items():
            values[token] = values[var]
        return values


def _parse_env_value(value: str) -> str:
    value = value.strip()
    # Strip surrounding quotes (single or double), the common .env convention
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    # Only " #" starts an inline comment; a bare "#" is kept (URL fragments).
    comment_idx = value.find(" #")
    if comment_idx != -1:
        value = value[:comment_idx].rstrip()
    return value


def read_env_file(env_path: Path) -> dict:
    """Parse KEY=value lines from a .env file.

    The file used to be sourced by a shell, so a leading ``export`` is
    accepted and ignored.
    """
    try:
        text = env_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise EnvFileError(f"Could not read {env_path}: {e}") from e

    config = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        config[key] = _parse_env_value(value)
    return config


def load_config(env_path: Path, environ=None) -> dict:
    """Load the optional .env file and overlay process environment values.

    Only the recognized names are taken from the environment, and only when
    non-empty, so an exported empty variable does not mask the file.
    """
    if environ is None:
        environ = os.environ

    config = {}
    if env_path.is_file():
        config.update(read_env_file(env_path))

    for key in [*REQUIRED_KEYS, KEY_PATH_VAR]:
        if environ.get(key):
            config[key] = environ[key]
    return config


def resolve_variables(raw: dict, ssh_key_line: str | None = None) -> BootConfig:
    """Build the immutable variable set, reporting every missing name at once."""
    values = {key: (raw.get(key) or "").strip() for key in REQUIRED_KEYS}
    if ssh_key_line:
        values["SSH_PUBLIC_KEY_LINE"] = ssh_key_line

    missing = [k for k in REQUIRED_KEYS if not values[k]]
    if missing:
        raise MissingVariableError(missing)

    if not SSH_KEY_RE.match(values["SSH_PUBLIC_KEY_LINE"]):
        raise InvalidKeyFormatError(
            "SSH_PUBLIC_KEY_LINE does not appear to be a valid SSH public key. "
            "Public keys should start with 'ssh-rsa', 'ssh-ed25519', 'ecdsa-', etc."
        )

    return BootConfig(
        user_name=values["USER_NAME"],
        device_hostname=values["DEVICE_HOSTNAME"],
        repo_url=values["REPO_URL"],
        cloudflare_tunnel_token=values["CLOUDFLARE_TUNNEL_TOKEN"],
        ssh_public_key_line=values["SSH_PUBLIC_KEY_LINE"],
    )


# ---------------------------------------------------------------------------
# SSH key
# ---------------------------------------------------------------------------
def resolve_ssh_key(path: str | None) -> str | None:
    """Read and validate the SSH public key at ``path``.

    Returns ``None`` when no path is configured.  A path naming the private
    key (``~/.ssh/id_ed25519``) resolves to its ``.pub`` sibling when one
    exists.
    """
    if not path:
        return None

    key_path = Path(path).expanduser()
    if not key_path.name.endswith(PUBKEY_SUFFIX):
        pub_path = key_path.with_name(key_path.name + PUBKEY_SUFFIX)
        if pub_path.is_file():
            key_path = pub_path
            print(f"  Auto-detected public key file: {key_path}")

    if not key_path.is_file():
        raise KeyNotFoundError(f"SSH public key file not found: {key_path}")

    try:
        lines = key_path.read_text().splitlines()
    except (OSError, UnicodeDecodeError) as e:
        raise InvalidKeyFormatError(f"Could not read SSH public key {key_path}: {e}") from e

    key_line = lines[0].strip() if lines else ""
    if not SSH_KEY_RE.match(key_line):
        raise InvalidKeyFormatError(
            f"File does not appear to contain a valid SSH public key: {key_path}\n"
            "Public keys should start with 'ssh-rsa', 'ssh-ed25519', 'ecdsa-', etc."
        )
    print(f"  Loaded SSH key from: {key_path}")
    return key_line


def describe_key(key_line: str) -> str:
    """Return the key type and comment, leaving out the key material."""
    parts = key_line.split()
    if len(parts) >= 3:
        return f"{parts[0]} ({' '.join(parts[2:])})"
    return parts[0]
