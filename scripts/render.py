"""Render cloud-init templates into a boot partition.

Copies every file from the template directory into the destination and
replaces each {{NAME}} marker with the matching value.  Substitution is plain
string replacement: no conditionals, loops or escaping.
"""

import os
import re
import shutil
import tempfile
from pathlib import Path

import yaml

from _common import BootConfig, BootConfigError, DestinationMissingError

METADATA_FILE = "meta-data"
USER_DATA_FILE = "user-data"
CLOUD_CONFIG_HEADER = "#cloud-config"
PLACEHOLDER_RE = re.compile(r"\{\{([A-Za-z_][A-Za-z0-9_]*)\}\}")
# Looser match for leftover reporting, so "{{ NAME }}" typos are flagged too
TOKEN_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class RenderError(BootConfigError):
    """Raised when rendered output cannot be produced."""


class TemplateCopyError(RenderError):
    """Raised when a template cannot be read or written to the destination."""


class MetadataNotFoundError(RenderError):
    """Raised when the meta-data file to rewrite does not exist."""


class CloudConfigError(RenderError):
    """Raised when a rendered file is not valid cloud-init YAML."""


def atomic_write(path: Path, data: bytes, mode_from: Path | None = None):
    """Write ``data`` to ``path`` via a temp file in the same directory.

    A crash leaves either the old file or the new one, never a truncated mix.
    """
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        if mode_from is not None:
            try:
                shutil.copymode(mode_from, tmp)
            except PermissionError:
                pass  # vfat boot partitions reject chmod
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def substitute(text: str, values: dict) -> str:
    """Replace each known {{NAME}} in one pass; values are never rescanned."""
    return PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), text)


def iter_templates(template_dir: Path) -> list[Path]:
    return sorted(p for p in template_dir.rglob("*") if p.is_file())


def render(dest_dir: Path, template_dir: Path, config: BootConfig) -> list[Path]:
    """Render every template into ``dest_dir``. Returns the written paths.

    Files already in ``dest_dir`` that have no template counterpart are left
    alone.
    """
    if not dest_dir.is_dir():
        raise DestinationMissingError(f"Destination directory '{dest_dir}' does not exist.")
    if not template_dir.is_dir():
        raise TemplateCopyError(f"Template directory not found: {template_dir}")

    values = config.placeholders()
    written = []
    for source in iter_templates(template_dir):
        target = dest_dir / source.relative_to(template_dir)
        try:
            data = source.read_bytes()
            try:
                data = substitute(data.decode("utf-8"), values).encode("utf-8")
            except UnicodeDecodeError:
                pass  # binary file, copied verbatim
            target.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(target, data, mode_from=source)
        except OSError as e:
            raise TemplateCopyError(f"Failed to render {source} -> {target}: {e}") from e
        written.append(target)
    return written


def rewrite_metadata(text: str, hostname: str) -> str:
    out = []
    for line in text.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        ending = line[len(body):]
        if body.startswith("local-hostname:"):
            body = f"local-hostname: {hostname}"
        elif body.startswith("instance-id:"):
            body = f"instance-id: {hostname}-001"
        out.append(body + ending)
    return "".join(out)


def update_metadata_fields(metadata_file: Path, hostname: str):
    """Point local-hostname and instance-id in ``metadata_file`` at ``hostname``."""
    if not metadata_file.is_file():
        raise MetadataNotFoundError(f"Metadata file not found: {metadata_file}")
    try:
        # newline="" keeps CRLF endings intact through the rewrite
        with open(metadata_file, encoding="utf-8", newline="") as f:
            text = f.read()
        atomic_write(
            metadata_file,
            rewrite_metadata(text, hostname).encode("utf-8"),
            mode_from=metadata_file,
        )
    except (OSError, UnicodeDecodeError) as e:
        raise RenderError(f"Failed to update {metadata_file}: {e}") from e


def find_unresolved(paths: list[Path]) -> dict:
    """Return leftover {{NAME}} tokens per rendered text file."""
    leftovers = {}
    for path in paths:
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            continue
        tokens = sorted(set(TOKEN_RE.findall(text)))
        if tokens:
            leftovers[path] = tokens
    return leftovers


def _read_rendered(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise CloudConfigError(f"Could not read {path.name}: {e}") from e


def _load_yaml(path: Path):
    try:
        return yaml.safe_load(_read_rendered(path))
    except yaml.YAMLError as e:
        raise CloudConfigError(f"{path.name} is not valid YAML: {e}") from e


def check_cloud_config(dest_dir: Path):
    """Parse the rendered cloud-init files and check their basic shape.

    Catches values that break the YAML (an unquoted ``: `` in a token, say)
    before the card is put in the device.
    """
    user_data = dest_dir / USER_DATA_FILE
    if user_data.is_file():
        first_line = _read_rendered(user_data).split("\n", 1)[0].strip()
        if first_line != CLOUD_CONFIG_HEADER:
            raise CloudConfigError(
                f"{USER_DATA_FILE} must start with '{CLOUD_CONFIG_HEADER}', got {first_line!r}"
            )
        if not isinstance(_load_yaml(user_data), dict):
            raise CloudConfigError(f"{USER_DATA_FILE} does not contain a YAML mapping")

    meta_path = dest_dir / METADATA_FILE
    if not meta_path.is_file():
        raise MetadataNotFoundError(f"Metadata file not found: {meta_path}")
    meta = _load_yaml(meta_path)
    if not isinstance(meta, dict):
        raise CloudConfigError(f"{METADATA_FILE} does not contain a YAML mapping")
    for field in ("local-hostname", "instance-id"):
        if not isinstance(meta.get(field), str):
            raise CloudConfigError(
                f"{METADATA_FILE} field '{field}' is missing or not a plain string"
            )
