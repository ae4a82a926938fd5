#!/usr/bin/env python3
"""Generate first-boot cloud-init files for a Raspberry Pi boot partition.

Reads configuration from .env (overridable from the environment), resolves
the SSH public key, renders system-boot/ templates into the destination
directory and points meta-data at the device hostname.

Usage:
    python3 scripts/generate_boot_config.py /media/$USER/system-boot
    generate-boot-config /media/$USER/system-boot --env-file pi2.env
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
from _common import (  # noqa: E402
    KEY_PATH_VAR,
    BootConfigError,
    DestinationMissingError,
    UsageError,
    describe_key,
    load_config,
    resolve_ssh_key,
    resolve_variables,
)
from render import (  # noqa: E402
    METADATA_FILE,
    check_cloud_config,
    find_unresolved,
    render,
    update_metadata_fields,
)

ROOT = Path(__file__).resolve().parent.parent
DEFAULT_TEMPLATES = ROOT / "system-boot"


class _ArgumentParser(argparse.ArgumentParser):
    """argparse exits 2 on bad usage; every failure of this tool exits 1."""

    def error(self, message):
        raise UsageError(f"{message}\n{self.format_usage().strip()}")


def parse_args(argv=None) -> argparse.Namespace:
    parser = _ArgumentParser(
        prog="generate-boot-config",
        description="Render cloud-init boot files into a mounted boot partition.",
    )
    parser.add_argument("destination", help="existing directory to write the files into")
    parser.add_argument(
        "--env-file", type=Path, default=Path(".env"),
        help="KEY=value file to read (default: ./.env, optional)",
    )
    parser.add_argument(
        "--templates", type=Path, default=DEFAULT_TEMPLATES,
        help=f"template directory (default: {DEFAULT_TEMPLATES})",
    )
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv=None):
    try:
        args = parse_args(argv)
        dest = Path(args.destination)

        # 1. Destination
        print(f"[1/5] Checking destination {dest}...")
        if not dest.is_dir():
            raise DestinationMissingError(f"Destination directory '{dest}' does not exist.")

        # 2. Config + SSH key (nothing is written until both are valid)
        print("[2/5] Loading configuration...")
        raw = load_config(args.env_file)
        key_line = resolve_ssh_key(raw.get(KEY_PATH_VAR))
        config = resolve_variables(raw, key_line)

        # 3. Templates
        print(f"[3/5] Generating configuration files in {dest}...")
        written = render(dest, args.templates, config)
        for path in written:
            print(f"  Wrote {path.relative_to(dest)}")

        # 4. meta-data
        print(f"[4/5] Setting hostname in {METADATA_FILE}...")
        update_metadata_fields(dest / METADATA_FILE, config.device_hostname)

        # 5. Sanity checks on the output
        print("[5/5] Checking rendered files...")
        for path, tokens in find_unresolved(written).items():
            print(
                f"  Warning: unresolved placeholders in {path.relative_to(dest)}: "
                f"{', '.join(tokens)}",
                file=sys.stderr,
            )
        check_cloud_config(dest)

        print()
        print("=" * 60)
        print("  BOOT CONFIGURATION READY")
        print()
        print(f"  Target:   {dest}")
        print(f"  Hostname: {config.device_hostname}")
        print(f"  User:     {config.user_name}")
        print(f"  SSH key:  {describe_key(config.ssh_public_key_line)}")
        print("=" * 60)

    except BootConfigError as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(1)


if __name__ == "__main__":
    main()
