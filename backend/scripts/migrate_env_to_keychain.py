#!/usr/bin/env python3
"""Move the aggregator API key and webhook secret from .env to the keychain.

Each non-empty secret listed in ``CREDENTIAL_KEYS`` is copied into the OS
keychain. With ``--clean`` the copied lines are then stripped from
``.env``; comments and non-secret settings stay put. ``--dry-run``
reports what would happen without touching either store.

Usage:
    python -m scripts.migrate_env_to_keychain
    python -m scripts.migrate_env_to_keychain --dry-run
    python -m scripts.migrate_env_to_keychain --clean --env-file /srv/money-sync/.env
"""

import argparse
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from services.credential_manager import CREDENTIAL_KEYS, get_credential, set_credential

DEFAULT_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


@dataclass
class MigrationReport:
    stored: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def removable(self) -> list[str]:
        """Keys now safely held by the keychain."""
        return self.stored + self.unchanged


def migrate(env_path: Path, dry_run: bool = False) -> MigrationReport:
    """Copy credentials from ``env_path`` into the keychain."""
    values = dotenv_values(env_path)
    report = MigrationReport()

    for key in sorted(CREDENTIAL_KEYS):
        value = (values.get(key) or "").strip()
        if not value:
            report.missing.append(key)
        elif get_credential(key) == value:
            report.unchanged.append(key)
        elif dry_run or set_credential(key, value):
            report.stored.append(key)
        else:
            report.failed.append(key)

    return report


def strip_env_keys(env_path: Path, keys: list[str]) -> int:
    """Remove ``KEY=...`` lines for ``keys`` from ``env_path``.

    Returns:
        Number of lines removed.
    """
    if not keys:
        return 0
    assignment = re.compile(
        r"^\s*(?:export\s+)?(" + "|".join(re.escape(k) for k in keys) + r")\s*="
    )
    lines = env_path.read_text().splitlines(keepends=True)
    kept = [line for line in lines if not assignment.match(line)]
    env_path.write_text("".join(kept))
    return len(lines) - len(kept)


def print_report(report: MigrationReport, dry_run: bool) -> None:
    verb = "Would store" if dry_run else "Stored"
    sections = [
        (f"{verb} in keychain", "+", report.stored),
        ("Already in keychain", "=", report.unchanged),
        ("Not set in .env", "-", report.missing),
        ("Failed", "!", report.failed),
    ]
    for title, marker, keys in sections:
        if keys:
            print(f"{title} ({len(keys)}):")
            for key in keys:
                print(f"  {marker} {key}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Move aggregator credentials from .env into the OS keychain"
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=DEFAULT_ENV_FILE,
        help="Path to .env file (default: backend/.env)",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Remove migrated credentials from .env afterwards",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing anything",
    )
    args = parser.parse_args(argv)

    if not args.env_file.exists():
        print(f"No .env file found at {args.env_file}", file=sys.stderr)
        return 1

    report = migrate(args.env_file, dry_run=args.dry_run)
    print_report(report, args.dry_run)

    if args.clean and not args.dry_run:
        removed = strip_env_keys(args.env_file, report.removable)
        print(f"Removed {removed} line(s) from {args.env_file}")

    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
