#!/usr/bin/env python3
"""
Immutable Sandbox Command Line Interface

Usage:
    immutable-sandbox identity init --name <name> [--email <email>] [--validity-days N]
    immutable-sandbox identity show
    immutable-sandbox config
    immutable-sandbox create <name> <location> [--input <dir>]
    immutable-sandbox open <id>
    immutable-sandbox finalize <id> [--provision-identity] [--identity-name <name>]
    immutable-sandbox verify <id>
    immutable-sandbox verify-dir <location>
    immutable-sandbox list
    immutable-sandbox remove <id>
    immutable-sandbox export <id> [--out <dir>]
"""

import argparse
import asyncio
import json
import sys
from typing import Any, List, Optional

from .bundle import export_audit_bundle
from .config import Settings, is_debug, validate_config
from .db import RegistryDatabase
from .errors import SandboxError
from .keys import Keyring
from .logging_config import configure_logging, set_operation_id
from .sandbox import Sandbox

EXIT_OK = 0
EXIT_NOT_VALID = 1
EXIT_ERROR = 2


def emit(data: Any) -> None:
    """Print JSON to stdout."""
    print(json.dumps(data, indent=2, sort_keys=True))


def cmd_identity_init(args, settings: Settings) -> int:
    keyring = Keyring.from_settings(settings)
    existing = keyring.current_identity()
    if existing and not args.force:
        print(f"Identity {existing} already configured; use --force to replace it", file=sys.stderr)
        return EXIT_ERROR
    kid = keyring.provision_identity(args.name, email=args.email, validity_days=args.validity_days)
    emit({"kid": kid, "trust_store": str(keyring.trust_store_path)})
    print(f"\nGenerated signing identity: {kid}", file=sys.stderr)
    return EXIT_OK


def cmd_identity_show(args, settings: Settings) -> int:
    keyring = Keyring.from_settings(settings)
    if keyring.current_identity() is None:
        print("No signing identity configured", file=sys.stderr)
        return EXIT_ERROR
    emit(keyring.identity_info())
    return EXIT_OK


def cmd_config(args, settings: Settings) -> int:
    files = validate_config(settings)
    stats = None
    if files["registry_db"]:
        db = RegistryDatabase(settings.registry_db)
        stats = db.get_db_stats()
        db.close_connection()
    emit({
        "home": str(settings.home),
        "tsa": settings.tsa_kind,
        "files": files,
        "experiments": stats,
    })
    return EXIT_OK


async def cmd_create(args, sandbox: Sandbox) -> int:
    exp = await sandbox.create_experiment(args.name, args.location, args.input)
    emit(exp.to_dict())
    return EXIT_OK


async def cmd_open(args, sandbox: Sandbox) -> int:
    emit((await sandbox.open(args.id)).to_dict())
    return EXIT_OK


async def cmd_finalize(args, sandbox: Sandbox) -> int:
    result = await sandbox.finalize(
        args.id, provision_identity=args.provision_identity, identity_name=args.identity_name
    )
    emit(result.to_dict())
    for notice in result.notices:
        print(f"NOTICE: {notice}", file=sys.stderr)
    for warning in result.warnings:
        print(f"WARNING: {warning}", file=sys.stderr)
    return EXIT_OK


def _report_exit(report) -> int:
    emit(report.to_dict())
    if report.is_valid():
        print(f"\n✓ {report.outcome.value}", file=sys.stderr)
        return EXIT_OK
    print(f"\n✗ {report.outcome.value}", file=sys.stderr)
    for problem in report.problems:
        print(f"  - {problem}", file=sys.stderr)
    return EXIT_NOT_VALID


async def cmd_verify(args, sandbox: Sandbox) -> int:
    return _report_exit(await sandbox.verify(args.id))


async def cmd_verify_dir(args, sandbox: Sandbox) -> int:
    return _report_exit(await sandbox.verify_location(args.location))


async def cmd_list(args, sandbox: Sandbox) -> int:
    emit([exp.to_dict() for exp in await sandbox.list()])
    return EXIT_OK


async def cmd_remove(args, sandbox: Sandbox) -> int:
    exp = await sandbox.remove(args.id)
    emit({"removed": exp.to_dict()})
    return EXIT_OK


async def cmd_export(args, sandbox: Sandbox) -> int:
    report = await sandbox.verify(args.id)
    exp = await sandbox.get(args.id)
    out = export_audit_bundle(exp.location, sandbox.keyring, args.out, report=report)
    emit({"bundle": str(out), "outcome": report.outcome.value})
    return EXIT_OK


IDENTITY_COMMANDS = {
    "init": cmd_identity_init,
    "show": cmd_identity_show,
}

SANDBOX_COMMANDS = {
    "create": cmd_create,
    "open": cmd_open,
    "finalize": cmd_finalize,
    "verify": cmd_verify,
    "verify-dir": cmd_verify_dir,
    "list": cmd_list,
    "remove": cmd_remove,
    "export": cmd_export,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="immutable-sandbox",
        description="Provenance records for data analysis experiments",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  immutable-sandbox identity init --name "Ada Lovelace"
  immutable-sandbox create exp1 ./exp1 --input ./raw_data
  immutable-sandbox finalize <id>
  immutable-sandbox verify <id>
  immutable-sandbox verify-dir ./exp1
        """
    )
    parser.add_argument("--log-level", help="Log level (default: SANDBOX_LOG_LEVEL or INFO)")
    parser.add_argument("--text-logs", action="store_true", help="Plain text logs instead of JSON")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # identity
    identity_parser = subparsers.add_parser("identity", help="Manage the signing identity")
    identity_sub = identity_parser.add_subparsers(dest="identity_command")
    init_parser = identity_sub.add_parser("init", help="Provision a new signing identity")
    init_parser.add_argument("-n", "--name", required=True, help="Analyst name")
    init_parser.add_argument("-e", "--email", help="Analyst contact")
    init_parser.add_argument("-v", "--validity-days", type=int, help="Key validity in days (default: no expiry)")
    init_parser.add_argument("--force", action="store_true", help="Replace an existing identity")
    identity_sub.add_parser("show", help="Show the configured identity")

    # config
    subparsers.add_parser("config", help="Show resolved paths and which files exist")

    # create
    create_parser = subparsers.add_parser("create", help="Create and scaffold an experiment")
    create_parser.add_argument("name", help="Experiment name")
    create_parser.add_argument("location", help="Experiment root directory")
    create_parser.add_argument("-i", "--input", help="Directory copied into input/")

    # open
    open_parser = subparsers.add_parser("open", help="Open an experiment for work")
    open_parser.add_argument("id", help="Experiment id")

    # finalize
    finalize_parser = subparsers.add_parser("finalize", help="Hash, sign and timestamp an experiment")
    finalize_parser.add_argument("id", help="Experiment id")
    finalize_parser.add_argument("--provision-identity", action="store_true",
                                 help="Create a signing identity if none is configured")
    finalize_parser.add_argument("--identity-name", help="Name for a provisioned identity")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a finalized experiment")
    verify_parser.add_argument("id", help="Experiment id")

    # verify-dir
    verify_dir_parser = subparsers.add_parser("verify-dir", help="Verify a finalized directory offline")
    verify_dir_parser.add_argument("location", help="Experiment root directory")

    # list
    subparsers.add_parser("list", help="List experiments")

    # remove
    remove_parser = subparsers.add_parser("remove", help="Remove a registry record (files are kept)")
    remove_parser.add_argument("id", help="Experiment id")

    # export
    export_parser = subparsers.add_parser("export", help="Export an audit bundle")
    export_parser.add_argument("id", help="Experiment id")
    export_parser.add_argument("-o", "--out", default=".", help="Output directory")

    return parser


async def _run_sandbox_command(handler, args, settings: Settings) -> int:
    sandbox = Sandbox.from_settings(settings)
    try:
        return await handler(args, sandbox)
    finally:
        sandbox.close()


def run(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    configure_logging(
        level=args.log_level or ("DEBUG" if is_debug() else settings.log_level),
        json_format=settings.log_json and not args.text_logs,
    )
    set_operation_id()

    try:
        if args.command == "identity":
            handler = IDENTITY_COMMANDS.get(args.identity_command)
            if handler is None:
                parser.print_help()
                return EXIT_ERROR
            return handler(args, settings)
        if args.command == "config":
            return cmd_config(args, settings)
        handler = SANDBOX_COMMANDS.get(args.command)
        if handler is None:
            parser.print_help()
            return EXIT_ERROR
        return asyncio.run(_run_sandbox_command(handler, args, settings))
    except SandboxError as e:
        print(json.dumps(e.to_dict(), indent=2, sort_keys=True), file=sys.stderr)
        print(f"\n✗ {e}", file=sys.stderr)
        return EXIT_ERROR


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
