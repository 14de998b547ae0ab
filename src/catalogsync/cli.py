"""
Command-line interface for catalogsync.

Usage (examples):
  - Plan only (fetch + diff, no writes):
      catalogsync plan --entries ./catalog/services.yml --token $TOKEN

  - Reconcile a catalog type to the declared entries:
      catalogsync apply --entries ./catalog/services.xlsx --sheet Services \
        --catalog-type-id 01GW2G3V0S59R238FAHPDS1R66 --token $TOKEN

  - Dump managed state / remove every entry:
      catalogsync read --catalog-type-id 01GW2G3V0S59R238FAHPDS1R66
      catalogsync destroy --catalog-type-id 01GW2G3V0S59R238FAHPDS1R66
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Dict, Iterable, Optional, Tuple

from .core.catalog_client import CatalogClient, ClientOptions, RemoteError
from .core.config import AppConfig, ConfigError, load_config
from .core.desired import DesiredMap, ValidationError, dump_document, load_desired
from .core.logging_setup import build_logger
from .core.reconciler import ReconcileError, Reconciler
from .core.resource import CatalogEntriesResource, CatalogEntriesState, ConsistencyError

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FAILED = 2


def _summarize_counts(counts: Dict[str, int]) -> str:
    keys = ["CREATED", "UPDATED", "UNCHANGED", "DELETED"]
    return " | ".join(f"{k}={counts.get(k, 0)}" for k in keys)


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--catalog-type-id", default=None, help="Catalog type ID (overrides the entries file)")

    # API / HTTP
    p.add_argument("--base-url", default=None, help="API base URL")
    p.add_argument("--token", default=None, help="API token")
    p.add_argument("--verify-tls", default=None, choices=["true", "false"], help="Verify TLS (https)")
    p.add_argument("--timeout-sec", type=int, default=None, help="HTTP timeout seconds")
    p.add_argument("--retries", type=int, default=None, help="HTTP retries (5xx/network), default 0")

    # Engine
    p.add_argument("--concurrency", type=int, default=None, help="Max in-flight operations per phase")
    p.add_argument("--page-size", type=int, default=None, help="Entries per list page")

    # Logging
    p.add_argument("--logs-dir", default=None, help="Logs base directory")
    p.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    p.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="catalogsync", description="Authoritative catalog entries sync")
    sub = p.add_subparsers(dest="cmd", required=True)

    for name, help_text in (
        ("plan", "Show what apply would do, without writing"),
        ("apply", "Reconcile a catalog type to the declared entries"),
    ):
        a = sub.add_parser(name, help=help_text)
        a.add_argument("--entries", required=True, help="Entries file (.yml/.yaml/.json/.csv/.xlsx)")
        a.add_argument("--sheet", default=None, help="Worksheet name for .xlsx inputs")
        _add_common(a)

    r = sub.add_parser("read", help="Print the managed entries of a catalog type as YAML")
    _add_common(r)

    d = sub.add_parser("destroy", help="Delete every entry of a catalog type")
    _add_common(d)

    return p


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Only values actually passed on the command line override lower layers."""
    def pick(pairs: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
        return {k: v for k, v in pairs if v is not None}

    verify = None if args.verify_tls is None else args.verify_tls.lower() == "true"
    return {
        "app": pick([("concurrency", args.concurrency), ("page_size", args.page_size)]),
        "api": pick([
            ("base_url", args.base_url),
            ("token", args.token),
            ("verify_tls", verify),
            ("timeout_sec", args.timeout_sec),
            ("retries", args.retries),
        ]),
        "logging": pick([
            ("base_dir", args.logs_dir),
            ("console_level", args.console_level),
            ("file_level", args.file_level),
        ]),
        "inputs": pick([
            ("entries_path", getattr(args, "entries", None)),
            ("sheet", getattr(args, "sheet", None)),
            ("catalog_type_id", args.catalog_type_id),
        ]),
    }


def _build_reconciler(cfg: AppConfig, logger: logging.LoggerAdapter) -> Reconciler:
    client = CatalogClient(
        cfg.api.base_url,
        cfg.api.token,
        options=ClientOptions(
            verify_tls=bool(cfg.api.verify_tls),
            timeout_sec=int(cfg.api.timeout_sec),
            retries=int(cfg.api.retries),
        ),
        logger=logger,
    )
    return Reconciler(client, concurrency=cfg.app.concurrency, page_size=cfg.app.page_size, logger=logger)


def _load_entries(cfg: AppConfig) -> Tuple[str, DesiredMap]:
    file_type_id, entries = load_desired(cfg.inputs.entries_path, sheet=cfg.inputs.sheet)
    catalog_type_id = cfg.inputs.catalog_type_id or file_type_id
    if not catalog_type_id:
        raise ValidationError("No catalog type ID: pass --catalog-type-id or set catalog_type_id in the entries file")
    return catalog_type_id, entries


def _run(args: argparse.Namespace) -> int:
    cfg = load_config(_cli_overrides(args))

    catalog_type_id = cfg.inputs.catalog_type_id
    entries: Optional[DesiredMap] = None
    if args.cmd in ("plan", "apply"):
        catalog_type_id, entries = _load_entries(cfg)
    elif not catalog_type_id:
        raise ValidationError(f"{args.cmd} requires --catalog-type-id")

    logger = build_logger(
        run_id=cfg.run_id,
        action=args.cmd,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
        extra={"catalog_type": catalog_type_id},
    )
    reconciler = _build_reconciler(cfg, logger)
    resource = CatalogEntriesResource(reconciler, logger=logger)

    if args.cmd == "plan":
        plan = reconciler.plan(catalog_type_id, entries or {})
        for decision in plan.decisions:
            if decision.op != "NOOP":
                logger.info("%s external_id=%s id=%s (%s)", decision.op, decision.external_id, decision.entry_id, decision.reason)
        print(_summarize_counts(plan.counts()))
        return EXIT_OK

    if args.cmd == "apply":
        logger.info("Loaded %d desired entries from %s", len(entries or {}), cfg.inputs.entries_path)
        result = reconciler.reconcile(catalog_type_id, entries or {})
        logger.info("Apply summary: %s (final entries=%d)", _summarize_counts(result.counts), len(result.entries))
        print(_summarize_counts(result.counts))
        return EXIT_OK

    if args.cmd == "read":
        state = resource.read(catalog_type_id)
        sys.stdout.write(dump_document(state.id, state.entries))
        return EXIT_OK

    resource.delete(CatalogEntriesState(id=catalog_type_id))
    print(f"Deleted all entries of catalog type {catalog_type_id}")
    return EXIT_OK


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        return _run(args)
    except (ConfigError, ValidationError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except (ReconcileError, ConsistencyError, RemoteError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
