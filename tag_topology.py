#!/usr/bin/env python3
"""
tag-topology — infer an AWS architecture graph from resource tags.

Usage:
    tag-topology discover --tag KEY=VALUE [--region REGION] [--profile PROFILE]
                          [--workers N] [--timeout SECONDS] [--no-fallback]
                          [--format json|csv] [--output FILE]
    tag-topology classify ARN [ARN ...]

Credentials come from the named profile or the default boto3 credential
chain.  Set TOPOLOGY_LOG_LEVEL=INFO (or DEBUG) for progress logging.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
from pathlib import Path
from typing import Callable

from discovery.errors import (
    AuthError,
    ConfigurationError,
    DiscoveryCancelled,
    EmptyResultError,
    NetworkError,
    TopologyError,
    TransportError,
)

logger = logging.getLogger(__name__)

_KNOWN_COMMANDS = ("discover", "classify")

_DEFAULT_REGION = "us-east-1"

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_AUTH = 2
EXIT_NETWORK = 3
EXIT_EMPTY = 4
EXIT_CANCELLED = 130

# Options that take a value; everything else starting with -- is a flag.
_VALUE_OPTIONS = ("--tag", "--region", "--profile", "--workers", "--timeout", "--format", "--output")
_FLAG_OPTIONS = ("--no-fallback",)


def _configure_logging() -> None:
    level_name = os.environ.get("TOPOLOGY_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(name)s: %(message)s",
        stream=sys.stderr,
    )


def _parse_options(args: list[str]) -> tuple[dict[str, str], set[str], list[str]]:
    """Split *args* into ``(options, flags, positionals)``."""
    options: dict[str, str] = {}
    flags: set[str] = set()
    positionals: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        name, eq, inline = arg.partition("=")
        if name in _VALUE_OPTIONS:
            if eq:
                options[name] = inline
            elif i + 1 < len(args):
                i += 1
                options[name] = args[i]
            else:
                raise ConfigurationError(f"{name} requires a value")
        elif arg in _FLAG_OPTIONS:
            flags.add(arg)
        elif arg.startswith("--"):
            raise ConfigurationError(f"Unknown option: {arg}")
        else:
            positionals.append(arg)
        i += 1
    return options, flags, positionals


def main(argv: list[str] | None = None) -> int:
    """Dispatch to the appropriate sub-command."""
    _configure_logging()
    args = sys.argv[1:] if argv is None else argv

    if not args or args[0] in ("-h", "--help", "help"):
        print(__doc__, file=sys.stderr)
        return EXIT_OK if args else EXIT_USAGE
    if args[0] not in _KNOWN_COMMANDS:
        print(f"Unknown command: {args[0]}", file=sys.stderr)
        print(__doc__, file=sys.stderr)
        return EXIT_USAGE

    try:
        if args[0] == "discover":
            return _cmd_discover(args[1:])
        return _cmd_classify(args[1:])
    except TopologyError as exc:
        # usage errors, EnrichmentConflictError, anything a command leaves unmapped
        print(f"\033[1;31mError:\033[0m {exc}", file=sys.stderr)
        return EXIT_USAGE


# ---------------------------------------------------------------------------
# Credential / region resolution
# ---------------------------------------------------------------------------

def resolve_credentials(profile: str | None = None):
    """Resolve static credentials and the default region through boto3.

    Returns ``(Credentials, region or None)``.
    """
    import boto3
    from botocore.exceptions import BotoCoreError

    from topology.model import Credentials

    try:
        session = boto3.Session(profile_name=profile) if profile else boto3.Session()
        creds = session.get_credentials()
        frozen = creds.get_frozen_credentials() if creds is not None else None
    except BotoCoreError as exc:
        raise ConfigurationError(f"Could not load AWS credentials: {exc}") from exc

    if frozen is None or not frozen.access_key or not frozen.secret_key:
        raise ConfigurationError(
            "No AWS credentials found. Configure a profile or set "
            "AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY."
        )
    return (
        Credentials(frozen.access_key, frozen.secret_key, frozen.token),
        session.region_name,
    )


# ---------------------------------------------------------------------------
# tag-topology discover
# ---------------------------------------------------------------------------

def _run_cancellable(fn: Callable[[threading.Event], object]) -> object:
    """Run *fn* in a worker thread; Ctrl-C sets its cancel event."""
    cancel_event = threading.Event()
    outcome: dict[str, object] = {}

    def _target() -> None:
        try:
            outcome["result"] = fn(cancel_event)
        except BaseException as exc:  # re-raised in the calling thread
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name="tag-topology-run", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        cancel_event.set()
        print("\033[33mCancelling...\033[0m", file=sys.stderr)
        worker.join()
        raise DiscoveryCancelled("Discovery was cancelled by the user")

    if "error" in outcome:
        raise outcome["error"]  # type: ignore[misc]
    return outcome.get("result")


def _cmd_discover(args: list[str]) -> int:
    """Discover tagged resources, infer the topology, and print it."""
    from discovery.enrichment import DEFAULT_MAX_WORKERS
    from discovery.pipeline import run_discovery
    from discovery.transport import DEFAULT_TIMEOUT
    from topology.export import to_csv, to_json
    from topology.model import TagFilter

    options, flags, _ = _parse_options(args)
    if "--tag" not in options:
        raise ConfigurationError("--tag KEY=VALUE is required")
    try:
        tag_filter = TagFilter.parse(options["--tag"])
        workers = int(options.get("--workers", DEFAULT_MAX_WORKERS))
        timeout = (
            (DEFAULT_TIMEOUT[0], float(options["--timeout"]))
            if "--timeout" in options else DEFAULT_TIMEOUT
        )
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc

    fmt = options.get("--format", "json")
    if fmt not in ("json", "csv"):
        raise ConfigurationError(f"Unsupported format: {fmt}")

    credentials, session_region = resolve_credentials(options.get("--profile"))
    region = options.get("--region") or session_region or _DEFAULT_REGION

    def _progress(phase: str) -> None:
        print(f"\033[31m{phase}...\033[0m", file=sys.stderr)

    print(
        f"\033[31mDiscovering resources tagged {tag_filter.key}={tag_filter.value} "
        f"in {region}\033[0m",
        file=sys.stderr,
    )

    try:
        result = _run_cancellable(lambda cancel_event: run_discovery(
            credentials,
            region,
            tag_filter,
            max_workers=workers,
            timeout=timeout,
            fallback="--no-fallback" not in flags,
            cancel_event=cancel_event,
            on_progress=_progress,
        ))
    except AuthError as exc:
        print(
            f"\033[1;31mAuthentication failed:\033[0m {exc}\n"
            "  Check the access keys and that they allow tag:GetResources.",
            file=sys.stderr,
        )
        return EXIT_AUTH
    except NetworkError as exc:
        print(f"\033[1;31mNetwork error:\033[0m {exc}\n  {exc.hint}", file=sys.stderr)
        return EXIT_NETWORK
    except EmptyResultError as exc:
        print(f"\033[33m{exc}\033[0m", file=sys.stderr)
        return EXIT_EMPTY
    except DiscoveryCancelled:
        print("\033[33mDiscovery cancelled.\033[0m", file=sys.stderr)
        return EXIT_CANCELLED
    except TransportError as exc:
        print(f"\033[1;31mAWS request failed:\033[0m {exc}", file=sys.stderr)
        return EXIT_NETWORK

    output = to_csv(result) if fmt == "csv" else to_json(result)
    if "--output" in options:
        Path(options["--output"]).write_text(output)
        print(f"\033[32mWrote {options['--output']}\033[0m", file=sys.stderr)
    else:
        sys.stdout.write(output if output.endswith("\n") else output + "\n")

    print(
        f"\033[32m{len(result.nodes)} resources, {len(result.edges)} connections.\033[0m",
        file=sys.stderr,
    )
    return EXIT_OK


# ---------------------------------------------------------------------------
# tag-topology classify
# ---------------------------------------------------------------------------

def _cmd_classify(args: list[str]) -> int:
    """Print type, local name and significance for each ARN."""
    from discovery.classifier import classify, extract_local_name, is_significant

    _, _, arns = _parse_options(args)
    if not arns:
        raise ConfigurationError("classify needs at least one ARN")
    for arn in arns:
        flag = "significant" if is_significant(arn) else "ignored"
        print(f"{classify(arn)}\t{extract_local_name(arn)}\t{flag}\t{arn}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
