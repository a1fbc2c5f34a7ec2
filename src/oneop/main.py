"""Host flows for the OpenNebula operator.

The flows load a manifest and the state file, run every declared object
through its kind's reconciler in manifest order, and persist what was
applied. Each object is reconciled independently: a failure is logged and
reported in the exit code, but does not roll back objects already
converged.

Exit codes:
    0: every object converged
    1: at least one object failed, or the run was cancelled
    2: configuration, manifest or state file error
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC
from pathlib import Path
from typing import Any, TextIO

import yaml

from .client import RpcClient, RpcError
from .config import Config
from .models import BaseResourceSpec
from .permissions import ValidationError
from .poller import ConvergenceCancelled
from .reconciler import Reconciler, ReconcileError
from .records import DecodeError
from .resolver import AmbiguousMatch
from .spec_loader import ManifestEntry, SpecLoadError, load_manifest
from .state import StateFileError, StateStore, load_state, save_state

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

# Errors that fail a single object without stopping the run
OBJECT_ERRORS = (RpcError, ReconcileError, AmbiguousMatch, DecodeError, ValidationError)

_HANDLER_NAME = "oneop-json"


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in _STANDARD_RECORD_ATTRS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("urllib3").setLevel(logging.WARNING)


_STANDARD_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


def _load_inputs(
    manifest_path: Path, state_path: Path, logger: logging.Logger
) -> tuple[list[ManifestEntry], StateStore] | None:
    try:
        entries = load_manifest(manifest_path)
    except SpecLoadError as e:
        logger.error("Manifest loading failed", extra={"error": str(e), "path": str(manifest_path)})
        return None

    try:
        store = load_state(state_path)
    except StateFileError as e:
        logger.error("State file loading failed", extra={"error": str(e), "path": str(state_path)})
        return None

    return entries, store


def _save(state_path: Path, store: StateStore, logger: logging.Logger) -> bool:
    try:
        save_state(state_path, store)
    except StateFileError as e:
        logger.error("Failed to save state", extra={"error": str(e), "path": str(state_path)})
        return False
    return True


async def run_apply(
    config: Config,
    manifest_path: Path,
    state_path: Path,
    *,
    prune: bool = False,
    client: RpcClient | None = None,
    cancel: asyncio.Event | None = None,
) -> int:
    """Converge every manifest object and record the result in the state file.

    Args:
        config: Operator configuration.
        manifest_path: Manifest declaring the desired objects.
        state_path: State file to read and update.
        prune: Delete objects recorded in state but no longer declared.
        client: RPC client to use instead of one built from config.
        cancel: Event that aborts readiness waits.

    Returns:
        Exit code.
    """
    logger = logging.getLogger(__name__)

    inputs = _load_inputs(manifest_path, state_path, logger)
    if inputs is None:
        return EXIT_CONFIG_ERROR
    entries, store = inputs

    client = client or RpcClient.from_config(config)
    failed: list[str] = []

    logger.info(
        "Starting apply",
        extra={"endpoint": config.endpoint, "user": config.username, "objects": len(entries)},
    )

    for entry in entries:
        reconciler = Reconciler.for_kind(client, entry.kind, config, cancel)
        prior = store.get(entry.kind, entry.key)
        object_id = prior.object_id if prior else None
        baseline = prior.baseline if prior else None

        try:
            result = await reconciler.apply(entry.spec, object_id=object_id, baseline=baseline)
        except ConvergenceCancelled as e:
            logger.warning("Apply cancelled", extra={"address": entry.address, "error": str(e)})
            if prior is None or prior.object_id != e.object_id:
                store.record(entry.kind, entry.key, e.object_id, None)
            _save(state_path, store, logger)
            return EXIT_FAILED
        except OBJECT_ERRORS as e:
            logger.error(
                "Failed to converge object",
                extra={"address": entry.address, "error": str(e), "error_type": type(e).__name__},
            )
            failed.append(entry.address)
            # Keep the id of a half-created object so the next run updates it
            if isinstance(e, ReconcileError) and e.object_id is not None:
                store.record(entry.kind, entry.key, e.object_id, None)
                if not _save(state_path, store, logger):
                    return EXIT_FAILED
            continue

        store.record(entry.kind, entry.key, result.state.id, entry.spec)
        logger.info(
            "Object converged",
            extra={
                "address": entry.address,
                "object_id": result.state.id,
                "action": result.action.value,
                "changed_fields": result.changed_fields,
            },
        )

        if not _save(state_path, store, logger):
            return EXIT_FAILED

    declared = {entry.address for entry in entries}
    orphans = [addr for addr in store.resources if addr not in declared]
    if orphans and not prune:
        logger.warning(
            "Objects in state are no longer declared; run with --prune to delete them",
            extra={"addresses": orphans},
        )
    elif orphans:
        for address in orphans:
            recorded = store.resources[address]
            name = recorded.baseline.name if recorded.baseline else recorded.key
            reconciler = Reconciler.for_kind(client, recorded.kind, config, cancel)
            try:
                await reconciler.delete(name, recorded.object_id)
            except OBJECT_ERRORS as e:
                logger.error(
                    "Failed to prune object",
                    extra={"address": address, "error": str(e), "error_type": type(e).__name__},
                )
                failed.append(address)
                continue
            store.forget(recorded.kind, recorded.key)
        if not _save(state_path, store, logger):
            return EXIT_FAILED

    if failed:
        logger.error("Apply finished with failures", extra={"failed": failed})
        return EXIT_FAILED

    logger.info("Apply finished", extra={"objects": len(entries)})
    return EXIT_OK


async def run_destroy(
    config: Config,
    manifest_path: Path,
    state_path: Path,
    *,
    client: RpcClient | None = None,
) -> int:
    """Delete every manifest object, in reverse manifest order.

    Returns:
        Exit code.
    """
    logger = logging.getLogger(__name__)

    inputs = _load_inputs(manifest_path, state_path, logger)
    if inputs is None:
        return EXIT_CONFIG_ERROR
    entries, store = inputs

    client = client or RpcClient.from_config(config)
    failed: list[str] = []

    for entry in reversed(entries):
        reconciler = Reconciler.for_kind(client, entry.kind, config)
        prior = store.get(entry.kind, entry.key)
        object_id = prior.object_id if prior else None
        name = prior.baseline.name if prior and prior.baseline else entry.spec.name

        try:
            deleted = await reconciler.delete(name, object_id)
        except OBJECT_ERRORS as e:
            logger.error(
                "Failed to delete object",
                extra={"address": entry.address, "error": str(e), "error_type": type(e).__name__},
            )
            failed.append(entry.address)
            continue

        store.forget(entry.kind, entry.key)
        logger.info("Object removed", extra={"address": entry.address, "deleted": deleted})

    if not _save(state_path, store, logger):
        return EXIT_FAILED

    if failed:
        logger.error("Destroy finished with failures", extra={"failed": failed})
        return EXIT_FAILED
    return EXIT_OK


async def run_show(
    config: Config,
    manifest_path: Path,
    state_path: Path,
    *,
    client: RpcClient | None = None,
    out: TextIO | None = None,
) -> int:
    """Print the observed state of every manifest object as YAML.

    Objects that do not exist are reported with found: false.

    Returns:
        Exit code.
    """
    logger = logging.getLogger(__name__)
    out = out or sys.stdout

    inputs = _load_inputs(manifest_path, state_path, logger)
    if inputs is None:
        return EXIT_CONFIG_ERROR
    entries, store = inputs

    client = client or RpcClient.from_config(config)
    report: list[dict[str, Any]] = []
    exit_code = EXIT_OK

    for entry in entries:
        reconciler = Reconciler.for_kind(client, entry.kind, config)
        prior = store.get(entry.kind, entry.key)
        object_id = prior.object_id if prior else None
        name = prior.baseline.name if prior and prior.baseline else entry.spec.name

        try:
            resolution = await reconciler.read(name, object_id)
        except OBJECT_ERRORS as e:
            logger.error(
                "Failed to read object",
                extra={"address": entry.address, "error": str(e), "error_type": type(e).__name__},
            )
            report.append({"address": entry.address, "error": str(e)})
            exit_code = EXIT_FAILED
            continue

        item: dict[str, Any] = {"address": entry.address, "found": resolution.found}
        if resolution.state is not None:
            item["observed"] = resolution.state.to_dict()
        report.append(item)

    out.write(yaml.safe_dump(report, sort_keys=False, default_flow_style=False))
    return exit_code


async def run_import(
    config: Config,
    manifest_path: Path,
    state_path: Path,
    address: str,
    object_id: int,
    *,
    client: RpcClient | None = None,
) -> int:
    """Adopt an existing remote object as the manifest entry at address.

    The object is looked up by id only. Its id and a baseline built from the
    observed object are recorded, so the next apply updates it in place.

    Returns:
        Exit code.
    """
    logger = logging.getLogger(__name__)

    inputs = _load_inputs(manifest_path, state_path, logger)
    if inputs is None:
        return EXIT_CONFIG_ERROR
    entries, store = inputs

    entry = next((e for e in entries if e.address == address), None)
    if entry is None:
        logger.error(
            "Address is not declared in the manifest",
            extra={"address": address, "declared": [e.address for e in entries]},
        )
        return EXIT_CONFIG_ERROR

    prior = store.get(entry.kind, entry.key)
    if prior is not None and prior.object_id not in (None, object_id):
        logger.error(
            "Address is already bound to another object",
            extra={"address": address, "object_id": prior.object_id},
        )
        return EXIT_FAILED

    client = client or RpcClient.from_config(config)
    reconciler = Reconciler.for_kind(client, entry.kind, config)

    try:
        observed = await reconciler.read_by_id(object_id)
    except OBJECT_ERRORS as e:
        logger.error(
            "Failed to import object",
            extra={"address": address, "object_id": object_id, "error": str(e)},
        )
        return EXIT_FAILED

    try:
        baseline: BaseResourceSpec | None = reconciler.observed_baseline(entry.spec, observed)
    except ValueError as e:
        logger.warning(
            "Observed object does not fit the declared spec, importing without a baseline",
            extra={"address": address, "object_id": object_id, "error": str(e)},
        )
        baseline = None

    store.record(entry.kind, entry.key, observed.id, baseline)
    if not _save(state_path, store, logger):
        return EXIT_FAILED

    logger.info(
        "Object imported",
        extra={"address": address, "object_id": observed.id, "object_name": observed.name},
    )
    return EXIT_OK


async def run_with_signals(flow: Callable[[asyncio.Event], Awaitable[int]]) -> int:
    """Run a flow with SIGTERM/SIGINT wired to its cancel event."""
    logger = logging.getLogger(__name__)
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        cancel.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        return await flow(cancel)
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
