"""
CLI entrypoint that boots the quantaflow runtime.

It loads the Dynaconf configuration, wires the event bus, the job
orchestrator and the enabled modules (job gateway, reconnecting transport,
Prometheus exporter), optionally submits one job at boot and runs until
interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import signal
from collections.abc import Sequence
from pathlib import Path

from .core.bus import EventBus
from .core.config import ConfigError, ConfigService, ConfigSnapshot
from .core.orchestrator import JobOrchestrator
from .core.runtime import Runtime
from .modules import (
    JobGateway,
    PrometheusExporter,
    ReconnectingTransport,
    SimulatedOptimizationBackend,
)

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


async def build_runtime(
    config_service: ConfigService,
    *,
    enable_transport: bool = True,
    enable_gateway: bool = True,
) -> Runtime:
    """Construct the bus, the orchestrator and every enabled module."""

    snapshot = config_service.snapshot
    bus = EventBus(queue_size=snapshot.bus.queue_size)
    backend = SimulatedOptimizationBackend.from_options(snapshot.execution.to_options())
    orchestrator = JobOrchestrator(
        bus,
        backend,
        max_jobs=snapshot.orchestrator.max_jobs,
        id_prefix=snapshot.orchestrator.id_prefix,
    )
    runtime = Runtime(bus=bus, orchestrator=orchestrator)

    candidates = []
    if enable_gateway:
        candidates.append(JobGateway(orchestrator))
    if enable_transport:
        candidates.append(ReconnectingTransport())
    candidates.append(PrometheusExporter())

    for module in candidates:
        module_config = config_service.module_config_for(module)
        if not module_config.enabled:
            LOGGER.info("Config disabled for %s; skipping", module.name)
            continue
        await runtime.add_module(module, module_config)
    return runtime


async def run_runtime(
    *,
    config_dir: Path | None,
    enable_transport: bool = True,
    enable_gateway: bool = True,
    submit_file: Path | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Start the runtime, optionally submit a job, and run until interrupted."""

    config_service = ConfigService(config_dir=config_dir)
    snapshot = config_service.snapshot
    _configure_log_file(snapshot)
    payload = submit_file.read_text(encoding="utf-8") if submit_file else None

    runtime = await build_runtime(
        config_service,
        enable_transport=enable_transport,
        enable_gateway=enable_gateway,
    )
    if stop_event is None:
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)

    await runtime.start()
    LOGGER.info(
        "Quantaflow running with %d modules. Press Ctrl+C to stop.", len(runtime.modules)
    )
    try:
        if payload is not None:
            job_id = runtime.orchestrator.start(payload)
            LOGGER.info("Submitted %s from %s", job_id, submit_file)
        await stop_event.wait()
    finally:
        await runtime.stop()


def _configure_log_file(snapshot: ConfigSnapshot) -> None:
    settings = snapshot.logging
    if settings.file is None:
        return
    _ensure_rotating_file_handler(
        settings.file, max_mb=settings.max_mb, backup_count=settings.backup_count
    )


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s, beginning graceful shutdown.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


def configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
    )


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Quantaflow job orchestration runtime.")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/local.yaml (default: repo config/).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO).",
    )
    parser.add_argument(
        "--no-transport",
        action="store_true",
        help="Do not start the reconnecting transport.",
    )
    parser.add_argument(
        "--no-gateway",
        action="store_true",
        help="Do not start the HTTP/WebSocket job gateway.",
    )
    parser.add_argument(
        "--submit",
        type=Path,
        default=None,
        metavar="FILE",
        help="Start one job with the contents of FILE once the runtime is up.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        asyncio.run(
            run_runtime(
                config_dir=args.config_dir,
                enable_transport=not args.no_transport,
                enable_gateway=not args.no_gateway,
                submit_file=args.submit,
            )
        )
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 2
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("Quantaflow runtime crashed.")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["build_runtime", "main", "run_runtime"]
