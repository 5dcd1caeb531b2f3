# queuewarden/main.py
"""
QueueWarden: FastAPI application entrypoint

Responsibilities:
 - load and validate settings (invalid configuration refuses to start)
 - configure logging
 - build the broker monitor, container manager, notifier and MonitoringWorker
 - boot the worker in the background so /health/startup can report progress;
   a fatal initialization failure asks the server to shut down
 - expose /health/*, /operations (worker snapshot) and /metrics (Prometheus)
 - CLI: `queuewarden run` and `queuewarden check-config`
"""

from __future__ import annotations

import os
import sys
import signal
import asyncio
import argparse
import contextlib
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import Response

from queuewarden.config import AppSettings, load_settings
from queuewarden.errors import ConfigError
from queuewarden.health.probes import get_worker, router as health_router
from queuewarden.metrics import render_latest
from queuewarden.queue.rabbitmq_monitor import RabbitMQQueueMonitor
from queuewarden.services.container_manager import ContainerManager
from queuewarden.services.notifications import NotificationPublisher
from queuewarden.utils.logger import configure_logging, get_logger, StructuredLoggerAdapter
from queuewarden.worker import MonitoringWorker

LOG = get_logger("queuewarden.main")
LAD = StructuredLoggerAdapter(LOG, {"component": "main"})

APP_TITLE = "QueueWarden"
APP_VERSION = os.getenv("QUEUEWARDEN_VERSION", "0.1.0")
APP_DESC = "QueueWarden: restarts stuck queue consumers and stops idle ones"


def build_worker(settings: AppSettings) -> MonitoringWorker:
    broker = RabbitMQQueueMonitor(settings.broker)
    containers = ContainerManager(settings.kubernetes, settings.manager, broker)
    notifier = NotificationPublisher(settings.broker)
    return MonitoringWorker(settings.manager, broker, containers, notifier)


async def _boot(worker: MonitoringWorker):
    await worker.notifier.initialize()
    await worker.initialize()
    await worker.start()


def _on_boot_done(task: asyncio.Task):
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LAD.critical("Service initialization failed, shutting down: %s", exc)
        signal.raise_signal(signal.SIGTERM)


# -------------------------
# App factory
# -------------------------
def create_app(settings: Optional[AppSettings] = None, worker: Optional[MonitoringWorker] = None) -> FastAPI:
    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal settings, worker
        if worker is None:
            if settings is None:
                settings = load_settings()
            configure_logging(app_name="queuewarden", level=settings.log_level, json=settings.log_json)
            worker = build_worker(settings)
        app.state.worker = worker
        LAD.info("Starting QueueWarden (version=%s)", APP_VERSION)
        boot = asyncio.create_task(_boot(worker), name="boot")
        boot.add_done_callback(_on_boot_done)
        try:
            yield
        finally:
            LAD.info("Shutting down QueueWarden")
            if not boot.done():
                boot.cancel()
                await asyncio.wait([boot])
            await worker.stop()
            await worker.notifier.close()
            await worker.containers.close()
            await worker.broker.close()

    app = FastAPI(title=APP_TITLE, version=APP_VERSION, description=APP_DESC, lifespan=lifespan)
    app.include_router(health_router)

    @app.get("/operations", tags=["operations"])
    async def operations(request: Request):
        return get_worker(request).status()

    @app.get("/metrics", tags=["metrics"])
    async def metrics():
        payload, content_type = render_latest()
        return Response(content=payload, media_type=content_type)

    return app


# -------------------------
# Uvicorn runner / CLI
# -------------------------
def _summary(settings: AppSettings) -> str:
    m = settings.manager
    lines = [
        "configuration OK",
        f"  polling interval:       {m.polling_interval_seconds}s",
        f"  idle timeout:           {m.idle_timeout_minutes}m",
        f"  operation timeout:      {m.operation_timeout_minutes}m",
        f"  stuck cleanup after:    {m.stuck_operation_cleanup_minutes}m",
        f"  restart verification:   {m.restart_verification_timeout_minutes}m",
        f"  notification recipients: {', '.join(m.recipients)}",
        f"  workloads ({len(m.queue_container_mappings)}):",
    ]
    for workload, queues in m.queue_container_mappings.items():
        lines.append(f"    {workload}: {', '.join(queues)}")
    return "\n".join(lines)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(prog="queuewarden", description=APP_DESC)
    sub = parser.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="run the monitoring service (default)")
    run_p.add_argument("--config", default=None, help="YAML config file (default: $QUEUEWARDEN_CONFIG)")
    run_p.add_argument("--host", default=None)
    run_p.add_argument("--port", type=int, default=None)

    chk_p = sub.add_parser("check-config", help="validate configuration and exit")
    chk_p.add_argument("--config", default=None, help="YAML config file (default: $QUEUEWARDEN_CONFIG)")

    args = parser.parse_args(argv)
    command = args.command or "run"

    try:
        settings = load_settings(getattr(args, "config", None))
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 1

    if command == "check-config":
        print(_summary(settings))
        return 0

    configure_logging(app_name="queuewarden", level=settings.log_level, json=settings.log_json)
    uvicorn.run(
        create_app(settings),
        host=getattr(args, "host", None) or settings.http_host,
        port=int(getattr(args, "port", None) or settings.http_port),
        log_level=settings.log_level.lower(),
    )
    return 0


# only run when executed directly
if __name__ == "__main__":
    sys.exit(main())
