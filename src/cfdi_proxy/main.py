"""
Application entry point — wires dependencies and exposes the CLI.

Composition root: creates concrete adapters and injects them into the
proxy orchestrator. This is the ONLY place where concrete classes are
instantiated; everything else depends on Protocol interfaces.

Commands:
  cfdi-proxy serve       run the HTTP API under uvicorn
  cfdi-proxy poll-bulk   poll one bulk request until it finishes and store
                         its packages (job-queue consumer mode)
"""

from __future__ import annotations

import logging
from functools import partial
from pathlib import Path

import click
import structlog
import uvicorn

from cfdi_proxy.adapters.bulk_client import FielBulkConnector
from cfdi_proxy.adapters.credentials import FielCredentialValidator
from cfdi_proxy.adapters.downloader import ConcurrentResourceDownloader
from cfdi_proxy.adapters.portal_query import PortalQueryEngine
from cfdi_proxy.adapters.portal_session import FielPortalConnector
from cfdi_proxy.config import AppSettings
from cfdi_proxy.domain.models import ServiceType, SigningCredential
from cfdi_proxy.jobs import BulkPoller, BulkPollTarget, JobStorage
from cfdi_proxy.proxy import CfdiProxy
from cfdi_proxy.scheduler import create_bulk_poller

log = structlog.get_logger()


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog once for the whole process.

    Console rendering with ISO timestamps; events below `log_level` are
    dropped by the bound logger itself.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_proxy(settings: AppSettings) -> CfdiProxy:
    """Instantiate every concrete adapter and hand them to the orchestrator."""
    portal = settings.portal
    return CfdiProxy(
        validator=FielCredentialValidator(),
        portal_connector=FielPortalConnector(portal),
        query_engine=PortalQueryEngine(base_url=portal.base_url, result_limit=portal.result_limit),
        downloader=ConcurrentResourceDownloader(
            concurrency=portal.download_concurrency,
            deadline_seconds=portal.download_deadline_seconds,
        ),
        bulk_connector=FielBulkConnector(settings.bulk),
    )


def load_settings() -> AppSettings:
    """Load settings or abort the command with a readable message."""
    try:
        return AppSettings()
    except Exception as e:
        raise click.ClickException(f"Configuration error: {e}") from e


# ─────────────────────── CLI ───────────────────────


@click.group()
def cli() -> None:
    """SAT CFDI proxy"""


@cli.command()
@click.option("--host", default=None, help="Bind address (default: API__HOST)")
@click.option("--port", default=None, type=int, help="Bind port (default: API__PORT)")
def serve(host: str | None, port: int | None) -> None:
    """Run the HTTP API"""
    settings = load_settings()
    configure_structlog(settings.log_level)
    log.info(
        "app.starting",
        version="0.1.0",
        log_level=settings.log_level,
        host=host or settings.api.host,
        port=port or settings.api.port,
    )
    uvicorn.run(
        "cfdi_proxy.asgi:app",
        host=host or settings.api.host,
        port=port or settings.api.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


_FILE = click.Path(exists=True, dir_okay=False, path_type=Path)


@cli.command("poll-bulk")
@click.option("--certificate", required=True, type=_FILE, help="FIEL certificate (.cer)")
@click.option("--private-key", required=True, type=_FILE, help="FIEL private key (.key)")
@click.option(
    "--passphrase",
    envvar="CFDI_PROXY_PASSPHRASE",
    prompt=True,
    hide_input=True,
    help="Private key passphrase (or CFDI_PROXY_PASSPHRASE)",
)
@click.option("--request-id", required=True, help="Bulk request id returned by solicitar")
@click.option(
    "--service-type",
    type=click.Choice([member.value for member in ServiceType]),
    default=ServiceType.CFDI.value,
    show_default=True,
)
@click.option("--client-id", default="default", show_default=True)
@click.option("--job-id", default=None, help="Storage directory name (default: the request id)")
def poll_bulk(
    certificate: Path,
    private_key: Path,
    passphrase: str,
    request_id: str,
    service_type: str,
    client_id: str,
    job_id: str | None,
) -> None:
    """Poll a bulk request and store its packages once finished"""
    settings = load_settings()
    configure_structlog(settings.log_level)

    storage = JobStorage(settings.jobs.storage_dir)
    poller = BulkPoller(build_proxy(settings), storage)
    target = BulkPollTarget(
        job_id=job_id or request_id,
        client_id=client_id,
        request_id=request_id,
        credential=SigningCredential(
            certificate=certificate.read_bytes(),
            private_key=private_key.read_bytes(),
            passphrase=passphrase,
        ),
        service_type=ServiceType(service_type),
    )

    scheduler = create_bulk_poller(
        poll_fn=partial(poller.poll_once, target),
        interval_minutes=settings.jobs.poll_interval_minutes,
        max_hours=settings.jobs.poll_max_hours,
    )
    if not scheduler.get_jobs():
        click.echo(f"Request {request_id} is done; files under {storage.job_dir(client_id, target.job_id)}")
        return

    log.info(
        "app.poller_starting",
        request_id=request_id,
        interval_minutes=settings.jobs.poll_interval_minutes,
    )
    try:
        scheduler.start()
    except KeyboardInterrupt:
        log.info("app.shutdown", reason="signal received")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
