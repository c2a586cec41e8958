import logging
import signal
import sys

import click

from .context import get_context
from .errors import EmailRejected
from .services.inbound_email import ingest_email

logger = logging.getLogger(__name__)

# sysexits EX_NOUSER: MTAs bounce the message with our stderr as the reason
EX_NOUSER = 67


def register_commands(app):
    @app.cli.command("ingest-email")
    @click.argument("source", type=click.File("rb"), default="-")
    def ingest_email_command(source):
        """Queue the attachments of a raw RFC 822 message (stdin by default)."""
        ctx = get_context()
        try:
            results = ingest_email(ctx, source.read(), email_domain=ctx.config.get("EMAIL_DOMAIN", ""))
        except EmailRejected as e:
            logger.warning("Rejected inbound email: %s", e.reason)
            click.echo(e.reason, err=True)
            sys.exit(EX_NOUSER)
        for result in results:
            click.echo(f"{result.file_id} {result.job_id} {result.file_name}")

    @app.cli.command("run-worker")
    def run_worker_command():
        """Run the job worker in the foreground until interrupted."""
        ctx = get_context()
        worker = ctx.start_worker()

        def _stop(signum, frame):
            worker.stop()

        signal.signal(signal.SIGTERM, _stop)
        try:
            while worker.is_alive():
                worker.join(1.0)
        except KeyboardInterrupt:
            worker.stop()
            worker.join()
