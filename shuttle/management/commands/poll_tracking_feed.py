import logging

from django.conf import settings
from django.core.management.base import BaseCommand

from shuttle.feed import FeedConnection, FeedProcessor
from shuttle.tracking_server import TrackingServerClient

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Poll the GPS tracking server and run every position through the shuttle pipeline."

    def add_arguments(self, parser):
        parser.add_argument(
            "--cycles",
            type=int,
            default=None,
            help="Stop after this many poll cycles (runs forever by default).",
        )
        parser.add_argument(
            "--no-correction",
            action="store_true",
            help="Store raw GPS fixes without stop or route snapping.",
        )

    def handle(self, *args, **options):
        config = settings.SHUTTLE_CONFIG
        client = TrackingServerClient.from_settings()
        processor = FeedProcessor(correct=False if options["no_correction"] else None)
        connection = FeedConnection(
            client,
            processor,
            poll_interval=config.get("feed_poll_interval", 5),
            reconnect_delay=config.get("feed_reconnect_delay", 5),
        )

        self.stdout.write(f"Polling {client.base_url} every {connection.poll_interval:g}s")
        try:
            connection.run(max_cycles=options["cycles"])
        except KeyboardInterrupt:
            logger.info("Tracking feed polling interrupted")
        finally:
            connection.stop()
        self.stdout.write(self.style.SUCCESS("Tracking feed stopped"))
