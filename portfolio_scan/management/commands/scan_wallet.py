"""Management command: reconstruct a wallet's Sport.fun portfolio and print the JSON payload."""
import json

from django.apps import apps
from django.core.management.base import BaseCommand, CommandError

from src.api.exceptions import ChainProviderError
from src.services.concurrency import Deadline

from portfolio_scan.scanner import SCAN_MODE_DEFAULT, SCAN_MODES, ScanParams


class Command(BaseCommand):
    help = 'Scan a wallet\'s player-share transfers and print its portfolio (holdings, activity, PnL)'

    def add_arguments(self, parser):
        parser.add_argument('address', help='Wallet address (0x...)')
        parser.add_argument('--scan-mode', choices=SCAN_MODES, default=SCAN_MODE_DEFAULT,
                            help='full scans every page with no deadline')
        parser.add_argument('--max-pages', type=int, default=3, help='Pages per transfer stream')
        parser.add_argument('--max-activity', type=int, default=100, help='Activity items to return')
        parser.add_argument('--no-prices', action='store_true', help='Skip current price lookups')
        parser.add_argument('--no-trades', action='store_true', help='Skip receipt decoding')
        parser.add_argument('--uri', action='store_true', help='Look up ERC-1155 uri() for holdings')
        parser.add_argument('--output', help='Write the payload to this file instead of stdout')

    def handle(self, *args, **options):
        params = ScanParams(
            address=options['address'],
            scan_mode=options['scan_mode'],
            max_pages=options['max_pages'],
            max_activity=options['max_activity'],
            include_trades=not options['no_trades'],
            include_prices=not options['no_prices'],
            include_uri=options['uri'],
        ).normalized()

        scanner = apps.get_app_config('portfolio_scan').build_scanner()
        # The CLI has no request to protect, so full scans simply run here.
        deadline = Deadline.unbounded() if params.is_full else None

        self.stderr.write(f'Scanning {params.address} ({params.scan_mode} mode)...')
        try:
            payload = scanner.run(params, deadline=deadline)
        except ValueError as e:
            raise CommandError(str(e))
        except ChainProviderError as e:
            raise CommandError(f'Chain provider error: {e}')

        text = json.dumps(payload, indent=2)
        if options.get('output'):
            with open(options['output'], 'w') as f:
                f.write(text)
            self.stderr.write(self.style.SUCCESS(f'Wrote payload to {options["output"]}'))
        else:
            self.stdout.write(text)

        summary = payload['summary']
        completeness = payload['completeness']
        self.stderr.write(self.style.SUCCESS(
            f'Done. {summary["holding_count"]} holdings, {summary["activity_count_total"]} transactions, '
            f'realized PnL {payload["analytics"]["realized_pnl_usdc_raw"]} (USDC base units), '
            f'incomplete={completeness["scan_incomplete"]}.'
        ))
