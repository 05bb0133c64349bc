import time
from django.core.management.base import BaseCommand
from django.utils import timezone
from payments.exceptions import StorefrontError
from payments.services import SOURCE_POLL, OrderLifecycle


class Command(BaseCommand):
    help = "Poll PhonePe order status for pending orders and reconcile them locally"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=1)

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timezone.timedelta(minutes=opts["older_than_minutes"])
        lifecycle = OrderLifecycle()
        orders = lifecycle.store.pending(older_than=cutoff, limit=opts["max"])

        if not orders:
            self.stdout.write(self.style.SUCCESS("No pending orders to reconcile."))
            return

        changed = 0
        for o in orders:
            try:
                outcome = lifecycle.reconcile(o.transaction_id, SOURCE_POLL)
                if outcome.changed:
                    changed += 1
                    self.stdout.write(self.style.SUCCESS(f"Updated {o.transaction_id} -> {outcome.status}"))
                else:
                    self.stdout.write(f"{o.transaction_id}: still {outcome.status}")
            except StorefrontError as e:
                self.stdout.write(self.style.WARNING(f"{o.transaction_id}: {e}"))
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(orders)}, updated {changed} orders."))
